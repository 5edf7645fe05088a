"""
State Definitions for the Deposit Lifecycle
"""
from enum import Enum


class DepositStatus(str, Enum):
    """Lifecycle of a security-deposit hold"""

    # Initial state - verification round trip in flight
    PENDING_VERIFICATION = "pending_verification"

    # Live hold at the gateway
    AUTHORIZED = "authorized"
    REQUIRES_ACTION = "requires_action"  # step-up authentication (3DS)

    # Settled
    CAPTURED = "captured"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"

    # Hold removed without a charge
    RELEASED = "released"  # by us
    CANCELED = "canceled"  # by the gateway (expiry, manual cancel in dashboard)

    FAILED = "failed"


# State transitions mapping
DEPOSIT_TRANSITIONS: dict[DepositStatus, list[DepositStatus]] = {
    DepositStatus.PENDING_VERIFICATION: [
        DepositStatus.AUTHORIZED,
        DepositStatus.REQUIRES_ACTION,
        DepositStatus.FAILED,
    ],
    # הלקוח השלים אימות - ה-hold הופך ל-capturable
    DepositStatus.REQUIRES_ACTION: [
        DepositStatus.AUTHORIZED,
        DepositStatus.FAILED,
        DepositStatus.CANCELED,
    ],
    # authorized -> authorized = reauthorization (active id swapped)
    DepositStatus.AUTHORIZED: [
        DepositStatus.AUTHORIZED,
        DepositStatus.CAPTURED,
        DepositStatus.RELEASED,
        DepositStatus.CANCELED,
        DepositStatus.FAILED,
    ],
    DepositStatus.CAPTURED: [
        DepositStatus.REFUNDED,
        DepositStatus.PARTIALLY_REFUNDED,
    ],
    DepositStatus.PARTIALLY_REFUNDED: [
        DepositStatus.PARTIALLY_REFUNDED,
        DepositStatus.REFUNDED,
    ],
    DepositStatus.REFUNDED: [],
    DepositStatus.RELEASED: [],
    DepositStatus.CANCELED: [],
    DepositStatus.FAILED: [],
}

TERMINAL_STATUSES = frozenset(
    status for status, targets in DEPOSIT_TRANSITIONS.items() if not targets
)

# סטטוסים שבהם יש כסף שנגבה בפועל
SETTLED_STATUSES = frozenset({
    DepositStatus.CAPTURED,
    DepositStatus.PARTIALLY_REFUNDED,
    DepositStatus.REFUNDED,
})


def is_valid_transition(current: DepositStatus | str, target: DepositStatus | str) -> bool:
    """Check if transition from current to target status is valid"""
    try:
        current_status = DepositStatus(current)
        target_status = DepositStatus(target)
    except ValueError:
        return False
    return target_status in DEPOSIT_TRANSITIONS.get(current_status, [])


def is_valid_walk(statuses: list[DepositStatus | str]) -> bool:
    """True when every consecutive pair of the sequence is an allowed transition"""
    return all(
        is_valid_transition(current, target)
        for current, target in zip(statuses, statuses[1:])
    )
