"""
State Manager - validates deposit status transitions and applies them
"""
from typing import Any

from app.core.exceptions import InvalidStateTransitionError
from app.core.logging import get_logger
from app.domain.models import Deposit
from app.state_machine.states import DepositStatus, is_valid_transition

logger = get_logger(__name__)


def ensure_transition(deposit: Deposit, target: DepositStatus) -> None:
    """Raise InvalidStateTransitionError unless ``deposit.status -> target`` is allowed"""
    if not is_valid_transition(deposit.status, target):
        logger.warning(
            "Invalid state transition attempted",
            extra_data={
                "deposit_id": deposit.id,
                "current_state": deposit.status.value,
                "target_state": DepositStatus(target).value,
            }
        )
        raise InvalidStateTransitionError(
            deposit.status.value, DepositStatus(target).value, deposit_id=deposit.id
        )


def transition_to(deposit: Deposit, target: DepositStatus, **changes: Any) -> Deposit:
    """
    Validated transition: returns a copy of ``deposit`` in ``target`` with
    ``changes`` applied. The caller commits it through ``repository.update``.
    """
    ensure_transition(deposit, target)
    return deposit.evolve(status=target, **changes)
