"""
Domain models - Deposit, RetryTask and their history entries.

Records are immutable pydantic models: a mutation is always expressed as
``deposit.evolve(**changes)``, which re-runs validation so an invariant
violation can never reach the repository.
"""
from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from app.state_machine.states import DepositStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class _Record(BaseModel):
    model_config = ConfigDict(frozen=True, use_enum_values=False)

    def evolve(self, **changes: Any):
        """Return a validated copy with ``changes`` applied"""
        data = dict(self)
        data.update(changes)
        return type(self)(**data)


class AuthorizationReason(str, enum.Enum):
    INITIAL = "initial"
    REAUTHORIZATION = "reauthorization"
    WEBHOOK = "webhook"
    ACTION_RESOLVED = "action_resolved"


class AuthorizationAttempt(_Record):
    authorization_id: Optional[str] = None
    amount: int
    attempted_at: datetime
    success: bool
    status: Optional[str] = None
    reason: AuthorizationReason = AuthorizationReason.INITIAL
    error: Optional[str] = None


class CaptureAttempt(_Record):
    authorization_id: Optional[str] = None
    amount: int
    attempted_at: datetime
    success: bool
    error: Optional[str] = None


class RefundEntry(_Record):
    refund_id: str
    authorization_id: Optional[str] = None
    amount: int
    refunded_at: datetime
    idempotency_key: Optional[str] = None


class LastError(_Record):
    code: Optional[str] = None
    message: str
    occurred_at: datetime


class ActionRequired(_Record):
    type: Optional[str] = None
    authorization_id: Optional[str] = None
    client_secret: Optional[str] = None
    next_action: Optional[dict[str, Any]] = None
    dispute_id: Optional[str] = None
    reason: Optional[str] = None


class Deposit(_Record):
    """Security deposit held as a manual-capture authorization"""

    id: str = Field(default_factory=new_id)
    customer_id: str
    payment_method_id: str
    currency: str
    hold_amount: int = Field(gt=0)
    status: DepositStatus = DepositStatus.PENDING_VERIFICATION

    verification_authorization_id: Optional[str] = None
    active_authorization_id: Optional[str] = None
    capture_authorization_id: Optional[str] = None

    captured_amount: int = Field(default=0, ge=0)
    refunded_amount: int = Field(default=0, ge=0)
    released_amount: int = Field(default=0, ge=0)

    created_at: datetime = Field(default_factory=utcnow)
    initial_authorization_at: Optional[datetime] = None
    last_authorization_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    released_at: Optional[datetime] = None

    authorization_history: tuple[AuthorizationAttempt, ...] = ()
    capture_history: tuple[CaptureAttempt, ...] = ()
    refund_history: tuple[RefundEntry, ...] = ()

    last_error: Optional[LastError] = None
    action_required: Optional[ActionRequired] = None
    metadata: dict[str, str] = Field(default_factory=dict)

    # claim-before-work: capture / release / reauthorization
    claim_token: Optional[str] = None
    claimed_operation: Optional[str] = None
    claim_expires_at: Optional[datetime] = None

    version: int = 0

    @model_validator(mode="after")
    def _check_amounts(self) -> "Deposit":
        if self.captured_amount > self.hold_amount:
            raise ValueError("captured_amount cannot exceed hold_amount")
        if self.captured_amount + self.released_amount > self.hold_amount:
            raise ValueError("captured_amount + released_amount cannot exceed hold_amount")
        if self.refunded_amount > self.captured_amount:
            raise ValueError("refunded_amount cannot exceed captured_amount")
        return self

    @property
    def refundable_amount(self) -> int:
        return self.captured_amount - self.refunded_amount

    def has_live_claim(self, now: datetime) -> bool:
        return (
            self.claim_token is not None
            and self.claim_expires_at is not None
            and self.claim_expires_at > now
        )

    def without_claim(self) -> "Deposit":
        return self.evolve(claim_token=None, claimed_operation=None, claim_expires_at=None)


class RetryTaskKind(str, enum.Enum):
    WEBHOOK_EVENT = "webhook_event"
    REAUTHORIZATION = "reauthorization"


class RetryTask(_Record):
    """Deferred unit of work; deleted on success, dead-lettered when exhausted"""

    id: str = Field(default_factory=new_id)
    kind: RetryTaskKind
    dedup_key: str
    payload: dict[str, Any] = Field(default_factory=dict)
    attempts: int = Field(default=0, ge=0)
    next_attempt_at: datetime
    dead_letter: bool = False
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0


class JobRun(_Record):
    """Last observed outcome of a periodic job"""

    job_name: str
    last_run_at: Optional[datetime] = None
    last_finished_at: Optional[datetime] = None
    last_success: Optional[bool] = None
    last_stats: dict[str, Any] = Field(default_factory=dict)
    last_error: Optional[str] = None
    total_runs: int = 0
    total_failures: int = 0
