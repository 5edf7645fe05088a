"""
Deposit Service - the deposit lifecycle state machine.

Every mutation goes through ``repository.update(id, updater)``. Gateway work
is bracketed by a claim (``claim_token`` on the record) for capture, release
and reauthorization, so two workers can never issue the same gateway call for
one deposit.

Operations return the resulting Deposit. A gateway decline is a normal
outcome: the record moves to ``failed`` with ``last_error`` and is returned.
Transient gateway errors are raised to the caller.
"""
from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence

from app.core.exceptions import (
    ConcurrencyConflictError,
    ConflictError,
    DepositNotFoundError,
    ErrorCode,
    GatewayError,
    GatewayTerminalError,
    GatewayTransientError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationError,
)
from app.core.logging import get_logger
from app.db.repositories.base import DepositRepository, DepositUpdater
from app.domain.currency import get_currency_policy, validate_hold_amount
from app.domain.models import (
    ActionRequired,
    AuthorizationAttempt,
    AuthorizationReason,
    CaptureAttempt,
    Deposit,
    LastError,
    RefundEntry,
    new_id,
    utcnow,
)
from app.domain.services.gateway import (
    INTENT_CANCELED,
    INTENT_PROCESSING,
    INTENT_REQUIRES_ACTION,
    INTENT_REQUIRES_CAPTURE,
    INTENT_SUCCEEDED,
    AuthorizationResult,
    PaymentGateway,
    RefundResult,
)
from app.domain.services.notification_service import (
    NOTIFY_AUTHORIZED,
    NOTIFY_CAPTURED,
    NOTIFY_FAILED,
    NOTIFY_PROCESSING,
    NOTIFY_REAUTHORIZATION_FAILED,
    NOTIFY_REAUTHORIZED,
    NOTIFY_REFUNDED,
    NOTIFY_RELEASED,
    NOTIFY_REQUIRES_ACTION,
    DepositNotification,
    Notifier,
)
from app.state_machine.manager import ensure_transition, transition_to
from app.state_machine.states import SETTLED_STATUSES, DepositStatus, is_valid_transition

logger = get_logger(__name__)

OPERATION_CAPTURE = "capture"
OPERATION_RELEASE = "release"
OPERATION_REAUTHORIZE = "reauthorize"

# refunds with these statuses never moved money
REFUND_DEAD_STATUSES = ("failed", "canceled")


def _require_text(value: Optional[str], field: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field} is required", field=field)
    return value.strip()


def _require_amount(amount, field: str = "amount") -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(
            f"{field} must be a positive integer in minor units",
            field=field,
            error_code=ErrorCode.INVALID_AMOUNT,
        )
    return amount


def _last_error(exc: GatewayError, now: datetime) -> LastError:
    return LastError(code=exc.code, message=exc.message, occurred_at=now)


def _action_required(result: AuthorizationResult) -> ActionRequired:
    next_action = dict(result.next_action) if result.next_action else None
    return ActionRequired(
        type=next_action.get("type") if next_action else None,
        authorization_id=result.id,
        client_secret=result.client_secret,
        next_action=next_action,
    )


def _decline_from_result(result: AuthorizationResult, fallback: str) -> GatewayTerminalError:
    return GatewayTerminalError(
        result.last_error_message or fallback,
        code=result.last_error_code or result.status or "authorization_declined",
    )


class DepositService:
    """Business operations on deposits, driven by callers, webhooks and the scheduler"""

    def __init__(
        self,
        repository: DepositRepository,
        gateway: PaymentGateway,
        *,
        claim_ttl_seconds: int = 900,
        optimistic_retry_attempts: int = 3,
        clock: Callable[[], datetime] = utcnow,
        notifier: Optional[Notifier] = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.claim_ttl = timedelta(seconds=claim_ttl_seconds)
        self.optimistic_retry_attempts = optimistic_retry_attempts
        self.clock = clock
        self.notifier = notifier

    @classmethod
    def from_settings(
        cls,
        repository: DepositRepository,
        gateway: PaymentGateway,
        settings,
        notifier: Optional[Notifier] = None,
    ) -> "DepositService":
        return cls(
            repository,
            gateway,
            claim_ttl_seconds=settings.CLAIM_TTL_SECONDS,
            optimistic_retry_attempts=settings.OPTIMISTIC_RETRY_ATTEMPTS,
            notifier=notifier,
        )

    async def _notify(self, kind: str, deposit: Deposit, message: str, **payload) -> None:
        if self.notifier is None:
            return
        notification = DepositNotification(
            type=kind,
            deposit_id=deposit.id,
            status=deposit.status.value,
            message=message,
            payload={"hold_amount": deposit.hold_amount, "currency": deposit.currency, **payload},
            timestamp=self.clock(),
        )
        try:
            await self.notifier.notify(notification)
        except Exception as e:
            logger.error(
                "Notification failed",
                extra_data={"deposit_id": deposit.id, "type": kind, "error": str(e)},
            )

    # ── reads ──

    async def get(self, deposit_id: str) -> Deposit:
        deposit = await self.repository.find_by_id(deposit_id)
        if deposit is None:
            raise DepositNotFoundError(deposit_id)
        return deposit

    async def list(self) -> list[Deposit]:
        return await self.repository.list()

    # ── commit helpers ──

    async def _commit(self, deposit_id: str, updater: DepositUpdater) -> Deposit:
        """
        Commit after gateway work has already happened.

        The updater is re-run against the fresh record on an optimistic
        conflict, so it must be written against ``current`` only.
        """
        for attempt in range(1, self.optimistic_retry_attempts + 1):
            try:
                return await self.repository.update(deposit_id, updater)
            except NotFoundError:
                raise DepositNotFoundError(deposit_id)
            except ConcurrencyConflictError:
                if attempt >= self.optimistic_retry_attempts:
                    raise
                logger.info(
                    "Optimistic conflict, re-running commit",
                    extra_data={"deposit_id": deposit_id, "attempt": attempt},
                )
        raise ConcurrencyConflictError("Deposit", deposit_id)

    async def claim(
        self,
        deposit_id: str,
        operation: str,
        *,
        required_status: DepositStatus = DepositStatus.AUTHORIZED,
        expected_authorization_id: Optional[str] = None,
        expected_last_authorization_at: Optional[datetime] = None,
    ) -> Deposit:
        """
        Take the in-record claim for ``operation``.

        Fails with ConcurrencyConflictError when another live claim exists or
        the record moved past the expected authorization.
        """
        token = new_id()
        now = self.clock()

        def _claim(current: Deposit) -> Deposit:
            if current.has_live_claim(now):
                raise ConcurrencyConflictError(
                    "Deposit", current.id, f"claimed by {current.claimed_operation}"
                )
            if current.status != required_status:
                raise InvalidStateTransitionError(
                    current.status.value, required_status.value, deposit_id=current.id
                )
            if expected_authorization_id is not None and current.active_authorization_id != expected_authorization_id:
                raise ConcurrencyConflictError("Deposit", current.id, "active authorization changed")
            if expected_last_authorization_at is not None and current.last_authorization_at != expected_last_authorization_at:
                raise ConcurrencyConflictError("Deposit", current.id, "already reauthorized")
            return current.evolve(
                claim_token=token,
                claimed_operation=operation,
                claim_expires_at=now + self.claim_ttl,
            )

        try:
            return await self.repository.update(deposit_id, _claim)
        except NotFoundError:
            raise DepositNotFoundError(deposit_id)

    async def release_claim(self, deposit_id: str, claim_token: str) -> Deposit:
        def _release(current: Deposit) -> Deposit:
            if current.claim_token != claim_token:
                return current
            return current.without_claim()

        return await self._commit(deposit_id, _release)

    async def _cancel_quietly(self, authorization_id: Optional[str], deposit_id: str) -> None:
        if not authorization_id:
            return
        try:
            await self.gateway.cancel(authorization_id)
        except GatewayError as exc:
            logger.warning(
                "Failed to cancel authorization",
                extra_data={
                    "deposit_id": deposit_id,
                    "authorization_id": authorization_id,
                    "error": exc.message,
                },
            )

    # ── initialize ──

    async def initialize(
        self,
        customer_id: str,
        payment_method_id: str,
        currency: str,
        hold_amount: int,
        metadata: Optional[dict[str, str]] = None,
        deposit_id: Optional[str] = None,
    ) -> Deposit:
        """
        Create the deposit and place the hold.

        A small automatic-capture charge (the currency's verification amount)
        is made and refunded first to prove the card is chargeable, then the
        full hold is authorized with manual capture.
        """
        customer_id = _require_text(customer_id, "customer_id")
        payment_method_id = _require_text(payment_method_id, "payment_method_id")
        policy = get_currency_policy(currency)
        validate_hold_amount(hold_amount, policy.code)
        metadata = dict(metadata or {})
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in metadata.items()):
            raise ValidationError("metadata must map strings to strings", field="metadata")

        deposit = await self.repository.create(Deposit(
            id=deposit_id or new_id(),
            customer_id=customer_id,
            payment_method_id=payment_method_id,
            currency=policy.code,
            hold_amount=hold_amount,
            metadata=metadata,
            created_at=self.clock(),
        ))
        logger.info(
            "Initializing deposit",
            extra_data={"deposit_id": deposit.id, "hold_amount": hold_amount, "currency": policy.code},
        )

        gateway_metadata = {**metadata, "deposit_id": deposit.id}
        verification_id: Optional[str] = None
        try:
            verification_id = await self._verify_payment_method(deposit, policy.verification_amount, gateway_metadata)
            result = await self.gateway.authorize(
                deposit.hold_amount,
                deposit.currency,
                deposit.payment_method_id,
                deposit.customer_id,
                {**gateway_metadata, "purpose": "security_deposit"},
                capture_method="manual",
                idempotency_key=f"deposit:{deposit.id}:hold",
            )
        except GatewayTerminalError as exc:
            return await self._fail_initialization(deposit.id, verification_id, exc)
        except GatewayError as exc:
            await self._fail_initialization(deposit.id, verification_id, exc)
            raise
        except Exception as exc:
            # never leave the record in pending_verification
            await self._fail_initialization(
                deposit.id,
                verification_id,
                GatewayTransientError(f"Unexpected gateway failure: {exc!r}", code="unexpected_error"),
            )
            raise

        return await self._apply_initial_authorization(deposit.id, verification_id, result)

    async def _verify_payment_method(self, deposit: Deposit, amount: int, gateway_metadata: dict[str, str]) -> str:
        verification = await self.gateway.authorize(
            amount,
            deposit.currency,
            deposit.payment_method_id,
            deposit.customer_id,
            {**gateway_metadata, "purpose": "verification_charge"},
            capture_method="automatic",
            idempotency_key=f"deposit:{deposit.id}:verification",
        )
        if verification.status != INTENT_SUCCEEDED:
            if verification.status != INTENT_CANCELED:
                await self._cancel_quietly(verification.id, deposit.id)
            raise _decline_from_result(verification, "Card verification failed")

        await self.gateway.refund(
            verification.id,
            amount,
            idempotency_key=f"deposit:{deposit.id}:verification_refund",
        )
        return verification.id

    async def _fail_initialization(
        self,
        deposit_id: str,
        verification_id: Optional[str],
        exc: GatewayError,
    ) -> Deposit:
        now = self.clock()
        logger.warning(
            "Deposit authorization failed",
            extra_data={"deposit_id": deposit_id, "code": exc.code, "error": exc.message},
        )

        def _fail(current: Deposit) -> Deposit:
            entry = AuthorizationAttempt(
                amount=current.hold_amount,
                attempted_at=now,
                success=False,
                reason=AuthorizationReason.INITIAL,
                error=exc.message,
            )
            return transition_to(
                current,
                DepositStatus.FAILED,
                verification_authorization_id=verification_id,
                last_error=_last_error(exc, now),
                action_required=None,
                authorization_history=current.authorization_history + (entry,),
            )

        deposit = await self._commit(deposit_id, _fail)
        await self._notify(NOTIFY_FAILED, deposit, exc.message, code=exc.code)
        return deposit

    async def _apply_initial_authorization(
        self,
        deposit_id: str,
        verification_id: str,
        result: AuthorizationResult,
    ) -> Deposit:
        now = self.clock()

        if result.status not in (INTENT_REQUIRES_CAPTURE, INTENT_REQUIRES_ACTION, INTENT_PROCESSING):
            if result.status != INTENT_CANCELED:
                await self._cancel_quietly(result.id, deposit_id)
            return await self._fail_initialization(
                deposit_id,
                verification_id,
                _decline_from_result(result, f"Unexpected authorization status: {result.status}"),
            )

        def _apply(current: Deposit) -> Deposit:
            entry = AuthorizationAttempt(
                authorization_id=result.id,
                amount=current.hold_amount,
                attempted_at=now,
                success=result.status == INTENT_REQUIRES_CAPTURE,
                status=result.status,
                reason=AuthorizationReason.INITIAL,
            )
            changes = {
                "verification_authorization_id": verification_id,
                "active_authorization_id": result.id,
                "last_authorization_at": now,
                "authorization_history": current.authorization_history + (entry,),
                "last_error": None,
            }
            if result.status == INTENT_REQUIRES_CAPTURE:
                return transition_to(
                    current,
                    DepositStatus.AUTHORIZED,
                    initial_authorization_at=now,
                    action_required=None,
                    **changes,
                )
            if result.status == INTENT_REQUIRES_ACTION:
                return transition_to(
                    current,
                    DepositStatus.REQUIRES_ACTION,
                    action_required=_action_required(result),
                    **changes,
                )
            # processing: the gateway confirms later through amount_capturable_updated
            return current.evolve(**changes)

        deposit = await self._commit(deposit_id, _apply)
        logger.info(
            "Deposit hold placed",
            extra_data={
                "deposit_id": deposit.id,
                "status": deposit.status.value,
                "authorization_id": result.id,
            },
        )
        await self._notify_hold(deposit, result.id)
        return deposit

    async def _notify_hold(self, deposit: Deposit, authorization_id: str) -> None:
        if deposit.status == DepositStatus.AUTHORIZED:
            await self._notify(NOTIFY_AUTHORIZED, deposit, "Deposit hold placed", authorization_id=authorization_id)
        elif deposit.status == DepositStatus.REQUIRES_ACTION:
            await self._notify(
                NOTIFY_REQUIRES_ACTION,
                deposit,
                "Card requires customer authentication",
                authorization_id=authorization_id,
                action_type=deposit.action_required.type if deposit.action_required else None,
            )
        else:
            await self._notify(NOTIFY_PROCESSING, deposit, "Hold awaits gateway confirmation", authorization_id=authorization_id)

    # ── capture ──

    async def capture(self, deposit_id: str, amount: Optional[int] = None) -> Deposit:
        deposit = await self.get(deposit_id)
        if deposit.status in SETTLED_STATUSES and deposit.capture_authorization_id == deposit.active_authorization_id:
            logger.info("Capture already applied", extra_data={"deposit_id": deposit_id})
            return deposit

        ensure_transition(deposit, DepositStatus.CAPTURED)
        amount = deposit.hold_amount if amount is None else _require_amount(amount)
        if amount > deposit.hold_amount:
            raise ValidationError(
                "Cannot capture more than the authorized amount",
                field="amount",
                error_code=ErrorCode.INVALID_AMOUNT,
                details={"hold_amount": deposit.hold_amount},
            )

        claimed = await self.claim(deposit_id, OPERATION_CAPTURE)
        token = claimed.claim_token
        authorization_id = claimed.active_authorization_id
        try:
            result = await self.gateway.capture(
                authorization_id,
                amount,
                idempotency_key=f"capture:{deposit_id}:{authorization_id}",
            )
        except GatewayTerminalError as exc:
            return await self._fail_capture(deposit_id, token, authorization_id, amount, exc)
        except Exception:
            await self.release_claim(deposit_id, token)
            raise

        now = self.clock()
        captured_amount = min(result.captured_amount, claimed.hold_amount)

        def _apply(current: Deposit) -> Deposit:
            if current.status in SETTLED_STATUSES and current.capture_authorization_id == authorization_id:
                # the succeeded webhook got here first
                return current.without_claim() if current.claim_token == token else current
            entry = CaptureAttempt(
                authorization_id=authorization_id,
                amount=captured_amount,
                attempted_at=now,
                success=True,
            )
            return transition_to(
                current.without_claim() if current.claim_token == token else current,
                DepositStatus.CAPTURED,
                captured_amount=captured_amount,
                released_amount=current.hold_amount - captured_amount,
                capture_authorization_id=authorization_id,
                captured_at=now,
                capture_history=current.capture_history + (entry,),
                last_error=None,
                action_required=None,
            )

        deposit = await self._commit(deposit_id, _apply)
        logger.info(
            "Deposit captured",
            extra_data={"deposit_id": deposit_id, "captured_amount": captured_amount},
        )
        await self._notify(
            NOTIFY_CAPTURED,
            deposit,
            "Deposit captured",
            captured_amount=deposit.captured_amount,
            released_amount=deposit.released_amount,
            authorization_id=authorization_id,
        )
        return deposit

    async def _fail_capture(
        self,
        deposit_id: str,
        token: str,
        authorization_id: str,
        amount: int,
        exc: GatewayTerminalError,
    ) -> Deposit:
        now = self.clock()
        logger.warning(
            "Capture declined",
            extra_data={"deposit_id": deposit_id, "code": exc.code, "error": exc.message},
        )

        def _fail(current: Deposit) -> Deposit:
            entry = CaptureAttempt(
                authorization_id=authorization_id,
                amount=amount,
                attempted_at=now,
                success=False,
                error=exc.message,
            )
            base = current.without_claim() if current.claim_token == token else current
            if not is_valid_transition(base.status, DepositStatus.FAILED):
                return base.evolve(capture_history=base.capture_history + (entry,))
            return transition_to(
                base,
                DepositStatus.FAILED,
                last_error=_last_error(exc, now),
                capture_history=base.capture_history + (entry,),
            )

        return await self._commit(deposit_id, _fail)

    # ── release ──

    async def release(self, deposit_id: str) -> Deposit:
        deposit = await self.get(deposit_id)
        if deposit.status in (DepositStatus.RELEASED, DepositStatus.CANCELED):
            logger.info("Release already applied", extra_data={"deposit_id": deposit_id})
            return deposit

        ensure_transition(deposit, DepositStatus.RELEASED)
        claimed = await self.claim(deposit_id, OPERATION_RELEASE)
        token = claimed.claim_token
        try:
            await self.gateway.cancel(claimed.active_authorization_id)
        except GatewayTerminalError as exc:
            now = self.clock()
            logger.warning(
                "Release rejected by gateway",
                extra_data={"deposit_id": deposit_id, "code": exc.code, "error": exc.message},
            )

            def _record(current: Deposit) -> Deposit:
                base = current.without_claim() if current.claim_token == token else current
                return base.evolve(last_error=_last_error(exc, now))

            await self._commit(deposit_id, _record)
            raise
        except Exception:
            await self.release_claim(deposit_id, token)
            raise

        now = self.clock()

        def _apply(current: Deposit) -> Deposit:
            base = current.without_claim() if current.claim_token == token else current
            if base.status in (DepositStatus.RELEASED, DepositStatus.CANCELED):
                return base
            return transition_to(
                base,
                DepositStatus.RELEASED,
                released_amount=base.hold_amount,
                released_at=now,
                last_error=None,
                action_required=None,
            )

        deposit = await self._commit(deposit_id, _apply)
        logger.info("Deposit released", extra_data={"deposit_id": deposit_id})
        await self._notify(
            NOTIFY_RELEASED,
            deposit,
            "Deposit released",
            released_amount=deposit.released_amount,
            authorization_id=claimed.active_authorization_id,
        )
        return deposit

    # ── refund ──

    async def refund(self, deposit_id: str, amount: int, idempotency_key: Optional[str] = None) -> Deposit:
        deposit = await self.get(deposit_id)
        if idempotency_key and any(e.idempotency_key == idempotency_key for e in deposit.refund_history):
            logger.info("Refund already applied", extra_data={"deposit_id": deposit_id})
            return deposit
        if deposit.status == DepositStatus.REFUNDED:
            return deposit
        if deposit.status not in (DepositStatus.CAPTURED, DepositStatus.PARTIALLY_REFUNDED):
            raise InvalidStateTransitionError(
                deposit.status.value, DepositStatus.REFUNDED.value, deposit_id=deposit_id
            )

        amount = _require_amount(amount)
        if amount > deposit.refundable_amount:
            raise ValidationError(
                "Refund amount exceeds the available balance",
                field="amount",
                error_code=ErrorCode.INVALID_AMOUNT,
                details={"available": deposit.refundable_amount, "requested": amount},
            )

        key = idempotency_key or f"refund:{deposit_id}:{deposit.refunded_amount}:{amount}"
        authorization_id = deposit.capture_authorization_id
        try:
            result = await self.gateway.refund(authorization_id, amount, idempotency_key=key)
        except GatewayTerminalError as exc:
            now = self.clock()
            await self._commit(deposit_id, lambda current: current.evolve(last_error=_last_error(exc, now)))
            raise

        now = self.clock()

        def _apply(current: Deposit) -> Deposit:
            if any(e.idempotency_key == key for e in current.refund_history):
                return current
            if any(e.refund_id == result.id for e in current.refund_history):
                # charge.refunded committed this refund first
                return current.evolve(refund_history=tuple(
                    e.evolve(idempotency_key=key) if e.refund_id == result.id and e.idempotency_key is None else e
                    for e in current.refund_history
                ))
            refunded = current.refunded_amount + amount
            if refunded > current.captured_amount:
                raise ValidationError(
                    "Refund amount exceeds the available balance",
                    field="amount",
                    error_code=ErrorCode.INVALID_AMOUNT,
                )
            target = (
                DepositStatus.REFUNDED
                if refunded == current.captured_amount
                else DepositStatus.PARTIALLY_REFUNDED
            )
            entry = RefundEntry(
                refund_id=result.id,
                authorization_id=authorization_id,
                amount=amount,
                refunded_at=now,
                idempotency_key=key,
            )
            return transition_to(
                current,
                target,
                refunded_amount=refunded,
                refund_history=current.refund_history + (entry,),
                last_error=None,
            )

        deposit = await self._commit(deposit_id, _apply)
        logger.info(
            "Deposit refunded",
            extra_data={
                "deposit_id": deposit_id,
                "amount": amount,
                "refunded_amount": deposit.refunded_amount,
                "status": deposit.status.value,
            },
        )
        await self._notify(
            NOTIFY_REFUNDED,
            deposit,
            "Deposit refunded",
            amount=amount,
            refunded_amount=deposit.refunded_amount,
        )
        return deposit

    # ── reauthorization ──

    async def claim_for_reauthorization(self, deposit: Deposit) -> Deposit:
        """Claim against the observed authorization; a concurrent advance fails the claim"""
        return await self.claim(
            deposit.id,
            OPERATION_REAUTHORIZE,
            expected_authorization_id=deposit.active_authorization_id,
            expected_last_authorization_at=deposit.last_authorization_at,
        )

    async def reauthorize(self, deposit_id: str, claim_token: str) -> Deposit:
        """
        Replace the active hold with a fresh one for the same amount.

        The caller holds the claim. The pointer swap and the history entry
        are one commit; the superseded hold is canceled afterwards on a
        best-effort basis. Any error other than a decline releases the
        claim and propagates.
        """
        deposit = await self.get(deposit_id)
        if deposit.claim_token != claim_token:
            raise ConcurrencyConflictError("Deposit", deposit_id, "reauthorization claim lost")

        previous_id = deposit.active_authorization_id
        try:
            result = await self.gateway.authorize(
                deposit.hold_amount,
                deposit.currency,
                deposit.payment_method_id,
                deposit.customer_id,
                {**deposit.metadata, "deposit_id": deposit.id, "purpose": "security_deposit_reauthorization"},
                capture_method="manual",
                idempotency_key=f"reauth:{deposit.id}:{claim_token}",
            )
            if result.status != INTENT_REQUIRES_CAPTURE:
                if result.status != INTENT_CANCELED:
                    await self._cancel_quietly(result.id, deposit_id)
                raise _decline_from_result(result, f"Reauthorization not capturable: {result.status}")
        except GatewayTerminalError as exc:
            return await self._fail_reauthorization(deposit_id, claim_token, exc)
        except Exception:
            await self.release_claim(deposit_id, claim_token)
            raise

        now = self.clock()

        def _swap(current: Deposit) -> Deposit:
            if current.claim_token != claim_token:
                raise ConcurrencyConflictError("Deposit", deposit_id, "reauthorization claim lost")
            entry = AuthorizationAttempt(
                authorization_id=result.id,
                amount=current.hold_amount,
                attempted_at=now,
                success=True,
                status=result.status,
                reason=AuthorizationReason.REAUTHORIZATION,
            )
            return transition_to(
                current.without_claim(),
                DepositStatus.AUTHORIZED,
                active_authorization_id=result.id,
                last_authorization_at=now,
                authorization_history=current.authorization_history + (entry,),
                last_error=None,
                action_required=None,
            )

        try:
            updated = await self._commit(deposit_id, _swap)
        except ConflictError:
            # the new hold is not referenced by any record
            await self._cancel_quietly(result.id, deposit_id)
            raise

        logger.info(
            "Deposit reauthorized",
            extra_data={
                "deposit_id": deposit_id,
                "previous_authorization_id": previous_id,
                "authorization_id": result.id,
            },
        )
        await self._cancel_quietly(previous_id, deposit_id)
        await self._notify(
            NOTIFY_REAUTHORIZED,
            updated,
            "Deposit hold reauthorized",
            authorization_id=result.id,
            previous_authorization_id=previous_id,
        )
        return updated

    async def _fail_reauthorization(self, deposit_id: str, claim_token: str, exc: GatewayTerminalError) -> Deposit:
        now = self.clock()
        logger.warning(
            "Reauthorization declined",
            extra_data={"deposit_id": deposit_id, "code": exc.code, "error": exc.message},
        )

        def _fail(current: Deposit) -> Deposit:
            base = current.without_claim() if current.claim_token == claim_token else current
            entry = AuthorizationAttempt(
                amount=current.hold_amount,
                attempted_at=now,
                success=False,
                reason=AuthorizationReason.REAUTHORIZATION,
                error=exc.message,
            )
            if not is_valid_transition(base.status, DepositStatus.FAILED):
                return base.evolve(authorization_history=base.authorization_history + (entry,))
            return transition_to(
                base,
                DepositStatus.FAILED,
                last_error=_last_error(exc, now),
                authorization_history=base.authorization_history + (entry,),
            )

        deposit = await self._commit(deposit_id, _fail)
        await self._notify(NOTIFY_REAUTHORIZATION_FAILED, deposit, exc.message, code=exc.code)
        return deposit

    # ── requires_action ──

    async def resolve_action(self, deposit_id: str) -> Deposit:
        """Re-check a requires_action hold at the gateway and move it to authorized"""
        deposit = await self.get(deposit_id)
        if deposit.status == DepositStatus.AUTHORIZED:
            return deposit
        ensure_transition(deposit, DepositStatus.AUTHORIZED)

        authorization_id = (
            deposit.action_required.authorization_id
            if deposit.action_required and deposit.action_required.authorization_id
            else deposit.active_authorization_id
        )
        if not authorization_id:
            raise ConflictError(
                "Deposit has no authorization to resolve",
                ErrorCode.INVALID_STATE_TRANSITION,
                details={"deposit_id": deposit_id},
            )

        result = await self.gateway.retrieve(authorization_id)
        if result.status == INTENT_REQUIRES_CAPTURE:
            confirmed = await self.confirm_authorized(
                deposit_id, result.id, reason=AuthorizationReason.ACTION_RESOLVED
            )
            await self._notify_hold(confirmed, result.id)
            return confirmed
        if result.status == INTENT_CANCELED:
            return await self.mark_canceled(deposit_id, result.id)
        if result.status not in (INTENT_REQUIRES_ACTION, INTENT_PROCESSING):
            return await self.mark_authorization_failed(
                deposit_id,
                result.id,
                code=result.last_error_code or result.status,
                message=result.last_error_message or f"Authorization status: {result.status}",
            )
        raise ConflictError(
            "Authorization still awaits customer action",
            ErrorCode.INVALID_STATE_TRANSITION,
            details={"deposit_id": deposit_id, "gateway_status": result.status},
        )

    # ── gateway notifications ──
    # Each applies only when ``authorization_id`` is the live one (or the
    # captured one for settlement events); anything else is a stale or
    # superseded event and leaves the record untouched.

    def _ignore(self, current: Deposit, event: str, authorization_id: str, why: str) -> Deposit:
        logger.info(
            "Gateway notification ignored",
            extra_data={
                "deposit_id": current.id,
                "event": event,
                "authorization_id": authorization_id,
                "status": current.status.value,
                "reason": why,
            },
        )
        return current

    async def confirm_authorized(
        self,
        deposit_id: str,
        authorization_id: str,
        *,
        reason: AuthorizationReason = AuthorizationReason.WEBHOOK,
    ) -> Deposit:
        now = self.clock()

        def _apply(current: Deposit) -> Deposit:
            if authorization_id != current.active_authorization_id:
                return self._ignore(current, "authorized", authorization_id, "superseded")
            if current.status == DepositStatus.AUTHORIZED:
                return current
            if not is_valid_transition(current.status, DepositStatus.AUTHORIZED):
                return self._ignore(current, "authorized", authorization_id, "out of order")
            entry = AuthorizationAttempt(
                authorization_id=authorization_id,
                amount=current.hold_amount,
                attempted_at=now,
                success=True,
                status=INTENT_REQUIRES_CAPTURE,
                reason=reason,
            )
            return transition_to(
                current,
                DepositStatus.AUTHORIZED,
                initial_authorization_at=current.initial_authorization_at or now,
                last_authorization_at=now,
                authorization_history=current.authorization_history + (entry,),
                action_required=None,
                last_error=None,
            )

        return await self._commit(deposit_id, _apply)

    async def mark_requires_action(
        self,
        deposit_id: str,
        authorization_id: str,
        *,
        next_action: Optional[dict] = None,
        client_secret: Optional[str] = None,
    ) -> Deposit:
        def _apply(current: Deposit) -> Deposit:
            if authorization_id != current.active_authorization_id:
                return self._ignore(current, "requires_action", authorization_id, "superseded")
            if not is_valid_transition(current.status, DepositStatus.REQUIRES_ACTION):
                return self._ignore(current, "requires_action", authorization_id, "out of order")
            return transition_to(
                current,
                DepositStatus.REQUIRES_ACTION,
                action_required=ActionRequired(
                    type=(next_action or {}).get("type"),
                    authorization_id=authorization_id,
                    client_secret=client_secret,
                    next_action=next_action,
                ),
                last_error=None,
            )

        return await self._commit(deposit_id, _apply)

    async def mark_authorization_failed(
        self,
        deposit_id: str,
        authorization_id: str,
        *,
        code: Optional[str],
        message: str,
    ) -> Deposit:
        now = self.clock()

        def _apply(current: Deposit) -> Deposit:
            if authorization_id != current.active_authorization_id:
                return self._ignore(current, "payment_failed", authorization_id, "superseded")
            if not is_valid_transition(current.status, DepositStatus.FAILED):
                return self._ignore(current, "payment_failed", authorization_id, "out of order")
            return transition_to(
                current,
                DepositStatus.FAILED,
                last_error=LastError(code=code, message=message, occurred_at=now),
                action_required=None,
            )

        return await self._commit(deposit_id, _apply)

    async def mark_canceled(self, deposit_id: str, authorization_id: str) -> Deposit:
        now = self.clock()

        def _apply(current: Deposit) -> Deposit:
            if authorization_id != current.active_authorization_id:
                return self._ignore(current, "canceled", authorization_id, "superseded")
            if current.status in (DepositStatus.RELEASED, DepositStatus.CANCELED):
                return current
            if not is_valid_transition(current.status, DepositStatus.CANCELED):
                return self._ignore(current, "canceled", authorization_id, "out of order")
            return transition_to(
                current,
                DepositStatus.CANCELED,
                released_amount=current.hold_amount - current.captured_amount,
                released_at=now,
                action_required=None,
            )

        return await self._commit(deposit_id, _apply)

    async def mark_captured(self, deposit_id: str, authorization_id: str, amount: int) -> Deposit:
        now = self.clock()

        def _apply(current: Deposit) -> Deposit:
            if current.status in SETTLED_STATUSES:
                return current
            if authorization_id != current.active_authorization_id:
                return self._ignore(current, "succeeded", authorization_id, "superseded")
            if not is_valid_transition(current.status, DepositStatus.CAPTURED):
                return self._ignore(current, "succeeded", authorization_id, "out of order")
            captured_amount = min(amount, current.hold_amount)
            entry = CaptureAttempt(
                authorization_id=authorization_id,
                amount=captured_amount,
                attempted_at=now,
                success=True,
            )
            return transition_to(
                current,
                DepositStatus.CAPTURED,
                captured_amount=captured_amount,
                released_amount=current.hold_amount - captured_amount,
                capture_authorization_id=authorization_id,
                captured_at=now,
                capture_history=current.capture_history + (entry,),
                action_required=None,
                last_error=None,
            )

        return await self._commit(deposit_id, _apply)

    async def reconcile_refunds(
        self,
        deposit_id: str,
        authorization_id: str,
        refunds: Sequence[RefundResult],
    ) -> Deposit:
        """
        Record gateway refunds that are not in the history yet.

        ``refunds`` is the gateway's own list for the captured authorization,
        so each entry carries the real refund id and a refund that the
        synchronous path is about to commit is matched by id, never counted twice.
        """
        now = self.clock()
        live = [r for r in refunds if r.status not in REFUND_DEAD_STATUSES]

        def _apply(current: Deposit) -> Deposit:
            if authorization_id != current.capture_authorization_id:
                return self._ignore(current, "charge.refunded", authorization_id, "not the captured authorization")
            known = {e.refund_id for e in current.refund_history}
            refunded = current.refunded_amount
            entries = []
            for refund in reversed(live):
                if refund.id in known or refunded >= current.captured_amount:
                    continue
                amount = min(refund.amount, current.captured_amount - refunded)
                refunded += amount
                entries.append(RefundEntry(
                    refund_id=refund.id,
                    authorization_id=authorization_id,
                    amount=amount,
                    refunded_at=now,
                ))
            if not entries:
                return current
            target = (
                DepositStatus.REFUNDED
                if refunded == current.captured_amount
                else DepositStatus.PARTIALLY_REFUNDED
            )
            if not is_valid_transition(current.status, target):
                return self._ignore(current, "charge.refunded", authorization_id, "out of order")
            return transition_to(
                current,
                target,
                refunded_amount=refunded,
                refund_history=current.refund_history + tuple(entries),
            )

        return await self._commit(deposit_id, _apply)

    async def flag_dispute(
        self,
        deposit_id: str,
        authorization_id: str,
        dispute_id: str,
        reason: Optional[str] = None,
    ) -> Deposit:
        """Record an opened dispute as the pending action; status is unchanged"""

        def _apply(current: Deposit) -> Deposit:
            if authorization_id not in (current.capture_authorization_id, current.active_authorization_id):
                return self._ignore(current, "dispute", authorization_id, "unknown authorization")
            if current.action_required and current.action_required.dispute_id == dispute_id:
                return current
            return current.evolve(action_required=ActionRequired(
                type="dispute",
                authorization_id=authorization_id,
                dispute_id=dispute_id,
                reason=reason,
            ))

        deposit = await self._commit(deposit_id, _apply)
        logger.warning(
            "Dispute opened on deposit",
            extra_data={"deposit_id": deposit_id, "dispute_id": dispute_id, "reason": reason},
        )
        return deposit
