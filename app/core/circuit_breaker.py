"""
Circuit breaker for payment gateway calls.

After ``failure_threshold`` consecutive transient failures the breaker opens
and every call fails fast with CircuitBreakerOpenError. That error is itself a
GatewayTransientError, so a deferred webhook or reauthorization simply lands
in the retry queue. Once ``timeout_seconds`` elapse a limited number of trial
calls go through (half-open); ``success_threshold`` successes close it again.
"""
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from app.core.exceptions import CircuitBreakerOpenError
from app.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    timeout_seconds: float = 30.0
    half_open_max_calls: int = 3


def _count_every_error(error: Exception) -> bool:
    return True


class CircuitBreaker:
    """
    ``is_failure`` selects which exceptions count against the gateway. A card
    decline is a normal answer from a healthy gateway and must not open it.
    """

    def __init__(
        self,
        service_name: str,
        config: Optional[CircuitBreakerConfig] = None,
        is_failure: Callable[[Exception], bool] = _count_every_error,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.config = config or CircuitBreakerConfig()
        self.is_failure = is_failure
        self.clock = clock
        self._state = CircuitState.CLOSED
        self._consecutive_failures = 0
        self._half_open_successes = 0
        self._trial_calls_in_flight = 0
        self._opened_at = 0.0
        # threading.Lock ולא asyncio.Lock - כל task של Celery רץ ב-event loop משלו
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._state is CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        return self._state is CircuitState.OPEN

    @property
    def is_half_open(self) -> bool:
        return self._state is CircuitState.HALF_OPEN

    def _set_state(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.info(
            "Gateway circuit breaker state changed",
            extra_data={
                "service": self.service_name,
                "from": self._state.value,
                "to": new_state.value,
                "consecutive_failures": self._consecutive_failures,
            },
        )
        self._state = new_state
        self._half_open_successes = 0
        self._trial_calls_in_flight = 0
        if new_state is CircuitState.OPEN:
            self._opened_at = self.clock()
        elif new_state is CircuitState.CLOSED:
            self._consecutive_failures = 0

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                if self._half_open_successes >= self.config.success_threshold:
                    self._set_state(CircuitState.CLOSED)
            else:
                self._consecutive_failures = 0

    def record_failure(self, error: Optional[Exception] = None) -> None:
        with self._lock:
            self._consecutive_failures += 1
            logger.warning(
                "Gateway call failed",
                extra_data={
                    "service": self.service_name,
                    "consecutive_failures": self._consecutive_failures,
                    "threshold": self.config.failure_threshold,
                    "error": str(error) if error else None,
                },
            )
            # a failed trial call reopens immediately
            if (
                self._state is CircuitState.HALF_OPEN
                or self._consecutive_failures >= self.config.failure_threshold
            ):
                self._set_state(CircuitState.OPEN)

    def can_execute(self) -> bool:
        with self._lock:
            if self._state is CircuitState.OPEN:
                if self.clock() - self._opened_at < self.config.timeout_seconds:
                    return False
                self._set_state(CircuitState.HALF_OPEN)
            if self._state is CircuitState.HALF_OPEN:
                if self._trial_calls_in_flight >= self.config.half_open_max_calls:
                    return False
                self._trial_calls_in_flight += 1
            return True

    def get_retry_after(self) -> float:
        """Seconds until the next trial call is allowed; 0 unless open"""
        if self._state is not CircuitState.OPEN:
            return 0.0
        return max(0.0, self.config.timeout_seconds - (self.clock() - self._opened_at))

    async def execute(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """
        Await ``func(*args, **kwargs)`` unless the breaker is open.

        Raises:
            CircuitBreakerOpenError: the breaker is open or out of trial calls.
        """
        if not self.can_execute():
            raise CircuitBreakerOpenError(self.service_name, self.get_retry_after())

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            if self.is_failure(e):
                self.record_failure(e)
            else:
                self.record_success()
            raise

        self.record_success()
        return result
