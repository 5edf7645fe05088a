"""
Tests for the gateway circuit breaker
"""
import pytest

from app.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitState,
)
from app.core.exceptions import (
    CircuitBreakerOpenError,
    GatewayTerminalError,
    GatewayTransientError,
)


class _Ticker:
    """שעון מונוטוני מדומה"""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def _ok():
    return "ok"


async def _outage():
    raise GatewayTransientError("Stripe 503", http_status=503)


class TestCircuitBreaker:
    """Tests for circuit breaker functionality"""

    @pytest.fixture
    def ticker(self) -> _Ticker:
        return _Ticker()

    @pytest.fixture
    def breaker(self, ticker) -> CircuitBreaker:
        return CircuitBreaker(
            "stripe-test",
            CircuitBreakerConfig(failure_threshold=3, success_threshold=2, timeout_seconds=30, half_open_max_calls=2),
            is_failure=lambda exc: isinstance(exc, GatewayTransientError),
            clock=ticker,
        )

    @staticmethod
    async def _open(breaker: CircuitBreaker) -> None:
        for _ in range(3):
            with pytest.raises(GatewayTransientError):
                await breaker.execute(_outage)

    @pytest.mark.unit
    async def test_starts_closed(self, breaker):
        assert breaker.state is CircuitState.CLOSED
        assert await breaker.execute(_ok) == "ok"
        assert breaker.is_closed

    @pytest.mark.unit
    async def test_consecutive_failures_open(self, breaker):
        await self._open(breaker)
        assert breaker.is_open

    @pytest.mark.unit
    async def test_success_resets_failure_streak(self, breaker):
        for _ in range(2):
            with pytest.raises(GatewayTransientError):
                await breaker.execute(_outage)
        await breaker.execute(_ok)
        for _ in range(2):
            with pytest.raises(GatewayTransientError):
                await breaker.execute(_outage)

        assert breaker.is_closed

    @pytest.mark.unit
    async def test_open_breaker_fails_fast_as_transient(self, breaker):
        """breaker פתוח = כשל זמני, כדי שתור ה-retry ינסה שוב"""
        await self._open(breaker)
        calls = []

        async def _tracked():
            calls.append(1)

        with pytest.raises(CircuitBreakerOpenError) as exc_info:
            await breaker.execute(_tracked)

        assert isinstance(exc_info.value, GatewayTransientError)
        assert "stripe-test" in exc_info.value.message
        assert calls == []

    @pytest.mark.unit
    async def test_retry_after_counts_down(self, breaker, ticker):
        await self._open(breaker)
        assert breaker.get_retry_after() == 30

        ticker.now += 12
        assert breaker.get_retry_after() == 18

    @pytest.mark.unit
    async def test_trial_calls_close_after_timeout(self, breaker, ticker):
        await self._open(breaker)
        ticker.now += 30

        assert await breaker.execute(_ok) == "ok"
        assert breaker.is_half_open
        assert await breaker.execute(_ok) == "ok"
        assert breaker.is_closed

    @pytest.mark.unit
    async def test_failed_trial_call_reopens(self, breaker, ticker):
        await self._open(breaker)
        ticker.now += 30

        with pytest.raises(GatewayTransientError):
            await breaker.execute(_outage)

        assert breaker.is_open
        assert breaker.get_retry_after() == 30

    @pytest.mark.unit
    def test_half_open_limits_trial_calls(self, breaker, ticker):
        for _ in range(3):
            breaker.record_failure()
        ticker.now += 30

        assert breaker.can_execute()
        assert breaker.can_execute()
        assert not breaker.can_execute()

    @pytest.mark.unit
    async def test_declines_do_not_open(self, breaker):
        """decline מ-gateway תקין לא נספר ככשל"""
        async def decline():
            raise GatewayTerminalError("Your card was declined.", code="card_declined")

        for _ in range(5):
            with pytest.raises(GatewayTerminalError):
                await breaker.execute(decline)

        assert breaker.is_closed
