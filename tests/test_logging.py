"""
Tests for structured logging
"""
import json
import logging
from io import StringIO

import pytest

from app.core.logging import (
    CorrelationIdFilter,
    JSONFormatter,
    correlation_id_var,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    log_async_operation,
    set_correlation_id,
)


@pytest.fixture
def capture():
    """מחזיר (logger, stream) עם handler בפורמט JSON"""
    handlers = []

    def _capture(name: str, level: int = logging.DEBUG):
        stream = StringIO()
        handler = logging.StreamHandler(stream)
        handler.setFormatter(JSONFormatter(app_name="deposit-hold-test"))
        logger = get_logger(name)
        logger.addHandler(handler)
        logger.setLevel(level)
        handlers.append((logger, handler))
        return logger, stream

    yield _capture
    for logger, handler in handlers:
        logger.removeHandler(handler)


def _entries(stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in stream.getvalue().splitlines()]


class TestCorrelationId:

    @pytest.mark.unit
    def test_generated_ids_are_short_and_distinct(self):
        ids = {generate_correlation_id() for _ in range(50)}

        assert len(ids) == 50
        assert all(len(cid) == 8 for cid in ids)

    @pytest.mark.unit
    def test_explicit_id_is_kept(self):
        assert set_correlation_id("evt-corr") == "evt-corr"
        assert get_correlation_id() == "evt-corr"

    @pytest.mark.unit
    def test_missing_id_is_generated(self):
        cid = set_correlation_id(None)

        assert len(cid) == 8
        assert get_correlation_id() == cid


class TestJSONFormatter:

    @pytest.mark.unit
    def test_entry_fields(self, capture):
        logger, stream = capture("test.json.fields")

        logger.info("Hold placed")

        entry = _entries(stream)[0]
        assert entry["level"] == "INFO"
        assert entry["message"] == "Hold placed"
        assert entry["app"] == "deposit-hold-test"
        assert entry["logger"] == "test.json.fields"
        assert entry["timestamp"].endswith("+00:00")
        assert "test_entry_fields" in entry["location"]

    @pytest.mark.unit
    def test_correlation_id_included(self, capture):
        logger, stream = capture("test.json.corr")
        set_correlation_id("tick-42")

        logger.info("Scheduler tick")

        assert _entries(stream)[0]["correlation_id"] == "tick-42"

    @pytest.mark.unit
    def test_exception_traceback_included(self, capture):
        logger, stream = capture("test.json.exc")

        try:
            raise RuntimeError("gateway exploded")
        except RuntimeError:
            logger.error("Capture failed", exc_info=True)

        entry = _entries(stream)[0]
        assert entry["level"] == "ERROR"
        assert "RuntimeError: gateway exploded" in entry["exception"]


class TestStructuredLogger:

    @pytest.mark.unit
    @pytest.mark.parametrize("method", ["debug", "info", "warning", "error", "critical"])
    def test_extra_data_on_every_level(self, capture, method):
        logger, stream = capture(f"test.extra.{method}")

        getattr(logger, method)("Deposit captured", extra_data={"deposit_id": "dep_1", "captured_amount": 15000})

        entry = _entries(stream)[0]
        assert entry["extra"] == {"deposit_id": "dep_1", "captured_amount": 15000}

    @pytest.mark.unit
    def test_no_extra_key_without_extra_data(self, capture):
        logger, stream = capture("test.extra.none")

        logger.info("plain")

        assert "extra" not in _entries(stream)[0]

    @pytest.mark.unit
    def test_level_filtering_still_applies(self, capture):
        logger, stream = capture("test.extra.level", level=logging.WARNING)

        logger.info("dropped", extra_data={"x": 1})

        assert stream.getvalue() == ""

    @pytest.mark.unit
    def test_security_event_is_tagged_warning(self, capture):
        """security_event כותב WARNING עם דגל לסקירה"""
        logger, stream = capture("test.security")

        logger.security_event("Webhook signature rejected", extra_data={"reason": "mismatch"})

        entry = _entries(stream)[0]
        assert entry["level"] == "WARNING"
        assert entry["extra"] == {"reason": "mismatch", "security_event": True}


class TestCorrelationIdFilter:

    @pytest.mark.unit
    def test_plain_format_shows_dash_without_id(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
        token = correlation_id_var.set("")
        try:
            assert CorrelationIdFilter().filter(record)
        finally:
            correlation_id_var.reset(token)

        assert record.correlation_id == "-"

    @pytest.mark.unit
    def test_plain_format_shows_bound_id(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)
        set_correlation_id("req-7")

        CorrelationIdFilter().filter(record)

        assert record.correlation_id == "req-7"


class TestAsyncOperationLogging:

    @pytest.mark.unit
    async def test_success_logs_completion(self, capture):
        logger, stream = capture(__name__)

        @log_async_operation("reauthorization_tick")
        async def tick():
            return {"scanned": 3}

        assert await tick() == {"scanned": 3}

        messages = [e["message"] for e in _entries(stream)]
        assert messages == ["reauthorization_tick started", "reauthorization_tick completed"]

    @pytest.mark.unit
    async def test_failure_is_logged_and_reraised(self, capture):
        logger, stream = capture(__name__)

        @log_async_operation("retry_queue_pass")
        async def broken():
            raise ValueError("storage down")

        with pytest.raises(ValueError):
            await broken()

        failure = _entries(stream)[-1]
        assert failure["level"] == "ERROR"
        assert failure["extra"]["error"] == "storage down"
