"""
Tests for Logging Infrastructure
"""
import json
import logging
from io import StringIO

import pytest

from fulfillment.core.logging import (
    ContextIdsFilter,
    JSONFormatter,
    bind_event_id,
    event_id_var,
    generate_correlation_id,
    get_correlation_id,
    get_logger,
    log_async_operation,
    set_correlation_id,
)
from fulfillment.domain.services.webhook_processor import WebhookProcessor

from tests.factories import make_event


@pytest.fixture
def log_stream() -> StringIO:
    return StringIO()


@pytest.fixture
def json_logger(log_stream: StringIO):
    """logger עם JSONFormatter שכותב ל-StringIO; מנותק בסוף הבדיקה"""
    handler = logging.StreamHandler(log_stream)
    handler.setFormatter(JSONFormatter())

    created = []

    def _make(name: str, level: int = logging.INFO):
        logger = get_logger(name)
        logger.addHandler(handler)
        logger.setLevel(level)
        created.append(logger)
        return logger

    yield _make

    for logger in created:
        logger.removeHandler(handler)


def _entries(log_stream: StringIO) -> list[dict]:
    return [json.loads(line) for line in log_stream.getvalue().splitlines() if line]


class TestCorrelationId:

    @pytest.mark.unit
    def test_generate_correlation_id(self):
        cid = generate_correlation_id()

        assert len(cid) == 8
        assert cid.isalnum()

    @pytest.mark.unit
    def test_set_and_get_correlation_id(self):
        assert set_correlation_id("test1234") == "test1234"
        assert get_correlation_id() == "test1234"

    @pytest.mark.unit
    def test_set_correlation_id_generates_if_none(self):
        result = set_correlation_id(None)

        assert len(result) == 8
        assert get_correlation_id() == result


class TestEventIdBinding:

    @pytest.mark.unit
    def test_bind_restores_previous_value(self):
        with bind_event_id("evt_outer"):
            with bind_event_id("evt_inner"):
                assert event_id_var.get() == "evt_inner"
            assert event_id_var.get() == "evt_outer"
        assert event_id_var.get() == ""

    @pytest.mark.unit
    def test_bind_restores_after_exception(self):
        with pytest.raises(RuntimeError):
            with bind_event_id("evt_boom"):
                raise RuntimeError("boom")

        assert event_id_var.get() == ""

    @pytest.mark.unit
    def test_plain_text_filter_fills_placeholders(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "msg", None, None)

        with bind_event_id("evt_plain"):
            ContextIdsFilter().filter(record)

        assert record.event_id == "evt_plain"
        assert record.correlation_id


class TestJSONFormatter:

    @pytest.mark.unit
    def test_json_format_basic(self, json_logger, log_stream):
        json_logger("test_json_basic").info("Test message")

        entry = _entries(log_stream)[0]
        assert entry["level"] == "INFO"
        assert entry["message"] == "Test message"
        assert entry["logger"] == "test_json_basic"
        assert entry["timestamp"].endswith("Z")

    @pytest.mark.unit
    def test_json_format_with_context_ids(self, json_logger, log_stream):
        set_correlation_id("testcorr")
        logger = json_logger("test_json_ids")

        with bind_event_id("evt_ctx"):
            logger.info("inside")
        logger.info("outside")

        inside, outside = _entries(log_stream)
        assert inside["correlation_id"] == "testcorr"
        assert inside["event_id"] == "evt_ctx"
        assert "event_id" not in outside

    @pytest.mark.unit
    def test_json_format_with_exception(self, json_logger, log_stream):
        logger = json_logger("test_json_exc", logging.ERROR)

        try:
            raise ValueError("Test error")
        except ValueError:
            logger.error("Error occurred", exc_info=True)

        entry = _entries(log_stream)[0]
        assert entry["level"] == "ERROR"
        assert "ValueError" in entry["exception"]

    @pytest.mark.unit
    def test_extra_data(self, json_logger, log_stream):
        json_logger("test.extra").info("with data", extra_data={"order_id": 123, "action": "test"})

        entry = _entries(log_stream)[0]
        assert entry["extra"] == {"order_id": 123, "action": "test"}


class TestProcessorLogging:

    @pytest.mark.unit
    async def test_processor_logs_carry_event_id(
        self, json_logger, log_stream, db_session, reliability
    ):
        json_logger("fulfillment.domain.services.webhook_processor", logging.DEBUG)
        event = make_event("customer.created", {"id": "cus_1"}, event_id="evt_logged")

        await WebhookProcessor(db_session, reliability).process(event)

        entries = _entries(log_stream)
        assert entries
        assert all(e["event_id"] == "evt_logged" for e in entries)
        assert event_id_var.get() == ""


class TestAsyncLoggingDecorator:

    @pytest.mark.unit
    async def test_log_async_operation_success(self):
        @log_async_operation("test_operation")
        async def success_func():
            return "success"

        assert await success_func() == "success"

    @pytest.mark.unit
    async def test_log_async_operation_failure(self):
        @log_async_operation("failing_operation")
        async def failing_func():
            raise ValueError("Test failure")

        with pytest.raises(ValueError):
            await failing_func()
