"""Tests for structured logging helpers."""

import logging
import pytest

from src.utils.logging import (
    correlation_context,
    get_correlation_id,
    get_structured_logger,
    log_timing,
    mask_employee_id,
    mask_location,
    mask_sensitive_data,
)


@pytest.mark.unit
def test_correlation_context_sets_and_resets():
    assert get_correlation_id() is None

    with correlation_context() as correlation_id:
        assert correlation_id.startswith("act_")
        assert get_correlation_id() == correlation_id
        with correlation_context("inner") as inner:
            assert get_correlation_id() == inner == "inner"
        assert get_correlation_id() == correlation_id

    assert get_correlation_id() is None


@pytest.mark.unit
def test_mask_location_rounds_to_degrees():
    assert mask_location("9.0301,38.7402") == "9.*,38.*"
    assert mask_location("-1.28, 36.82") == "-1.*,36.*"
    assert mask_location("Farm road 4") == "[REDACTED_LOCATION]"
    assert mask_location(None) is None


@pytest.mark.unit
def test_mask_employee_id():
    long_id = "3F2504E0-4F89-11D3-9A0C-0305E82C3301"
    masked = mask_employee_id(long_id)

    assert masked.startswith("3F25...")
    assert long_id not in masked
    assert mask_employee_id("A-1") == "A-1"
    assert mask_employee_id(None) is None


@pytest.mark.unit
def test_mask_sensitive_data():
    text = "Contact abebe@example.com or +251 911 234 567, auth Bearer abcdefghijklmnop"
    masked = mask_sensitive_data(text)

    assert "[REDACTED_EMAIL]" in masked
    assert "[REDACTED_PHONE]" in masked
    assert "Bearer [REDACTED]" in masked
    assert "abebe@example.com" not in masked


@pytest.mark.unit
def test_structured_logger_attaches_fields(caplog):
    logger = get_structured_logger("tests.structured")

    with caplog.at_level(logging.INFO, logger="tests.structured"):
        with correlation_context("act_test"):
            logger.info("Visit started", schedule_id="S-1")

    record = caplog.records[-1]
    assert record.schedule_id == "S-1"
    assert record.correlation_id == "act_test"
    assert record.timestamp


@pytest.mark.unit
def test_log_timing_reports_duration(caplog):
    logger = get_structured_logger("tests.timing")

    with caplog.at_level(logging.DEBUG, logger="tests.timing"):
        with log_timing("fill_visit", logger=logger, schedule_id="S-1"):
            pass

    completed = [record for record in caplog.records if record.getMessage() == "Completed fill_visit"]
    assert completed
    assert completed[0].processing_time_ms >= 0
    assert completed[0].schedule_id == "S-1"


@pytest.mark.unit
def test_setup_logging_installs_json_handler():
    """Test the root logger gets a single JSON handler at the requested level."""
    from pythonjsonlogger import jsonlogger
    from src.utils.logging_config import LoggingConfig

    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    try:
        LoggingConfig.setup_logging("debug")

        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, jsonlogger.JsonFormatter)
        assert logging.getLogger("httpx").level == logging.WARNING
    finally:
        root.handlers[:] = saved_handlers
        root.setLevel(saved_level)
