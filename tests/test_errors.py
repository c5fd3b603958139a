import logging

from climate_insight.errors import (
    ErrorCategory,
    ErrorCode,
    ErrorReporter,
    ErrorSeverity,
    RemoteFailureError,
    RetryExhaustedError,
)
from climate_insight.logging_utils import configure_logging, get_error_info


def test_plain_exceptions_are_normalised():
    reporter = ErrorReporter()
    error = reporter.handle(KeyError("boom"), operation="forecast")
    assert error.code is ErrorCode.UNKNOWN_ERROR
    assert isinstance(error.__cause__, KeyError)
    assert error.context["operation"] == "forecast"
    assert error.context["session_id"] == reporter.session_id


def test_log_is_bounded_and_clearable():
    reporter = ErrorReporter(limit=100)
    for i in range(105):
        reporter.handle(RemoteFailureError(f"failure {i}"))
    log = reporter.error_log()
    assert len(log) == 100
    assert str(log[0]) == "failure 5"
    reporter.clear()
    assert len(reporter) == 0


def test_severity_maps_to_log_level(caplog):
    reporter = ErrorReporter()
    with caplog.at_level(logging.INFO, logger="climate_insight.errors"):
        reporter.handle(RetryExhaustedError("op", 3, RuntimeError("down")))
        reporter.report(ErrorCode.ALERT_FAILURE, "notify failed", severity=ErrorSeverity.LOW)
    levels = [r.levelno for r in caplog.records if "Exception occurred" in r.getMessage()]
    assert levels == [logging.ERROR, logging.INFO]


def test_report_records_cause_type():
    reporter = ErrorReporter()
    error = reporter.report(
        ErrorCode.SUBSCRIPTION_CALLBACK_FAILURE,
        "listener failed",
        category=ErrorCategory.SUBSCRIPTION,
        cause=ValueError("bad"),
        topic="co2:germany",
    )
    data = error.to_dict()
    assert data["code"] == "SUBSCRIPTION_CALLBACK_FAILURE"
    assert data["context"]["cause"] == "ValueError"
    assert data["context"]["topic"] == "co2:germany"


def test_user_messages_by_category_and_severity():
    assert RetryExhaustedError("op", 1, RuntimeError()).user_message == "Unable to fetch climate data"
    assert RemoteFailureError("x", category=ErrorCategory.NETWORK).user_message == "Network connection problem"


def test_get_error_info_and_configure_logging():
    info = get_error_info(ValueError("bad"), {"step": "parse"})
    assert info["error_type"] == "ValueError"
    assert info["context"] == {"step": "parse"}
    root = logging.getLogger()
    saved = list(root.handlers), root.level
    try:
        logger = configure_logging("WARNING")
        assert logger.name == "climate_insight"
        assert len(root.handlers) == 1
        assert root.handlers[0].level == logging.WARNING
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


def test_handle_leaves_original_error_untouched():
    reporter = ErrorReporter()
    original = RemoteFailureError("down", context={"attempt": 1})
    first = reporter.handle(original, operation="forecast")
    second = reporter.handle(original, operation="narrative")
    assert original.context == {"attempt": 1}
    assert first.context["operation"] == "forecast"
    assert second.context["operation"] == "narrative"
    assert type(second) is RemoteFailureError
    assert str(second) == "down"
