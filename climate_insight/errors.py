from __future__ import annotations

import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional, Sequence

from climate_insight.logging_utils import get_error_info, log_exception

LOGGER = logging.getLogger(__name__)

ERROR_LOG_LIMIT = 100


class ErrorCode(str, Enum):
    INVALID_PARAMS = "INVALID_PARAMS"
    REMOTE_FAILURE = "REMOTE_FAILURE"
    RETRY_EXHAUSTED = "RETRY_EXHAUSTED"
    RETRY_CANCELLED = "RETRY_CANCELLED"
    BACKEND_UNAVAILABLE = "BACKEND_UNAVAILABLE"
    RESPONSE_INVALID = "RESPONSE_INVALID"
    SUBSCRIPTION_CALLBACK_FAILURE = "SUBSCRIPTION_CALLBACK_FAILURE"
    SUBSCRIPTION_FETCH_FAILURE = "SUBSCRIPTION_FETCH_FAILURE"
    STREAM_FAILURE = "STREAM_FAILURE"
    ALERT_FAILURE = "ALERT_FAILURE"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    API = "api"
    NETWORK = "network"
    SUBSCRIPTION = "subscription"


_USER_MESSAGES: Dict[ErrorCategory, Dict[ErrorSeverity, str]] = {
    ErrorCategory.NETWORK: {
        ErrorSeverity.LOW: "Connection issue detected",
        ErrorSeverity.MEDIUM: "Network connection problem",
        ErrorSeverity.HIGH: "Unable to connect to climate data services",
        ErrorSeverity.CRITICAL: "Critical network failure - please check your connection",
    },
    ErrorCategory.API: {
        ErrorSeverity.LOW: "Data retrieval delay",
        ErrorSeverity.MEDIUM: "Climate data service temporarily unavailable",
        ErrorSeverity.HIGH: "Unable to fetch climate data",
        ErrorSeverity.CRITICAL: "Climate data services are currently down",
    },
    ErrorCategory.VALIDATION: {
        ErrorSeverity.LOW: "Please check your input",
        ErrorSeverity.MEDIUM: "Invalid data provided",
        ErrorSeverity.HIGH: "Required information is missing or incorrect",
        ErrorSeverity.CRITICAL: "Critical data validation failure",
    },
}

_LOG_LEVELS = {
    ErrorSeverity.LOW: logging.INFO,
    ErrorSeverity.MEDIUM: logging.WARNING,
    ErrorSeverity.HIGH: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.ERROR,
}


class InsightError(Exception):
    code = ErrorCode.UNKNOWN_ERROR
    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.API
    recoverable = True
    # Retry policies propagate these immediately.
    retryable = True

    def __init__(
        self,
        message: str,
        *,
        code: Optional[ErrorCode] = None,
        severity: Optional[ErrorSeverity] = None,
        category: Optional[ErrorCategory] = None,
        context: Optional[Dict[str, Any]] = None,
        recoverable: Optional[bool] = None,
    ):
        super().__init__(message)
        if code is not None:
            self.code = code
        if severity is not None:
            self.severity = severity
        if category is not None:
            self.category = category
        if recoverable is not None:
            self.recoverable = recoverable
        self.context: Dict[str, Any] = dict(context or {})
        self.timestamp = datetime.now(timezone.utc)

    def with_context(self, **context: Any) -> "InsightError":
        """Copy of this error with extra context; the original is left untouched."""
        clone = self.__class__.__new__(self.__class__)
        clone.__dict__.update(self.__dict__)
        clone.args = self.args
        clone.context = {**self.context, **context}
        clone.__cause__ = self.__cause__
        clone.__traceback__ = self.__traceback__
        return clone

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES.get(self.category, {}).get(
            self.severity, "An unexpected error occurred"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": str(self),
            "severity": self.severity.value,
            "category": self.category.value,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


class FieldError:
    __slots__ = ("field", "message")

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FieldError):
            return NotImplemented
        return (self.field, self.message) == (other.field, other.message)

    def __repr__(self) -> str:
        return f"FieldError({self.field!r}, {self.message!r})"


class ValidationError(InsightError):
    code = ErrorCode.INVALID_PARAMS
    severity = ErrorSeverity.MEDIUM
    category = ErrorCategory.VALIDATION
    recoverable = False
    retryable = False

    def __init__(self, failures: Sequence[FieldError], **kwargs: Any):
        self.failures: List[FieldError] = list(failures)
        summary = ", ".join(f"{f.field}: {f.message}" for f in self.failures)
        super().__init__(f"Request validation failed: {summary}", **kwargs)


class RemoteFailureError(InsightError):
    code = ErrorCode.REMOTE_FAILURE
    severity = ErrorSeverity.MEDIUM


class BackendUnavailableError(InsightError):
    code = ErrorCode.BACKEND_UNAVAILABLE
    severity = ErrorSeverity.HIGH
    retryable = False


class ResponseShapeError(InsightError):
    code = ErrorCode.RESPONSE_INVALID
    severity = ErrorSeverity.MEDIUM
    retryable = False


class RetryExhaustedError(InsightError):
    code = ErrorCode.RETRY_EXHAUSTED
    severity = ErrorSeverity.HIGH
    recoverable = False

    def __init__(self, operation_id: str, attempts: int, last_error: BaseException):
        self.operation_id = operation_id
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"Operation failed after {attempts} retries: {last_error}",
            context={"operation_id": operation_id, "attempts": attempts},
        )


class RetryCancelledError(InsightError):
    code = ErrorCode.RETRY_CANCELLED
    severity = ErrorSeverity.LOW
    retryable = False

    def __init__(self, operation_id: str, attempts: int):
        self.operation_id = operation_id
        self.attempts = attempts
        super().__init__(
            f"Retry cancelled for {operation_id} after {attempts} retries",
            context={"operation_id": operation_id, "attempts": attempts},
        )


class ErrorReporter:
    """Error-handling boundary: logs, keeps a bounded history, never raises."""

    def __init__(self, limit: int = ERROR_LOG_LIMIT, logger: Optional[logging.Logger] = None):
        self.session_id = uuid.uuid4().hex[:12]
        self._log: Deque[InsightError] = deque(maxlen=limit)
        self._logger = logger or LOGGER

    def handle(self, error: BaseException, **context: Any) -> InsightError:
        app_error = self._normalize(error).with_context(**context)
        app_error.context.setdefault("session_id", self.session_id)
        self._log.append(app_error)
        log_exception(
            self._logger,
            error,
            context=f"[{app_error.code.value}] {app_error.category.value}",
            level=_LOG_LEVELS.get(app_error.severity, logging.WARNING),
            details=app_error.context,
        )
        return app_error

    def report(
        self,
        code: ErrorCode,
        message: str,
        *,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.API,
        cause: Optional[BaseException] = None,
        **context: Any,
    ) -> InsightError:
        error = InsightError(
            message, code=code, severity=severity, category=category, context=context
        )
        if cause is not None:
            error.__cause__ = cause
            error.context.setdefault("cause", get_error_info(cause)["error_type"])
        return self.handle(error)

    def error_log(self) -> List[InsightError]:
        return list(self._log)

    def clear(self) -> None:
        self._log.clear()

    def __len__(self) -> int:
        return len(self._log)

    @staticmethod
    def _normalize(error: BaseException) -> InsightError:
        if isinstance(error, InsightError):
            return error
        wrapped = InsightError(str(error) or type(error).__name__)
        wrapped.__cause__ = error
        return wrapped
