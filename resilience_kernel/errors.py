"""
Error taxonomy for the resilience kernel.

Every error carries a structured ErrorKind assigned where it is raised
(the transport boundary for daemon I/O), so callers classify failures by
kind rather than by inspecting message text.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TIMEOUT = "timeout"
    ABORTED = "aborted"
    CONNECTION_REFUSED = "connection_refused"
    EMPTY_BODY = "empty_body"
    PARSE_EMPTY = "parse_empty"
    PARSE_ERROR = "parse_error"
    HTTP_STATUS = "http_status"
    CIRCUIT_OPEN = "circuit_open"
    RETRY_EXHAUSTED = "retry_exhausted"
    INVALID_REQUEST = "invalid_request"
    UNKNOWN = "unknown"


# Transport noise that an idle long-poll produces as a matter of course.
EXPECTED_POLL_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.ABORTED,
    ErrorKind.EMPTY_BODY,
    ErrorKind.PARSE_EMPTY,
})


class ResilienceError(Exception):
    """Base class for all kernel errors."""

    default_kind = ErrorKind.UNKNOWN

    def __init__(
        self,
        message: str,
        kind: Optional[ErrorKind] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.status_code = status_code

    def to_dict(self) -> dict:
        return {
            "error": type(self).__name__,
            "kind": self.kind.value,
            "message": self.message,
            "status_code": self.status_code,
        }


class TransientError(ResilienceError):
    """Network or timeout failure; worth retrying."""

    default_kind = ErrorKind.ABORTED


class ProbeTimeoutError(ResilienceError):
    """A health probe did not answer within its timeout."""

    default_kind = ErrorKind.TIMEOUT

    def __init__(self, check_name: str, timeout: float):
        super().__init__(f"Health check timeout after {timeout:g}s")
        self.check_name = check_name
        self.timeout = timeout


class CircuitOpenError(ResilienceError):
    """The circuit breaker refused the call without invoking it."""

    default_kind = ErrorKind.CIRCUIT_OPEN

    def __init__(self, message: str = "Circuit breaker is open", retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["retry_after"] = round(self.retry_after, 3)
        return data


class NonRetryableError(ResilienceError):
    """A failure that retrying cannot fix (e.g., a malformed request)."""

    default_kind = ErrorKind.INVALID_REQUEST

    def __init__(
        self,
        message: str,
        cause: Optional[BaseException] = None,
        kind: Optional[ErrorKind] = None,
        status_code: Optional[int] = None,
    ):
        if kind is None and isinstance(cause, ResilienceError):
            kind = cause.kind
        super().__init__(message, kind=kind, status_code=status_code)
        self.cause = cause


class RetryExhaustedError(ResilienceError):
    """Every allowed attempt failed; wraps the last underlying error."""

    default_kind = ErrorKind.RETRY_EXHAUSTED

    def __init__(self, last_error: BaseException, attempts: int):
        super().__init__(f"Operation failed after {attempts} attempts: {last_error}")
        self.last_error = last_error
        self.attempts = attempts

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["attempts"] = self.attempts
        data["last_error"] = str(self.last_error)
        return data


def describe_error(error: BaseException) -> str:
    """Short, human-readable description of any exception."""
    message = str(error)
    return message if message else type(error).__name__
