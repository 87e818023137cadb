from enum import Enum
from typing import Optional


class ApiErrorCode(str, Enum):
    """Failure codes surfaced by the remote activity API client."""
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    CONCURRENT_LIMIT_EXCEEDED = "CONCURRENT_LIMIT_EXCEEDED"
    DAILY_QUOTA_EXCEEDED = "DAILY_QUOTA_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_INPUT = "INVALID_INPUT"
    OTHER = "OTHER"


class ErrorKind(str, Enum):
    RETRYABLE = "RETRYABLE"
    FATAL = "FATAL"
    UNKNOWN = "UNKNOWN"


# Only limiter errors are worth waiting out; everything else is permanent for this run.
_KIND_BY_CODE = {
    ApiErrorCode.RATE_LIMIT_EXCEEDED: ErrorKind.RETRYABLE,
    ApiErrorCode.CONCURRENT_LIMIT_EXCEEDED: ErrorKind.RETRYABLE,
    ApiErrorCode.DAILY_QUOTA_EXCEEDED: ErrorKind.FATAL,
    ApiErrorCode.NOT_FOUND: ErrorKind.FATAL,
    ApiErrorCode.INVALID_INPUT: ErrorKind.FATAL,
    ApiErrorCode.OTHER: ErrorKind.UNKNOWN,
}


class RemoteApiError(Exception):
    """
    Raised by the activity API client with the failure already classified.
    The code is the only thing the retry and saga layers look at.
    """

    def __init__(self, code: ApiErrorCode, message: Optional[str] = None, status_code: Optional[int] = None):
        self.code = code
        self.status_code = status_code
        super().__init__(message or code.value)

    @property
    def kind(self) -> ErrorKind:
        return _KIND_BY_CODE.get(self.code, ErrorKind.UNKNOWN)


class SagaNotResumableError(Exception):
    """Raised by the HTTP adapter when a resume request has nothing to resume."""


def classify_error(error: BaseException) -> ErrorKind:
    """Maps any exception raised by a remote call onto the closed ErrorKind enum."""
    if isinstance(error, RemoteApiError):
        return error.kind
    return ErrorKind.UNKNOWN


def error_message(error: Optional[BaseException]) -> str:
    if error is None or not str(error):
        return "Unknown error"
    return str(error)
