"""
Shared error handling for services.

Repository outcomes (``NotFoundError``, ``EditConflictError``) are expected
results the caller interprets. ``InvalidTokenError`` and ``ForbiddenError``
end the request pipeline. ``ServerError`` covers everything unexpected; its
public message is fixed and the internal cause is only ever logged.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ServiceException(Exception):
    """Base exception for service errors."""

    status_code = 400

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        self.headers = dict(headers or {})
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class NotFoundError(ServiceException):
    """No document matched the requested key or filter."""

    status_code = 404

    def __init__(self, message: str = "the requested resource could not be found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class EditConflictError(ServiceException):
    """Stored version no longer matches the version the writer read."""

    status_code = 409

    def __init__(self, message: str = "unable to update the record due to an edit conflict, please try again", details: Optional[Dict[str, Any]] = None):
        super().__init__("EDIT_CONFLICT", message, details)


class DuplicateKeyError(ServiceException):
    """A document with the same key already exists."""

    status_code = 409

    def __init__(self, message: str = "a record with this key already exists", details: Optional[Dict[str, Any]] = None):
        super().__init__("DUPLICATE_KEY", message, details)


class ValidationError(ServiceException):
    """Validation-related errors."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class InvalidTokenError(ServiceException):
    """Missing, malformed or untrusted bearer token."""

    status_code = 401

    def __init__(self, message: str = "invalid or missing authentication token", details: Optional[Dict[str, Any]] = None):
        super().__init__(
            "INVALID_TOKEN",
            message,
            details,
            headers={"WWW-Authenticate": "Bearer"},
        )


class ForbiddenError(ServiceException):
    """Valid credential without the required permission."""

    status_code = 403

    def __init__(self, message: str = "your user account doesn't have the necessary permissions to access this resource", details: Optional[Dict[str, Any]] = None):
        super().__init__("FORBIDDEN", message, details)


class ServerError(ServiceException):
    """Unexpected failure. ``cause`` is for logs only."""

    status_code = 500
    public_message = "the server encountered a problem and could not process your request"

    def __init__(self, cause: Optional[BaseException] = None, message: Optional[str] = None):
        super().__init__("SERVER_ERROR", self.public_message)
        self.cause = cause
        self.internal_message = message or (str(cause) if cause is not None else "server error")


class RepositoryError(ServerError):
    """Storage backend failure."""


class RepositoryTimeoutError(RepositoryError):
    """Storage call exceeded its deadline."""


class ShutdownError(Exception):
    """Graceful shutdown did not finish in-flight requests in time."""

    def __init__(self, abandoned_requests: int, timeout: float):
        self.abandoned_requests = abandoned_requests
        self.timeout = timeout
        super().__init__(
            f"{abandoned_requests} request(s) still running after {timeout}s shutdown grace period"
        )


class UnsafeSortParameterError(AssertionError):
    """Sort value reached the storage layer without being checked against its safelist."""

    def __init__(self, sort: str):
        self.sort = sort
        super().__init__(f"unsafe sort parameter: {sort}")
