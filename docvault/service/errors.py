from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Closed set of failure kinds surfaced to callers.

    The value doubles as the stable ``code`` of the error envelope.
    """

    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    INVALID_TOKEN = "INVALID_TOKEN"
    REVOKED = "REVOKED"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    FORBIDDEN = "FORBIDDEN"
    UNAVAILABLE = "UNAVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"
    NOT_FOUND = "NOT_FOUND"
    SERVER_ERROR = "SERVER_ERROR"

    @property
    def status_code(self) -> int:
        return _KIND_STATUS[self]

    @property
    def retryable(self) -> bool:
        """Whether the same request may succeed later without user action."""
        return self in {ErrorKind.UNAVAILABLE, ErrorKind.RATE_LIMITED}

    @property
    def requires_login(self) -> bool:
        """Whether the client must discard its session and re-authenticate."""
        return self in {ErrorKind.INVALID_CREDENTIALS, ErrorKind.REVOKED}


_KIND_STATUS = {
    ErrorKind.INVALID_CREDENTIALS: 401,
    ErrorKind.INVALID_TOKEN: 401,
    ErrorKind.REVOKED: 401,
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.UNAVAILABLE: 503,
    ErrorKind.RATE_LIMITED: 429,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.SERVER_ERROR: 500,
}


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass is bound to exactly one ``ErrorKind``; the HTTP status
    defaults to the kind's status and may be narrowed per raise site
    (e.g. 413 for an oversized upload that is still a validation error).
    """

    kind: ErrorKind = ErrorKind.SERVER_ERROR

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code or self.kind.status_code
        self.detail = detail or {}

    @property
    def error_code(self) -> str:
        return self.kind.value

    @classmethod
    def for_kind(
        cls,
        kind: ErrorKind,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> "ServiceError":
        """Build the exception subclass bound to ``kind``."""
        return _KIND_EXCEPTIONS.get(kind, ServerError)(
            message, status_code=status_code, detail=detail
        )


class InvalidCredentialsError(ServiceError):
    """Login factors did not match; never says which one (401)."""
    kind = ErrorKind.INVALID_CREDENTIALS


class InvalidTokenError(ServiceError):
    """Malformed, unknown or expired credential (401)."""
    kind = ErrorKind.INVALID_TOKEN


class RevokedError(ServiceError):
    """Refresh credential is no longer valid, including reuse after rotation (401)."""
    kind = ErrorKind.REVOKED


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    kind = ErrorKind.VALIDATION_ERROR


class ForbiddenError(ServiceError):
    """Caller may not touch this resource (403)."""
    kind = ErrorKind.FORBIDDEN


class UnavailableError(ServiceError):
    """Credential store or storage backend timed out or failed (503)."""
    kind = ErrorKind.UNAVAILABLE


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    kind = ErrorKind.RATE_LIMITED


class NotFoundError(ServiceError):
    kind = ErrorKind.NOT_FOUND


class ServerError(ServiceError):
    """Internal server error (500)."""
    kind = ErrorKind.SERVER_ERROR


_KIND_EXCEPTIONS = {
    ErrorKind.INVALID_CREDENTIALS: InvalidCredentialsError,
    ErrorKind.INVALID_TOKEN: InvalidTokenError,
    ErrorKind.REVOKED: RevokedError,
    ErrorKind.VALIDATION_ERROR: ValidationError,
    ErrorKind.FORBIDDEN: ForbiddenError,
    ErrorKind.UNAVAILABLE: UnavailableError,
    ErrorKind.RATE_LIMITED: RateLimitedError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.SERVER_ERROR: ServerError,
}


__all__ = [
    "ErrorKind",
    "ServiceError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "RevokedError",
    "ValidationError",
    "ForbiddenError",
    "UnavailableError",
    "RateLimitedError",
    "NotFoundError",
    "ServerError",
]
