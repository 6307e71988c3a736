from __future__ import annotations

from enum import Enum
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable machine-readable
    ``error_code``. Messages are drawn from a small fixed vocabulary so they
    can be returned to callers verbatim; anything more specific belongs in
    the logs.
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"


class InvalidStatusTransition(ValidationError):
    """Requested account status change is not allowed (400)."""


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"


class InvalidCredentialsError(AuthenticationError):
    error_code = "INVALID_CREDENTIALS"


class InvalidTokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"


class AccountNotFoundError(AuthenticationError):
    error_code = "ACCOUNT_NOT_FOUND"


class AccountInactiveError(AuthenticationError):
    error_code = "ACCOUNT_INACTIVE"


class EmailNotVerifiedError(AccountInactiveError):
    error_code = "EMAIL_NOT_VERIFIED"


class AccountSuspendedError(AccountInactiveError):
    error_code = "ACCOUNT_SUSPENDED"


class AuthorizationDeniedError(ServiceError):
    """Role, permission or tenant check failed (403)."""
    status_code = 403
    error_code = "AUTHORIZATION_DENIED"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "NOT_FOUND"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate registration (409)."""
    status_code = 409
    error_code = "CONFLICT"


class RateLimitExceededError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, *, retry_after: int = 0, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.retry_after = max(0, int(retry_after))


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "INTERNAL_ERROR"


class TokenFailureReason(str, Enum):
    """Why a token failed verification. Logged, never returned to callers."""

    MALFORMED = "malformed"
    SIGNATURE = "signature"
    CLAIMS = "claims"
    EXPIRED = "expired"


class TokenVerificationError(Exception):
    """Raised by the token service; mapped to a generic 401 at the boundary."""

    def __init__(self, reason: TokenFailureReason, message: str = "") -> None:
        super().__init__(message or reason.value)
        self.reason = reason

    @property
    def error_code(self) -> str:
        if self.reason == TokenFailureReason.EXPIRED:
            return "TOKEN_EXPIRED"
        return "INVALID_TOKEN"


class SessionRotationConflict(Exception):
    """Raised when a conditional session rotation loses to a concurrent change."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session rotation conflict: {session_id}")
        self.session_id = session_id


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidStatusTransition",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "AccountNotFoundError",
    "AccountInactiveError",
    "EmailNotVerifiedError",
    "AccountSuspendedError",
    "AuthorizationDeniedError",
    "NotFoundError",
    "ConflictError",
    "RateLimitExceededError",
    "ServerError",
    "TokenFailureReason",
    "TokenVerificationError",
    "SessionRotationConflict",
]
