from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for auth-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code`` that
    clients can switch on. ``message`` is caller-facing and kept generic where
    it could otherwise reveal which accounts exist; ``detail`` carries
    structured context (validation field errors, the failing store operation).
    """

    status_code: int = 400
    error_code: str = "VALIDATION_ERROR"
    default_message: str = "Request could not be processed"

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Input failed validation (400)."""
    status_code = 400
    error_code = "VALIDATION_ERROR"
    default_message = "Validation failed"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "UNAUTHORIZED"
    default_message = "Authentication required"


class InvalidCredentialsError(AuthenticationError):
    error_code = "INVALID_CREDENTIALS"
    default_message = "Invalid email or password"


class MissingTokenError(AuthenticationError):
    error_code = "MISSING_TOKEN"
    default_message = "Access token is required"


class InvalidTokenError(AuthenticationError):
    error_code = "INVALID_TOKEN"
    default_message = "Invalid token"


class TokenExpiredError(InvalidTokenError):
    """Signature was fine but the token is past its ``exp``."""
    error_code = "TOKEN_EXPIRED"
    default_message = "Token has expired"


class TokenNotYetValidError(InvalidTokenError):
    error_code = "TOKEN_NOT_ACTIVE"
    default_message = "Token not active yet"


class InvalidRefreshTokenError(AuthenticationError):
    error_code = "INVALID_REFRESH_TOKEN"
    default_message = "Invalid or expired refresh token"


class InvalidResetTokenError(ServiceError):
    """Password reset token is unknown, expired or already used (400)."""
    status_code = 400
    error_code = "INVALID_RESET_TOKEN"
    default_message = "Invalid or expired reset token"


class InvalidCurrentPasswordError(ServiceError):
    status_code = 400
    error_code = "INVALID_CURRENT_PASSWORD"
    default_message = "Current password is incorrect"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "INSUFFICIENT_PERMISSIONS"
    default_message = "Insufficient permissions"


class NotFoundError(ServiceError):
    """Requested user not found (404)."""
    status_code = 404
    error_code = "USER_NOT_FOUND"
    default_message = "User not found"


class ConflictError(ServiceError):
    """Email address already registered (409)."""
    status_code = 409
    error_code = "EMAIL_ALREADY_EXISTS"
    default_message = "Email already exists"


class DatabaseError(ServiceError):
    """Reading or writing the JSON store failed (500).

    The failing operation name is kept in ``detail["operation"]`` for logs;
    the HTTP layer does not echo it to clients.
    """

    status_code = 500
    error_code = "DATABASE_ERROR"
    default_message = "Database operation failed"

    def __init__(self, operation: str, message: Optional[str] = None, **kwargs) -> None:
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault("operation", operation)
        super().__init__(message, detail=detail, **kwargs)
        self.operation = operation


class ProviderUnavailableError(ServiceError):
    """Identity provider unreachable, misconfigured or unable to serve the call (503)."""
    status_code = 503
    error_code = "PROVIDER_UNAVAILABLE"
    default_message = "Authentication provider unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "MissingTokenError",
    "InvalidTokenError",
    "TokenExpiredError",
    "TokenNotYetValidError",
    "InvalidRefreshTokenError",
    "InvalidResetTokenError",
    "InvalidCurrentPasswordError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DatabaseError",
    "ProviderUnavailableError",
]
