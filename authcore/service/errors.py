from __future__ import annotations

from datetime import timedelta
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code that callers can branch on:
    - invalid_credentials, invalid_token, invalid_session, invalid_code (401)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - configuration_missing, server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"

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
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email, unconfirmed email, lockout or wrong password.

    The cases share one message so responses cannot be used to enumerate
    accounts.
    """
    error_code = "invalid_credentials"

    def __init__(self, message: str = "Invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidOrExpiredTokenError(AuthenticationError):
    """Refresh or confirmation token unknown, revoked or past expiry."""
    error_code = "invalid_token"

    def __init__(self, message: str = "Invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidSessionError(AuthenticationError):
    """Step-up token does not match the pending two-factor session."""
    error_code = "invalid_session"

    def __init__(self, message: str = "Invalid two-factor session", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidCodeError(AuthenticationError):
    """Two-factor code rejected."""
    error_code = "invalid_code"

    def __init__(self, message: str = "Invalid verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429); carries the remaining wait."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "Too many attempts",
        *,
        retry_after: Optional[timedelta] = None,
        **kwargs,
    ) -> None:
        self.retry_after = retry_after if retry_after is not None else timedelta(0)
        detail = dict(kwargs.pop("detail", None) or {})
        detail.setdefault(
            "retry_after_seconds", max(0, int(self.retry_after.total_seconds() + 0.999))
        )
        super().__init__(message, detail=detail, **kwargs)


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class ConfigurationMissingError(ServerError):
    """Signing material or another required setting is absent. Not retried."""
    error_code = "configuration_missing"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "InvalidOrExpiredTokenError",
    "InvalidSessionError",
    "InvalidCodeError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "ConfigurationMissingError",
]
