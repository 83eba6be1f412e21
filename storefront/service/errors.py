from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Bad request"

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
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidOrExpiredTokenError(ValidationError):
    """Verification or reset token did not match a live record (400).

    Wrong and expired tokens are deliberately indistinguishable.
    """
    default_message = "Invalid or expired token"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    default_message = "Unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown identifier or wrong password (401)."""
    default_message = "Invalid credentials"


class ForbiddenError(ServiceError):
    """Token invalid, expired, reused, or role insufficient (403)."""
    status_code = 403
    error_code = "forbidden"
    default_message = "Forbidden"


class NotVerifiedError(ForbiddenError):
    default_message = "Please verify your email"


class AccountDisabledError(ForbiddenError):
    default_message = "Account is disabled"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    default_message = "Not found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate identity (409)."""
    status_code = 409
    error_code = "conflict"
    default_message = "Conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    default_message = "Too many requests"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    default_message = "Internal server error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOrExpiredTokenError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "NotVerifiedError",
    "AccountDisabledError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
