from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer errors mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients branch on. Generic codes:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400)
    - conflict (409)
    - server_error (500)

    PIN-specific codes live on the subclasses below. The biometric core
    returns instances of these inside ``Err`` rather than raising them; the
    HTTP layer raises them so the registered handlers render the envelope.
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


NotAuthenticatedError = AuthenticationError


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g. duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class InternalError(ServerError):
    """A collaborator failed or timed out; the cause is logged, not returned."""


class NotConfiguredError(NotFoundError):
    """The user has no PIN set up."""
    error_code = "pin_not_configured"


class LockedError(ServiceError):
    """PIN is locked after too many wrong attempts (423)."""
    status_code = 423
    error_code = "pin_locked"


class IncorrectPinError(AuthenticationError):
    status_code = 401
    error_code = "incorrect_pin"


class ExpiredTokenError(AuthenticationError):
    """Biometric session token has expired; the client must re-verify."""
    status_code = 401
    error_code = "token_expired"


class InvalidTokenError(AuthenticationError):
    status_code = 401
    error_code = "token_invalid"


class BiometricNotEnabledError(AuthenticationError):
    status_code = 401
    error_code = "biometric_not_enabled"


class NotLockedError(ValidationError):
    """A reset was requested for a PIN that is not locked."""
    status_code = 400
    error_code = "not_locked"


class CommonPinError(ValidationError):
    status_code = 400
    error_code = "common_pin"


class PinUnchangedError(ValidationError):
    status_code = 400
    error_code = "pin_unchanged"


class InvalidOrExpiredCodeError(ValidationError):
    status_code = 400
    error_code = "invalid_code"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotAuthenticatedError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "InternalError",
    "NotConfiguredError",
    "LockedError",
    "IncorrectPinError",
    "ExpiredTokenError",
    "InvalidTokenError",
    "BiometricNotEnabledError",
    "NotLockedError",
    "CommonPinError",
    "PinUnchangedError",
    "InvalidOrExpiredCodeError",
]
