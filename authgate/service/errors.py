from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``:
    - unauthorized (401)
    - session_not_found (401)
    - token_invalid (400)
    - token_expired (400)
    - validation_error (400)
    - not_found (404)
    - conflict (409)
    - server_error (500)
    - unavailable (503)
    - timeout (504)
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


class AuthFailedError(ServiceError):
    """Credentials rejected (401).

    Raised identically for an unknown identifier and a wrong password.
    """
    status_code = 401
    error_code = "unauthorized"


class SessionNotFoundError(ServiceError):
    """Bearer token does not resolve to a live session (401)."""
    status_code = 401
    error_code = "session_not_found"


class TokenInvalidError(ServiceError):
    """Action token is malformed, forged, already used or meant for another purpose (400)."""
    status_code = 400
    error_code = "token_invalid"


class TokenExpiredError(ServiceError):
    """Action token is well-formed but past its expiry (400)."""
    status_code = 400
    error_code = "token_expired"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Username, email or provider identity already taken (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class UnavailableError(ServiceError):
    """A collaborator (store, provider, mail relay) failed (503)."""
    status_code = 503
    error_code = "unavailable"


class OperationTimeout(ServiceError):
    """The caller's deadline elapsed before the operation completed (504).

    The operation may or may not have taken effect; it is never retried here.
    """
    status_code = 504
    error_code = "timeout"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthFailedError",
    "SessionNotFoundError",
    "TokenInvalidError",
    "TokenExpiredError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
    "UnavailableError",
    "OperationTimeout",
]
