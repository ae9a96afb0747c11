from __future__ import annotations

from typing import Any, Dict, Optional

from fingerauth.service.messages import translate


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines an HTTP status_code and a stable error_code:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - rate_limited (429)
    - validation_error (400), code_expired (400), invalid_code (400)
    - conflict (409)
    - server_error (500)

    ``message_key`` and ``params`` let the HTTP layer re-render the message
    in the caller's locale; ``message`` is the rendering in the default one.
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
        message_key: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}
        self.message_key = message_key
        self.params = params or {}

    @classmethod
    def from_key(
        cls, message_key: str, *, detail: Optional[dict] = None, **params: Any
    ) -> "ServiceError":
        """Build the error from a catalog key, rendered in the fallback locale."""
        return cls(
            translate(message_key, None, **params),
            detail=detail,
            message_key=message_key,
            params=params,
        )

    def localized(self, locale: Optional[str]) -> str:
        if not self.message_key:
            return self.message
        return translate(self.message_key, locale, **self.params)


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Alias for ValidationError - request is malformed or invalid."""
    pass


class CodeExpiredError(BadRequestError):
    """One-time code outlived its validity window; a new one was sent (400)."""
    error_code = "code_expired"


class InvalidCodeError(BadRequestError):
    """One-time code did not match (400)."""
    error_code = "invalid_code"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidTokenError(AuthenticationError):
    """JWT failed signature, algorithm, payload or expiry checks (401)."""
    pass


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
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "CodeExpiredError",
    "InvalidCodeError",
    "AuthenticationError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
]
