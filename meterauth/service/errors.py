from __future__ import annotations

from typing import Dict, List, Optional


class ServiceError(Exception):
    """Base class for authentication failures rendered in the error envelope.

    Subclasses pin the HTTP status and the stable ``error.code`` the client
    branches on. ``errors`` is lifted to the top level of the body (password
    rules) and ``headers`` is copied onto the response.
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
        self.errors: Optional[List[str]] = None
        self.headers: Dict[str, str] = {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    pass


class AuthenticationError(ServiceError):
    """Credentials, code or token rejected (401)."""
    status_code = 401
    error_code = "unauthorized"


class SessionExpiredError(AuthenticationError):
    """Pending-2FA or access token is expired, replayed or forged (401)."""
    pass


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class RateLimitedError(ServiceError):
    """Throttle bucket is empty (429); ``retry_after`` also sets Retry-After."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str,
        *,
        retry_after: Optional[int] = None,
        detail: Optional[dict] = None,
    ) -> None:
        if retry_after is not None:
            detail = {**(detail or {}), "retry_after": retry_after}
        super().__init__(message, detail=detail)
        if retry_after is not None:
            self.headers["Retry-After"] = str(retry_after)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "SessionExpiredError",
    "ForbiddenError",
    "NotFoundError",
    "RateLimitedError",
]
