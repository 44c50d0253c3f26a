from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Failure raised by the auth services and rendered by the API layer.

    Subclasses pin the HTTP status and the stable ``error_code`` that clients
    switch on. ``detail`` carries structured context such as the offending
    field or a retry hint.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        detail: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.detail: Dict[str, Any] = dict(detail or {})
        if status_code is not None:
            self.status_code = status_code

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.error_code!r}, {self.message!r})"


class ValidationError(ServiceError):
    """Malformed phone number, code or session handle (400)."""
    status_code = 400
    error_code = "validation_error"


class UnauthorizedError(ServiceError):
    """Bad signature, expired claims, or revoked session (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidOrExpiredChallengeError(ServiceError):
    """Wrong code, unknown or used handle, or expired challenge (401).

    The causes are deliberately indistinguishable to the caller.
    """
    status_code = 401
    error_code = "invalid_challenge"


class NotFoundError(ServiceError):
    """No user with the requested id (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Phone number claimed by a registration that cannot be read back (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Send quota exhausted for the current window (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str, *, retry_after: int = 0) -> None:
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


class InfrastructureError(ServiceError):
    """Backing store timed out or was unreachable (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthorizedError",
    "InvalidOrExpiredChallengeError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "InfrastructureError",
]
