from __future__ import annotations

from typing import Any, Dict, Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every error is rendered as the envelope ``{"error": message}`` with an
    optional ``details`` string. ``extra`` carries additional top-level keys
    for the few responses that report context next to the error (for
    example the sample counts of a refused training request).
    """

    status_code: int = 400

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        details: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.details = details
        self.extra = extra or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404


class ConflictError(ServiceError):
    """Resource conflict, e.g. an operation already in progress (409)."""
    status_code = 409


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500


class DependencyUnavailableError(ServiceError):
    """A downstream dependency could not be reached (503)."""
    status_code = 503


class DependencyTimeoutError(ServiceError):
    """A downstream dependency did not answer in time (504)."""
    status_code = 504


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "DependencyUnavailableError",
    "DependencyTimeoutError",
]
