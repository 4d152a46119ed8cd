from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TenantStoreError(Exception):
    """A tenant database query or schema operation failed."""


class TenantUnavailable(TenantStoreError):
    """The tenant database could not be reached or no pooled connection was free."""


__all__ = ["ConstraintViolation", "TenantStoreError", "TenantUnavailable"]
