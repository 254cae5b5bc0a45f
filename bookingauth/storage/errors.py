from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CacheUnavailable(Exception):
    """Raised when a key-value round trip times out or the server is unreachable.

    Callers treat this as a retryable infrastructure failure, never as an
    authentication decision.
    """

    def __init__(self, operation: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(f"cache operation failed: {operation}")
        self.operation = operation
        self.detail = detail or {}


__all__ = ["ConstraintViolation", "CacheUnavailable"]
