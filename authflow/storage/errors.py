from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a uniqueness or foreign-key rule in the user directory is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class CacheUnavailable(Exception):
    """Raised when the ephemeral store cannot complete an operation.

    Wraps the backend's own error so callers only need to know about one type.
    Nothing is retained from a command that raised this.
    """

    def __init__(self, operation: str, cause: Optional[BaseException] = None):
        super().__init__(f"ephemeral store unavailable during {operation}")
        self.operation = operation
        self.cause = cause


__all__ = ["ConstraintViolation", "CacheUnavailable"]
