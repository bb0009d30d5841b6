from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class MissingReference(ConstraintViolation):
    """Raised when a row points at a parent that does not exist (FK violation)."""


class StoreUnavailable(Exception):
    """Raised when a backing store cannot be reached or times out."""

    def __init__(self, backend: str, message: str):
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.message = message


__all__ = ["ConstraintViolation", "MissingReference", "StoreUnavailable"]
