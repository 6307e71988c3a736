from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class ConditionFailed(Exception):
    """Raised when a conditional update finds the record missing or changed."""

    def __init__(self, key: str, message: str = "condition failed"):
        super().__init__(f"{message}: {key}")
        self.key = key
        self.message = message


__all__ = ["ConstraintViolation", "ConditionFailed"]
