from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or existence constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class StaleUpdateError(ConstraintViolation):
    """Raised when a versioned update finds the record changed underneath it."""

    def __init__(self, record_id: str, expected: int, actual: int):
        super().__init__(
            "record was modified concurrently",
            {"id": record_id, "expected_version": expected, "actual_version": actual},
        )
        self.expected = expected
        self.actual = actual


__all__ = ["ConstraintViolation", "StaleUpdateError"]
