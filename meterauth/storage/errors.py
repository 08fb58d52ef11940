from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness or foreign-key constraint rejected a write."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class SchemaMissingError(RuntimeError):
    """Required tables are absent; run scripts/migrate.py first."""


__all__ = ["ConstraintViolation", "SchemaMissingError"]
