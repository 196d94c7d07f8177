from __future__ import annotations

from typing import Dict, Optional


class ConstraintViolation(Exception):
    """A write the store refused. ``field`` names the offending column, never its value."""

    def __init__(self, message: str, *, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    @property
    def detail(self) -> Dict[str, str]:
        return {"field": self.field} if self.field else {}


class DuplicateRecord(ConstraintViolation):
    """A unique user name or account number is already taken."""


class MissingReference(ConstraintViolation):
    """A write pointed at a user that does not exist."""


__all__ = ["ConstraintViolation", "DuplicateRecord", "MissingReference"]
