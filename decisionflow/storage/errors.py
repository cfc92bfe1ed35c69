from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A write would break a uniqueness rule of the store.

    ``constraint`` names the rule (e.g. ``parameter_item_scope_unique``) so
    the service layer can translate it into a conflict rejection.
    """

    def __init__(
        self,
        constraint: str,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.constraint = constraint
        self.message = message
        self.detail = detail or {}


__all__ = ["ConstraintViolation"]
