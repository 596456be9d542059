from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """A uniqueness rule on the accounts table was violated.

    ``field`` names the offending column (``email`` for duplicate registrations)
    and is copied into ``detail`` so the API envelope can surface it.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.field = field
        self.detail = dict(detail or {})
        if field and "field" not in self.detail:
            self.detail["field"] = field


__all__ = ["ConstraintViolation"]
