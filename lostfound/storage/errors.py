from __future__ import annotations

from typing import Any, Dict, Optional


class ConstraintViolation(Exception):
    """Raised when a storage-layer uniqueness or FK constraint is violated."""

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}


class TransitionConflict(Exception):
    """Raised when a status compare-and-set finds the row already moved on."""

    def __init__(self, entity: str, entity_id: str, current_status: Optional[str]):
        super().__init__(f"{entity} {entity_id} is {current_status}")
        self.entity = entity
        self.entity_id = entity_id
        self.current_status = current_status


__all__ = ["ConstraintViolation", "TransitionConflict"]
