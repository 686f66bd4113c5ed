"""Schemas for change events pushed over realtime channels."""
from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Dict, FrozenSet

from pydantic import BaseModel, Field


class ChangeType(StrEnum):
    INSERT = "insert"
    UPDATE = "update"
    DELETE = "delete"


class ChangeEvent(BaseModel):
    channel: str
    table: str
    type: ChangeType
    record: Dict[str, Any] = Field(default_factory=dict)
    old_record: Dict[str, Any] | None = None
    committed_at: datetime
    sequence: int = 0

    @property
    def row_id(self) -> Any:
        source = self.record or self.old_record or {}
        return source.get("id")


class EventFilter(BaseModel):
    """Select events by table, change type and column equality."""

    table: str | None = None
    types: FrozenSet[ChangeType] = frozenset(ChangeType)
    match: Dict[str, Any] = Field(default_factory=dict)

    def matches(self, event: ChangeEvent) -> bool:
        if self.table is not None and event.table != self.table:
            return False
        if event.type not in self.types:
            return False
        source = event.record or event.old_record or {}
        return all(source.get(column) == expected for column, expected in self.match.items())


__all__ = ["ChangeType", "ChangeEvent", "EventFilter"]
