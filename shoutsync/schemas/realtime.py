"""Schemas for change-feed payloads and channel lifecycle."""
from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict


class ChangeType(StrEnum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class ChannelStatus(StrEnum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChangeEvent(BaseModel):
    """A single row change delivered by the backend change feed.

    ``old`` on a DELETE may only carry primary-key columns unless the table
    replicates full rows.
    """

    model_config = ConfigDict(frozen=True)

    table: str
    type: ChangeType
    new: dict[str, Any] | None = None
    old: dict[str, Any] | None = None
    commit_timestamp: datetime | None = None

    @property
    def record(self) -> dict[str, Any]:
        """The row the change is about: ``new`` for inserts/updates, ``old`` for deletes."""

        if self.type is ChangeType.DELETE:
            return self.old or {}
        return self.new or {}

    def value(self, column: str) -> Any:
        """Look a column up in ``new`` first, then ``old``."""

        for row in (self.new, self.old):
            if row and row.get(column) is not None:
                return row[column]
        return None


__all__ = ["ChangeType", "ChannelStatus", "ChangeEvent"]
