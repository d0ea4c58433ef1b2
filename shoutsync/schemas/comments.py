"""Schemas for comment threads."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator

from ..constants import TEMP_ID_PREFIX


class Comment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    target_id: str
    author_id: str
    content: str
    created_at: datetime
    parent_id: str | None = None

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @property
    def is_placeholder(self) -> bool:
        return self.id.startswith(TEMP_ID_PREFIX)

    @classmethod
    def from_row(cls, row: dict[str, Any], *, target_column: str, author_column: str = "user_id") -> "Comment":
        """Build a comment from a backend row keyed by the table's own column names."""

        parent = row.get("parent_id")
        return cls.model_validate(
            {
                "id": str(row.get("id")) if row.get("id") is not None else None,
                "target_id": str(row.get(target_column)) if row.get(target_column) is not None else None,
                "author_id": str(row.get(author_column)) if row.get(author_column) is not None else None,
                "content": row.get("content"),
                "created_at": row.get("created_at"),
                "parent_id": str(parent) if parent is not None else None,
            }
        )


__all__ = ["Comment"]
