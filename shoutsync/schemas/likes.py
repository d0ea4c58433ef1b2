"""Schemas for like counters."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class LikeState(BaseModel):
    """Like counter for one target as seen by the current viewer."""

    model_config = ConfigDict(frozen=True)

    target_id: str
    count: int = Field(default=0, ge=0)
    viewer_has_liked: bool = False


__all__ = ["LikeState"]
