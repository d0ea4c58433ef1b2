"""Schemas for server-derived counters."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict


class ShoutCounts(BaseModel):
    """Like/comment counters shown on map pins."""

    model_config = ConfigDict(frozen=True)

    likes_count: int = 0
    comments_count: int = 0


__all__ = ["ShoutCounts"]
