"""Schemas for chat message reactions."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class Reaction(BaseModel):
    """One emoji's tally on a message as seen by the current viewer."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    emoji: str
    count: int = Field(default=0, ge=0)
    viewer_has_reacted: bool = False


__all__ = ["Reaction"]
