"""Schemas for notifications."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, field_validator


class NotificationType(StrEnum):
    FRIEND_EVENT = "friend_event"
    FRIEND_SHOUT = "friend_shout"
    NEW_PARTICIPANT = "new_participant"
    NEW_COMMENT = "new_comment"


class TriggerUserProfile(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    nick: str | None = None
    avatar_url: str | None = None
    avatar_config: Any = None


class NotificationRecord(BaseModel):
    model_config = ConfigDict(frozen=True)
    id: str
    recipient_id: str
    trigger_user_id: str
    type: str
    resource_id: str | None = None
    is_read: bool = False
    created_at: datetime
    trigger_user: TriggerUserProfile | None = None

    @field_validator("id", "recipient_id", "trigger_user_id", "resource_id", mode="before")
    @classmethod
    def _stringify_ids(cls, value: Any) -> Any:
        return str(value) if value is not None else value

    @field_validator("created_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


__all__ = ["NotificationType", "TriggerUserProfile", "NotificationRecord"]
