"""Pydantic schemas shared across the sync services."""
from .comments import Comment
from .counts import ShoutCounts
from .likes import LikeState
from .notifications import NotificationRecord, NotificationType, TriggerUserProfile
from .reactions import Reaction
from .realtime import ChangeEvent, ChangeType, ChannelStatus

__all__ = [
    "ChangeEvent",
    "ChangeType",
    "ChannelStatus",
    "Comment",
    "LikeState",
    "NotificationRecord",
    "NotificationType",
    "Reaction",
    "ShoutCounts",
    "TriggerUserProfile",
]
