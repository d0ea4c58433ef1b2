"""Convenience exports for the sync service layer."""
from .background import drain_background, run_in_background
from .channel_registry import ChannelBinding, ChannelLease, ChannelRegistry, RealtimeChannel
from .comment_service import (
    SHOUT_COMMENTS,
    SPOT_COMMENTS,
    CommentDeleteError,
    CommentPostError,
    CommentTable,
    CommentThread,
)
from .counter_service import ChatUnreadCounts, EngagementCounts, UnreadCounter
from .engagement_realtime import ENGAGEMENT_TOPICS, EngagementRealtime
from .invalidation import InvalidationBus, NullInvalidationBus, RefetchTopic
from .likes_service import (
    EVENT_LIKES,
    SHOUT_COMMENT_LIKES,
    SHOUT_LIKES,
    SPOT_COMMENT_LIKES,
    LikeCache,
    LikeTable,
)
from .live_ref import LiveRef
from .notification_service import NotificationFeed
from .optimistic import ChangeClock, MutationToken, OptimisticStore
from .reaction_service import ReactionCache

__all__ = [
    "ChangeClock",
    "ChannelBinding",
    "ChannelLease",
    "ChannelRegistry",
    "ChatUnreadCounts",
    "CommentDeleteError",
    "CommentPostError",
    "CommentTable",
    "CommentThread",
    "ENGAGEMENT_TOPICS",
    "EVENT_LIKES",
    "EngagementCounts",
    "EngagementRealtime",
    "InvalidationBus",
    "LikeCache",
    "LikeTable",
    "LiveRef",
    "MutationToken",
    "NotificationFeed",
    "NullInvalidationBus",
    "OptimisticStore",
    "ReactionCache",
    "RealtimeChannel",
    "RefetchTopic",
    "SHOUT_COMMENTS",
    "SHOUT_COMMENT_LIKES",
    "SHOUT_LIKES",
    "SPOT_COMMENTS",
    "SPOT_COMMENT_LIKES",
    "UnreadCounter",
    "drain_background",
    "run_in_background",
]
