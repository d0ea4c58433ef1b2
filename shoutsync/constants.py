"""Project-wide constant values."""
from __future__ import annotations

TEMP_ID_PREFIX = "temp-"  # reserved prefix for optimistic placeholder rows

# Engagement tables
SHOUT_LIKES_TABLE = "shout_likes"
EVENT_LIKES_TABLE = "event_likes"
SHOUT_COMMENTS_TABLE = "shout_comments"
SPOT_COMMENTS_TABLE = "spot_comments"
SHOUT_COMMENT_LIKES_TABLE = "shout_comment_likes"
SPOT_COMMENT_LIKES_TABLE = "spot_comment_likes"

# Messaging and notification tables
EVENT_CHAT_MESSAGES_TABLE = "event_chat_messages"
DIRECT_MESSAGES_TABLE = "direct_messages"
EVENT_PARTICIPANTS_TABLE = "event_participants"
INVITATIONS_TABLE = "invitations"
NOTIFICATIONS_TABLE = "notifications"
EVENTS_TABLE = "megaphones"
MESSAGE_REACTIONS_TABLE = "message_reactions"

# Server-side aggregate functions
UNREAD_COUNT_RPC = "get_global_unread_count"
PROFILES_DISPLAY_RPC = "get_profiles_display"

# Stable channel names shared across consumers
ENGAGEMENT_CHANNEL = "engagement-realtime-global-v2"
SHOUT_COUNTS_CHANNEL = "shout-counts-global"
MESSAGE_REACTIONS_CHANNEL = "message-reactions-global"

# Reactions offered in chat, in display order
REACTION_EMOJIS = ("❤️", "👍", "😂")

__all__ = [
    "TEMP_ID_PREFIX",
    "SHOUT_LIKES_TABLE",
    "EVENT_LIKES_TABLE",
    "SHOUT_COMMENTS_TABLE",
    "SPOT_COMMENTS_TABLE",
    "SHOUT_COMMENT_LIKES_TABLE",
    "SPOT_COMMENT_LIKES_TABLE",
    "EVENT_CHAT_MESSAGES_TABLE",
    "DIRECT_MESSAGES_TABLE",
    "EVENT_PARTICIPANTS_TABLE",
    "INVITATIONS_TABLE",
    "NOTIFICATIONS_TABLE",
    "EVENTS_TABLE",
    "MESSAGE_REACTIONS_TABLE",
    "UNREAD_COUNT_RPC",
    "PROFILES_DISPLAY_RPC",
    "ENGAGEMENT_CHANNEL",
    "SHOUT_COUNTS_CHANNEL",
    "MESSAGE_REACTIONS_CHANNEL",
    "REACTION_EMOJIS",
]
