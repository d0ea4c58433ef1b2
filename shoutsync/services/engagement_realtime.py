"""One shared listener that turns engagement writes from any client into refetches."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..constants import (
    ENGAGEMENT_CHANNEL,
    EVENT_LIKES_TABLE,
    SHOUT_COMMENT_LIKES_TABLE,
    SHOUT_COMMENTS_TABLE,
    SHOUT_LIKES_TABLE,
    SPOT_COMMENT_LIKES_TABLE,
    SPOT_COMMENTS_TABLE,
)
from ..schemas import ChangeEvent
from .channel_registry import ChannelLease
from .invalidation import RefetchTopic

if TYPE_CHECKING:
    from ..context import SyncContext

logger = logging.getLogger(__name__)

# Comment-like tables are watched but map to nothing: comment views refetch themselves.
ENGAGEMENT_TOPICS: dict[str, tuple[RefetchTopic, ...]] = {
    SHOUT_COMMENTS_TABLE: (RefetchTopic.SHOUT, RefetchTopic.COUNT),
    SHOUT_LIKES_TABLE: (RefetchTopic.SHOUT, RefetchTopic.COUNT),
    EVENT_LIKES_TABLE: (RefetchTopic.EVENT,),
    SPOT_COMMENTS_TABLE: (RefetchTopic.EVENT,),
    SHOUT_COMMENT_LIKES_TABLE: (),
    SPOT_COMMENT_LIKES_TABLE: (),
}


class EngagementRealtime:
    def __init__(self, context: "SyncContext") -> None:
        self._ctx = context
        self._lease: ChannelLease | None = None

    @property
    def active(self) -> bool:
        return self._lease is not None

    def start(self) -> None:
        if self._lease is not None:
            return
        lease = self._ctx.registry.get_or_create_channel(ENGAGEMENT_CHANNEL)
        for table in ENGAGEMENT_TOPICS:
            lease.on("*", table, self._on_change)
        if lease.should_subscribe:
            lease.subscribe()
        self._lease = lease
        logger.debug("Engagement listener attached to %s", ENGAGEMENT_CHANNEL)

    def close(self) -> None:
        self._ctx.registry.safe_remove_channel(self._lease)
        self._lease = None

    def _on_change(self, change: ChangeEvent) -> None:
        topics = ENGAGEMENT_TOPICS.get(change.table, ())
        if not topics:
            return
        logger.debug("%s %s: triggering %s", change.table, change.type, ", ".join(topics))
        for topic in topics:
            self._ctx.invalidation.trigger(topic)


__all__ = ["ENGAGEMENT_TOPICS", "EngagementRealtime"]
