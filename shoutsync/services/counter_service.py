"""Server-authoritative counters kept approximately live by event-triggered refetch.

Change events only signal that a count may have moved; the value itself always
comes from a fresh server read.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Iterable

from ..clients.backend import BackendError, eq, gt, in_, neq
from ..constants import (
    DIRECT_MESSAGES_TABLE,
    EVENT_CHAT_MESSAGES_TABLE,
    EVENT_PARTICIPANTS_TABLE,
    EVENTS_TABLE,
    INVITATIONS_TABLE,
    SHOUT_COMMENTS_TABLE,
    SHOUT_COUNTS_CHANNEL,
    SHOUT_LIKES_TABLE,
    UNREAD_COUNT_RPC,
)
from ..schemas import ChangeEvent, ChangeType, ShoutCounts
from .background import run_in_background
from .channel_registry import ChannelLease
from .invalidation import Unregister
from .live_ref import LiveRef

if TYPE_CHECKING:
    from ..context import SyncContext

logger = logging.getLogger(__name__)

NEVER_READ = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _coerce_count(value: Any) -> int:
    if isinstance(value, list):
        value = value[0] if value else 0
    if isinstance(value, dict):
        value = next(iter(value.values()), 0)
    if value is None:
        return 0
    return max(0, int(value))


class UnreadCounter:
    """Global unread message badge (event chats + direct messages)."""

    def __init__(self, context: "SyncContext") -> None:
        self._ctx = context
        self._lease: ChannelLease | None = None
        self.unread_count = 0
        self.loading = True

    @property
    def channel_name(self) -> str:
        return f"global-unread-messages-{self._ctx.viewer_id}"

    async def start(self) -> None:
        viewer = self._ctx.viewer_id
        if not viewer:
            self.unread_count = 0
            self.loading = False
            return
        if self._lease is None:
            lease = self._ctx.registry.get_or_create_channel(self.channel_name)
            lease.on(ChangeType.INSERT, EVENT_CHAT_MESSAGES_TABLE, self._on_message("user_id"))
            lease.on(ChangeType.INSERT, DIRECT_MESSAGES_TABLE, self._on_message("sender_id"))
            if lease.should_subscribe:
                lease.subscribe()
            self._lease = lease
        await self.refresh()

    def close(self) -> None:
        self._ctx.registry.safe_remove_channel(self._lease)
        self._lease = None

    async def refresh(self) -> int:
        """Fetch the authoritative count; on failure keep the last known good value."""

        viewer = self._ctx.viewer_id
        if not viewer:
            self.unread_count = 0
            self.loading = False
            return 0
        try:
            data = await self._ctx.backend.rpc(UNREAD_COUNT_RPC, {"p_user_id": viewer})
        except BackendError as exc:
            logger.warning("Error fetching global unread count: %s", exc)
            return self.unread_count
        finally:
            self.loading = False
        try:
            self.unread_count = _coerce_count(data)
        except (TypeError, ValueError):
            logger.warning("Unexpected unread count payload: %r", data)
        return self.unread_count

    def silent_refetch(self) -> asyncio.Task[Any] | None:
        if not self._ctx.viewer_id:
            return None
        return run_in_background(self.refresh(), description="unread count refetch")

    def optimistic_clear_for_chat(self, estimated_count: int = 0) -> None:
        """Drop a just-opened conversation from the badge until the next refetch."""

        if estimated_count > 0:
            self.unread_count = max(0, self.unread_count - estimated_count)

    def mark_event_as_read(self, event_id: str) -> asyncio.Task[Any] | None:
        viewer = self._ctx.viewer_id
        if not viewer:
            return None
        # Hosts may not have a participant row yet, hence the upsert.
        write = self._ctx.backend.upsert(
            EVENT_PARTICIPANTS_TABLE,
            {
                "event_id": event_id,
                "user_id": viewer,
                "status": "joined",
                "last_read_at": datetime.now(timezone.utc).isoformat(),
            },
            on_conflict=("event_id", "user_id"),
        )
        return run_in_background(write, description=f"mark event {event_id} as read")

    def mark_invitation_as_read(self, invitation_id: str) -> asyncio.Task[Any] | None:
        if not self._ctx.viewer_id:
            return None
        write = self._ctx.backend.update(
            INVITATIONS_TABLE,
            {"last_read_at": datetime.now(timezone.utc).isoformat()},
            filters=[eq("id", invitation_id)],
        )
        return run_in_background(write, description=f"mark invitation {invitation_id} as read")

    def _on_message(self, author_column: str):
        def handler(change: ChangeEvent) -> None:
            author = (change.new or {}).get(author_column)
            if author is not None and str(author) == self._ctx.viewer_id:
                return
            logger.debug("New %s message detected, refetching unread count", change.table)
            run_in_background(self.refresh(), description="unread count refetch")

        return handler


class ChatUnreadCounts:
    """Unread message counts per event chat and per direct-message thread.

    Each count is ``messages by others newer than the viewer's last read``,
    read from the server. A new message only triggers a refetch of its own
    chat's count; the open chat and muted chats are left alone.
    """

    def __init__(
        self,
        context: "SyncContext",
        event_ids: Iterable[str] = (),
        *,
        muted_event_ids: Iterable[str] = (),
        muted_invitation_ids: Iterable[str] = (),
    ) -> None:
        self._ctx = context
        self._event_ids: LiveRef[tuple[str, ...]] = LiveRef(tuple(dict.fromkeys(str(i) for i in event_ids)))
        self._muted_events: LiveRef[frozenset[str]] = LiveRef(frozenset(str(i) for i in muted_event_ids))
        self._muted_invitations: LiveRef[frozenset[str]] = LiveRef(frozenset(str(i) for i in muted_invitation_ids))
        self._active_event: LiveRef[str | None] = LiveRef(None)
        self._active_invitation: LiveRef[str | None] = LiveRef(None)
        self._event_counts: dict[str, int] = {}
        self._dm_counts: dict[str, int] = {}
        self._invitations: set[str] = set()
        self._lease: ChannelLease | None = None
        self.loading = True

    @property
    def channel_name(self) -> str:
        return f"chat-unread-counts-{self._ctx.viewer_id}"

    @property
    def event_counts(self) -> dict[str, int]:
        return dict(self._event_counts)

    @property
    def dm_counts(self) -> dict[str, int]:
        return {key: value for key, value in self._dm_counts.items() if value > 0}

    def get_unread_count(self, event_id: str) -> int:
        return self._event_counts.get(str(event_id), 0)

    def get_dm_unread_count(self, invitation_id: str) -> int:
        return self._dm_counts.get(str(invitation_id), 0)

    def get_total_unread_count(self) -> int:
        muted_events = self._muted_events.get()
        muted_invitations = self._muted_invitations.get()
        events = sum(count for key, count in self._event_counts.items() if key not in muted_events)
        dms = sum(count for key, count in self._dm_counts.items() if key not in muted_invitations)
        return events + dms

    def set_event_ids(self, event_ids: Iterable[str]) -> None:
        self._event_ids.set(tuple(dict.fromkeys(str(i) for i in event_ids)))

    def set_muted(self, *, event_ids: Iterable[str] | None = None, invitation_ids: Iterable[str] | None = None) -> None:
        if event_ids is not None:
            self._muted_events.set(frozenset(str(i) for i in event_ids))
        if invitation_ids is not None:
            self._muted_invitations.set(frozenset(str(i) for i in invitation_ids))

    def set_active_event_chat(self, event_id: str | None) -> None:
        """Mark the event chat on screen; its new messages are read as they arrive."""

        self._active_event.set(str(event_id) if event_id is not None else None)

    def set_active_dm_chat(self, invitation_id: str | None) -> None:
        self._active_invitation.set(str(invitation_id) if invitation_id is not None else None)

    def clear_unread_for_event(self, event_id: str) -> None:
        """Zero a just-opened event chat until the next refetch."""

        key = str(event_id)
        if key in self._event_counts:
            self._event_counts[key] = 0

    def clear_unread_for_dm(self, invitation_id: str) -> None:
        self._dm_counts.pop(str(invitation_id), None)

    async def start(self) -> None:
        if not self._ctx.viewer_id:
            self.loading = False
            return
        if self._lease is None:
            lease = self._ctx.registry.get_or_create_channel(self.channel_name)
            lease.on(ChangeType.INSERT, EVENT_CHAT_MESSAGES_TABLE, self._on_event_message)
            lease.on(ChangeType.INSERT, DIRECT_MESSAGES_TABLE, self._on_direct_message)
            if lease.should_subscribe:
                lease.subscribe()
            self._lease = lease
        await self.refresh()

    def close(self) -> None:
        self._ctx.registry.safe_remove_channel(self._lease)
        self._lease = None

    async def refresh(self) -> None:
        viewer = self._ctx.viewer_id
        if not viewer:
            self._event_counts = {}
            self._dm_counts = {}
            self.loading = False
            return
        try:
            await self._refresh_events(viewer)
            await self._refresh_dms(viewer)
        finally:
            self.loading = False

    async def refresh_event(self, event_id: str) -> int:
        """Refetch one event chat's count; on failure keep the last known good value."""

        key = str(event_id)
        viewer = self._ctx.viewer_id
        if not viewer:
            return 0
        try:
            cutoffs = await self._event_cutoffs(viewer, (key,))
            count = await self._event_count(viewer, key, cutoffs[key])
        except BackendError as exc:
            logger.warning("Error fetching unread count for event %s: %s", key, exc)
            return self.get_unread_count(key)
        self._event_counts[key] = count
        return count

    async def refresh_dm(self, invitation_id: str) -> int:
        key = str(invitation_id)
        viewer = self._ctx.viewer_id
        if not viewer:
            return 0
        try:
            rows = await self._ctx.backend.select(
                INVITATIONS_TABLE, columns="id,last_read_at", filters=[eq("id", key)]
            )
            if not rows:
                self._dm_counts.pop(key, None)
                return 0
            count = await self._dm_count(viewer, key, rows[0].get("last_read_at"))
        except BackendError as exc:
            logger.warning("Error fetching unread count for invitation %s: %s", key, exc)
            return self.get_dm_unread_count(key)
        self._set_dm_count(key, count)
        return count

    async def _refresh_events(self, viewer: str) -> None:
        event_ids = self._event_ids.get()
        if not event_ids:
            self._event_counts = {}
            return
        try:
            cutoffs = await self._event_cutoffs(viewer, event_ids)
        except BackendError as exc:
            logger.warning("Error fetching event read markers: %s", exc)
            return
        counts: dict[str, int] = {}
        for event_id in event_ids:
            try:
                counts[event_id] = await self._event_count(viewer, event_id, cutoffs[event_id])
            except BackendError as exc:
                logger.warning("Error fetching unread count for event %s: %s", event_id, exc)
                counts[event_id] = self._event_counts.get(event_id, 0)
        self._event_counts = counts

    async def _refresh_dms(self, viewer: str) -> None:
        try:
            sent = await self._ctx.backend.select(
                INVITATIONS_TABLE,
                columns="id,last_read_at",
                filters=[eq("status", "accepted"), eq("sender_id", viewer)],
            )
            received = await self._ctx.backend.select(
                INVITATIONS_TABLE,
                columns="id,last_read_at",
                filters=[eq("status", "accepted"), eq("receiver_id", viewer)],
            )
        except BackendError as exc:
            logger.warning("Error fetching direct message threads: %s", exc)
            return
        invitations = {
            str(row["id"]): row.get("last_read_at") for row in [*sent, *received] if row.get("id") is not None
        }
        counts: dict[str, int] = {}
        for invitation_id, last_read_at in invitations.items():
            try:
                count = await self._dm_count(viewer, invitation_id, last_read_at)
            except BackendError as exc:
                logger.warning("Error fetching unread count for invitation %s: %s", invitation_id, exc)
                count = self._dm_counts.get(invitation_id, 0)
            if count > 0:
                counts[invitation_id] = count
        self._invitations = set(invitations)
        self._dm_counts = counts

    async def _event_count(self, viewer: str, event_id: str, cutoff: Any) -> int:
        count = await self._ctx.backend.count(
            EVENT_CHAT_MESSAGES_TABLE,
            filters=[eq("event_id", event_id), neq("user_id", viewer), gt("created_at", cutoff)],
        )
        return max(0, count)

    async def _dm_count(self, viewer: str, invitation_id: str, last_read_at: Any) -> int:
        count = await self._ctx.backend.count(
            DIRECT_MESSAGES_TABLE,
            filters=[
                eq("invitation_id", invitation_id),
                neq("sender_id", viewer),
                gt("created_at", last_read_at or NEVER_READ),
            ],
        )
        return max(0, count)

    async def _event_cutoffs(self, viewer: str, event_ids: tuple[str, ...]) -> dict[str, Any]:
        """Last read time per event: participant marker, else hosting time, else never."""

        cutoffs: dict[str, Any] = {event_id: NEVER_READ for event_id in event_ids}
        hosted = await self._ctx.backend.select(
            EVENTS_TABLE,
            columns="id,created_at",
            filters=[eq("host_id", viewer), in_("id", event_ids)],
        )
        for row in hosted:
            if row.get("created_at") is not None:
                cutoffs[str(row["id"])] = row["created_at"]
        markers = await self._ctx.backend.select(
            EVENT_PARTICIPANTS_TABLE,
            columns="event_id,last_read_at",
            filters=[eq("user_id", viewer), in_("event_id", event_ids)],
        )
        for row in markers:
            if row.get("last_read_at") is not None:
                cutoffs[str(row["event_id"])] = row["last_read_at"]
        return cutoffs

    def _set_dm_count(self, invitation_id: str, count: int) -> None:
        if count > 0:
            self._dm_counts[invitation_id] = count
        else:
            self._dm_counts.pop(invitation_id, None)

    def _on_event_message(self, change: ChangeEvent) -> None:
        row = change.new or {}
        event_id = str(row.get("event_id"))
        if str(row.get("user_id")) == self._ctx.viewer_id or event_id not in self._event_ids.get():
            return
        if event_id == self._active_event.get() or event_id in self._muted_events.get():
            return
        run_in_background(self.refresh_event(event_id), description=f"unread count refetch for event {event_id}")

    def _on_direct_message(self, change: ChangeEvent) -> None:
        row = change.new or {}
        invitation_id = str(row.get("invitation_id"))
        if str(row.get("sender_id")) == self._ctx.viewer_id:
            return
        if invitation_id == self._active_invitation.get() or invitation_id in self._muted_invitations.get():
            return
        if invitation_id not in self._invitations:
            return  # not one of the viewer's accepted threads as of the last load
        run_in_background(
            self.refresh_dm(invitation_id), description=f"unread count refetch for invitation {invitation_id}"
        )


class EngagementCounts:
    """Like and comment totals for the shouts currently on the map.

    Bursts of like/comment events (an optimistic write plus its realtime echo,
    rapid toggles) collapse into one refetch after the debounce window.
    """

    def __init__(self, context: "SyncContext", shout_ids: Iterable[str] = ()) -> None:
        self._ctx = context
        self._shout_ids: LiveRef[tuple[str, ...]] = LiveRef(tuple(dict.fromkeys(str(i) for i in shout_ids)))
        self._counts: dict[str, ShoutCounts] = {}
        self._lease: ChannelLease | None = None
        self._unregister: Unregister | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def counts(self) -> dict[str, ShoutCounts]:
        return dict(self._counts)

    def set_shout_ids(self, shout_ids: Iterable[str]) -> None:
        self._shout_ids.set(tuple(dict.fromkeys(str(i) for i in shout_ids)))

    def get_counts(self, shout_id: str) -> ShoutCounts:
        return self._counts.get(str(shout_id), ShoutCounts())

    async def start(self) -> None:
        if self._lease is None:
            lease = self._ctx.registry.get_or_create_channel(SHOUT_COUNTS_CHANNEL)
            for table in (SHOUT_LIKES_TABLE, SHOUT_COMMENTS_TABLE):
                lease.on(ChangeType.INSERT, table, self._on_change)
                lease.on(ChangeType.DELETE, table, self._on_change)
            if lease.should_subscribe:
                lease.subscribe()
            self._lease = lease
            self._unregister = self._ctx.invalidation.register_count_refetch(self.schedule_refetch)
        await self.refresh()

    def close(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._unregister is not None:
            self._unregister()
            self._unregister = None
        self._ctx.registry.safe_remove_channel(self._lease)
        self._lease = None

    async def refresh(self) -> None:
        shout_ids = self._shout_ids.get()
        if not shout_ids:
            self._counts = {}
            return
        logger.debug("Refetching counts for %d shouts", len(shout_ids))
        try:
            likes = await self._ctx.backend.select(
                SHOUT_LIKES_TABLE, columns="shout_id", filters=[in_("shout_id", shout_ids)]
            )
            comments = await self._ctx.backend.select(
                SHOUT_COMMENTS_TABLE, columns="shout_id", filters=[in_("shout_id", shout_ids)]
            )
        except BackendError:
            logger.exception("Error fetching shout counts")
            return

        tally: dict[str, list[int]] = {shout_id: [0, 0] for shout_id in shout_ids}
        for index, rows in enumerate((likes, comments)):
            for row in rows:
                key = str(row.get("shout_id"))
                if key in tally:
                    tally[key][index] += 1
        self._counts = {
            shout_id: ShoutCounts(likes_count=likes_count, comments_count=comments_count)
            for shout_id, (likes_count, comments_count) in tally.items()
        }

    def schedule_refetch(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; skipping count refetch")
            return
        if self._timer is not None:
            self._timer.cancel()
        delay = max(0, self._ctx.settings.refetch_debounce_ms) / 1000
        self._timer = loop.call_later(delay, self._fire)

    def _fire(self) -> None:
        self._timer = None
        run_in_background(self.refresh(), description="shout counts refetch")

    def _on_change(self, change: ChangeEvent) -> None:
        self.schedule_refetch()


__all__ = ["ChatUnreadCounts", "EngagementCounts", "UnreadCounter"]
