"""Like counters with optimistic toggles reconciled against the change feed."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable

from ..clients.backend import BackendError, eq, in_
from ..constants import (
    EVENT_LIKES_TABLE,
    SHOUT_COMMENT_LIKES_TABLE,
    SHOUT_LIKES_TABLE,
    SPOT_COMMENT_LIKES_TABLE,
)
from ..schemas import ChangeEvent, ChangeType, LikeState
from .background import run_in_background
from .channel_registry import ChannelLease
from .invalidation import RefetchTopic
from .live_ref import LiveRef
from .optimistic import ChangeClock, OptimisticStore

if TYPE_CHECKING:
    from ..context import SyncContext

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LikeTable:
    """Where a kind of like lives and which views depend on it."""

    table: str
    target_column: str
    channel_name: str
    actor_column: str = "user_id"
    topics: tuple[RefetchTopic, ...] = ()


SHOUT_LIKES = LikeTable(
    SHOUT_LIKES_TABLE,
    "shout_id",
    "shout-likes-realtime",
    topics=(RefetchTopic.SHOUT, RefetchTopic.COUNT),
)
EVENT_LIKES = LikeTable(EVENT_LIKES_TABLE, "event_id", "event-likes-realtime", topics=(RefetchTopic.EVENT,))
SHOUT_COMMENT_LIKES = LikeTable(SHOUT_COMMENT_LIKES_TABLE, "comment_id", "shout-comment-likes-realtime")
SPOT_COMMENT_LIKES = LikeTable(SPOT_COMMENT_LIKES_TABLE, "comment_id", "spot-comment-likes-realtime")


class LikeCache:
    """Per-viewer like state for a live set of targets.

    The viewer's own like is the optimistic part of each ``LikeState``; likes
    by other users are tracked as a set per target, so applying the same
    change event twice never moves the count.
    """

    def __init__(self, context: "SyncContext", table: LikeTable, target_ids: Iterable[str] = ()) -> None:
        self._ctx = context
        self._table = table
        self._targets: LiveRef[tuple[str, ...]] = LiveRef(_unique(target_ids))
        self._states: OptimisticStore[str, LikeState] = OptimisticStore()
        self._others: dict[str, set[str]] = {}
        self._clock = ChangeClock()
        self._locks: dict[str, asyncio.Lock] = {}
        self._lease: ChannelLease | None = None

    async def __aenter__(self) -> "LikeCache":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def target_ids(self) -> tuple[str, ...]:
        return self._targets.get()

    def set_targets(self, target_ids: Iterable[str]) -> None:
        """Retarget the cache; the shared subscription is left untouched."""

        self._targets.set(_unique(target_ids))

    async def start(self) -> None:
        if self._lease is None:
            lease = self._ctx.registry.get_or_create_channel(self._table.channel_name)
            lease.on(ChangeType.INSERT, self._table.table, self._on_insert)
            lease.on(ChangeType.DELETE, self._table.table, self._on_delete)
            if lease.should_subscribe:
                lease.subscribe()
            self._lease = lease
        await self.refresh()

    def close(self) -> None:
        self._ctx.registry.safe_remove_channel(self._lease)
        self._lease = None

    def get_likes(self, target_id: str) -> LikeState:
        return self._states.get(str(target_id)) or LikeState(target_id=str(target_id))

    async def refresh(self) -> None:
        """Overwrite tracked states with a fresh server read.

        Targets that saw a change event or a toggle while the read was in
        flight keep their local state; the snapshot is older than they are.
        """

        targets = self._targets.get()
        if not targets:
            self._states.clear()
            self._others.clear()
            return
        started = self._clock.begin()
        try:
            rows = await self._fetch(targets)
            if rows is not None:
                self._apply_snapshot(targets, rows, started)
        finally:
            self._clock.end()

    async def _fetch(self, targets: tuple[str, ...]) -> list[dict[str, Any]] | None:
        columns = f"{self._table.target_column},{self._table.actor_column}"
        try:
            return await self._ctx.backend.select(
                self._table.table,
                columns=columns,
                filters=[in_(self._table.target_column, targets)],
            )
        except BackendError:
            logger.exception("Error fetching %s", self._table.table)
            return None

    def _apply_snapshot(self, targets: tuple[str, ...], rows: list[dict[str, Any]], started: int) -> None:
        likers: dict[str, set[str]] = {target: set() for target in targets}
        for row in rows:
            target = row.get(self._table.target_column)
            actor = row.get(self._table.actor_column)
            if target is None or actor is None:
                continue
            likers.setdefault(str(target), set()).add(str(actor))

        viewer = self._ctx.viewer_id
        live = set(self._targets.get())
        for target, users in likers.items():
            if target not in live:
                continue
            if self._clock.changed_since(target, started) or self._states.pending(target):
                continue
            viewer_has_liked = viewer is not None and viewer in users
            self._others[target] = users - {viewer} if viewer else users
            self._states.set(
                target,
                LikeState(target_id=target, count=len(users), viewer_has_liked=viewer_has_liked),
            )

    async def toggle_like(self, target_id: str) -> LikeState:
        """Flip the viewer's like immediately, then persist it.

        On failure the exact pre-toggle state is restored, the error reporter
        is notified and a background refetch settles the authoritative value.
        """

        viewer = self._ctx.viewer_id
        target = str(target_id)
        if not viewer:
            logger.debug("Ignoring like toggle without a signed-in viewer")
            return self.get_likes(target)

        self._clock.mark(target)
        token = self._states.apply_optimistic(target, lambda current: self._flipped(target, current))
        liking = token.applied.viewer_has_liked
        try:
            async with self._write_lock(target):
                if liking:
                    await self._ctx.backend.insert(
                        self._table.table,
                        {self._table.target_column: target, self._table.actor_column: viewer},
                    )
                else:
                    await self._ctx.backend.delete(
                        self._table.table,
                        filters=[eq(self._table.target_column, target), eq(self._table.actor_column, viewer)],
                    )
        except BackendError as exc:
            self._clock.mark(target)
            self._states.rollback(token)
            self._recount(target)
            logger.warning("Error toggling %s on %s: %s", self._table.table, target, exc)
            self._ctx.notify_error("Could not update like. Please try again.")
            run_in_background(self.refresh(), description=f"{self._table.table} refetch after failed toggle")
            return self.get_likes(target)

        self._clock.mark(target)
        self._states.confirm(token)
        for topic in self._table.topics:
            self._ctx.invalidation.trigger(topic)
        return self.get_likes(target)

    def _write_lock(self, target: str) -> asyncio.Lock:
        # Rapid toggles on one target must reach the server in the order they were made.
        lock = self._locks.get(target)
        if lock is None:
            lock = self._locks[target] = asyncio.Lock()
        return lock

    def _flipped(self, target: str, current: LikeState | None) -> LikeState:
        state = current or LikeState(target_id=target, count=len(self._others.get(target, ())))
        liked = not state.viewer_has_liked
        count = state.count + 1 if liked else max(0, state.count - 1)
        return LikeState(target_id=target, count=count, viewer_has_liked=liked)

    def _recount(self, target: str) -> None:
        state = self.get_likes(target)
        count = len(self._others.get(target, ())) + (1 if state.viewer_has_liked else 0)
        if count != state.count:
            self._states.set(target, state.model_copy(update={"count": count}))

    def _identify(self, change: ChangeEvent) -> tuple[str, str] | None:
        target = change.value(self._table.target_column)
        actor = change.value(self._table.actor_column)
        if target is None or actor is None:
            return None
        return str(target), str(actor)

    def _on_insert(self, change: ChangeEvent) -> None:
        self._reconcile(change, liked=True)

    def _on_delete(self, change: ChangeEvent) -> None:
        self._reconcile(change, liked=False)

    def _reconcile(self, change: ChangeEvent, *, liked: bool) -> None:
        identity = self._identify(change)
        if identity is None:
            # Delete payloads can omit non-key columns; refetch rather than guess.
            logger.info("%s %s without target or actor; refetching", self._table.table, change.type)
            run_in_background(self.refresh(), description=f"{self._table.table} full refetch")
            return

        target, actor = identity
        if target not in self._targets.get():
            return
        self._clock.mark(target)

        if actor == self._ctx.viewer_id:
            state = self.get_likes(target)
            if state.viewer_has_liked == liked:
                return  # confirmation of our own optimistic change
            self._states.set(target, state.model_copy(update={"viewer_has_liked": liked}))
        else:
            others = self._others.setdefault(target, set())
            if (actor in others) == liked:
                return
            if liked:
                others.add(actor)
            else:
                others.discard(actor)
        self._recount(target)


def _unique(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(str(value) for value in values))


__all__ = [
    "EVENT_LIKES",
    "LikeCache",
    "LikeTable",
    "SHOUT_COMMENT_LIKES",
    "SHOUT_LIKES",
    "SPOT_COMMENT_LIKES",
]
