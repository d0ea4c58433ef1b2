"""Emoji reactions on chat messages, reconciled the same way as likes."""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Iterable

from ..clients.backend import BackendError, eq, in_
from ..constants import MESSAGE_REACTIONS_CHANNEL, MESSAGE_REACTIONS_TABLE, REACTION_EMOJIS
from ..schemas import ChangeEvent, ChangeType, Reaction
from .background import run_in_background
from .channel_registry import ChannelLease
from .live_ref import LiveRef
from .optimistic import ChangeClock, OptimisticStore

if TYPE_CHECKING:
    from ..context import SyncContext

logger = logging.getLogger(__name__)

ReactionKey = tuple[str, str]


def _display_order(reaction: Reaction) -> tuple[int, str]:
    try:
        rank = REACTION_EMOJIS.index(reaction.emoji)
    except ValueError:
        rank = len(REACTION_EMOJIS)
    return rank, reaction.emoji


class ReactionCache:
    """Per-viewer reaction tallies for the messages currently on screen.

    Keys are ``(message_id, emoji)``. The viewer's own reaction is applied
    optimistically; reactions by other users are kept as a set per key so a
    redelivered event never moves a count.
    """

    def __init__(self, context: "SyncContext", message_ids: Iterable[str] = ()) -> None:
        self._ctx = context
        self._messages: LiveRef[tuple[str, ...]] = LiveRef(_unique(message_ids))
        self._states: OptimisticStore[ReactionKey, Reaction] = OptimisticStore()
        self._others: dict[ReactionKey, set[str]] = {}
        self._clock = ChangeClock()
        self._locks: dict[ReactionKey, asyncio.Lock] = {}
        self._lease: ChannelLease | None = None

    async def __aenter__(self) -> "ReactionCache":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def message_ids(self) -> tuple[str, ...]:
        return self._messages.get()

    def set_message_ids(self, message_ids: Iterable[str]) -> None:
        self._messages.set(_unique(message_ids))

    async def start(self) -> None:
        if self._lease is None:
            lease = self._ctx.registry.get_or_create_channel(MESSAGE_REACTIONS_CHANNEL)
            lease.on(ChangeType.INSERT, MESSAGE_REACTIONS_TABLE, self._on_insert)
            lease.on(ChangeType.DELETE, MESSAGE_REACTIONS_TABLE, self._on_delete)
            if lease.should_subscribe:
                lease.subscribe()
            self._lease = lease
        await self.refresh()

    def close(self) -> None:
        self._ctx.registry.safe_remove_channel(self._lease)
        self._lease = None

    def get_reaction(self, message_id: str, emoji: str) -> Reaction:
        key = (str(message_id), emoji)
        return self._states.get(key) or Reaction(message_id=key[0], emoji=emoji)

    def get_reactions(self, message_id: str) -> list[Reaction]:
        """Reactions with at least one reactor, in picker order."""

        message_id = str(message_id)
        shown = [
            reaction
            for (owner, _emoji), reaction in zip(self._states.keys(), self._states.values())
            if owner == message_id and reaction.count > 0
        ]
        return sorted(shown, key=_display_order)

    async def refresh(self) -> None:
        message_ids = self._messages.get()
        if not message_ids:
            self._states.clear()
            self._others.clear()
            return
        started = self._clock.begin()
        try:
            rows = await self._fetch(message_ids)
            if rows is not None:
                self._apply_snapshot(message_ids, rows, started)
        finally:
            self._clock.end()

    async def _fetch(self, message_ids: tuple[str, ...]) -> list[dict[str, Any]] | None:
        try:
            return await self._ctx.backend.select(
                MESSAGE_REACTIONS_TABLE,
                columns="message_id,user_id,emoji",
                filters=[in_("message_id", message_ids)],
            )
        except BackendError:
            logger.exception("Error fetching reactions for %d messages", len(message_ids))
            return None

    def _apply_snapshot(self, message_ids: tuple[str, ...], rows: list[dict[str, Any]], started: int) -> None:
        reactors: dict[ReactionKey, set[str]] = defaultdict(set)
        for row in rows:
            key = self._key(row.get("message_id"), row.get("emoji"))
            if key is None or row.get("user_id") is None:
                continue
            reactors[key].add(str(row["user_id"]))

        live = set(self._messages.get())
        for key in self._states.keys():
            if key[0] in message_ids and key not in reactors and not self._settling(key, started):
                self._states.discard(key)
                self._others.pop(key, None)

        viewer = self._ctx.viewer_id
        for key, users in reactors.items():
            if key[0] not in live or self._settling(key, started):
                continue
            self._others[key] = users - {viewer} if viewer else users
            self._states.set(
                key,
                Reaction(
                    message_id=key[0],
                    emoji=key[1],
                    count=len(users),
                    viewer_has_reacted=viewer is not None and viewer in users,
                ),
            )

    def _settling(self, key: ReactionKey, started: int) -> bool:
        return self._clock.changed_since(key, started) or bool(self._states.pending(key))

    async def toggle_reaction(self, message_id: str, emoji: str) -> Reaction:
        """Add or remove the viewer's ``emoji`` on a message, showing it right away."""

        viewer = self._ctx.viewer_id
        key = self._key(message_id, emoji)
        if not viewer or key is None:
            logger.debug("Ignoring reaction toggle without a viewer or an emoji")
            return self.get_reaction(str(message_id), emoji)

        self._clock.mark(key)
        token = self._states.apply_optimistic(key, lambda current: self._flipped(key, current))
        adding = token.applied.viewer_has_reacted
        try:
            async with self._write_lock(key):
                if adding:
                    await self._ctx.backend.insert(
                        MESSAGE_REACTIONS_TABLE,
                        {"message_id": key[0], "user_id": viewer, "emoji": key[1]},
                    )
                else:
                    await self._ctx.backend.delete(
                        MESSAGE_REACTIONS_TABLE,
                        filters=[eq("message_id", key[0]), eq("user_id", viewer), eq("emoji", key[1])],
                    )
        except BackendError as exc:
            self._clock.mark(key)
            self._states.rollback(token)
            self._recount(key)
            logger.warning("Error toggling reaction %s on message %s: %s", key[1], key[0], exc)
            self._ctx.notify_error("Could not update reaction. Please try again.")
            run_in_background(self.refresh(), description="message reactions refetch after failed toggle")
            return self.get_reaction(*key)

        self._clock.mark(key)
        self._states.confirm(token)
        return self.get_reaction(*key)

    def _write_lock(self, key: ReactionKey) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _flipped(self, key: ReactionKey, current: Reaction | None) -> Reaction:
        state = current or Reaction(message_id=key[0], emoji=key[1], count=len(self._others.get(key, ())))
        reacted = not state.viewer_has_reacted
        count = state.count + 1 if reacted else max(0, state.count - 1)
        return state.model_copy(update={"count": count, "viewer_has_reacted": reacted})

    def _recount(self, key: ReactionKey) -> None:
        state = self.get_reaction(*key)
        count = len(self._others.get(key, ())) + (1 if state.viewer_has_reacted else 0)
        if count != state.count:
            self._states.set(key, state.model_copy(update={"count": count}))

    @staticmethod
    def _key(message_id: Any, emoji: Any) -> ReactionKey | None:
        if message_id is None or emoji is None or not str(emoji).strip():
            return None
        return str(message_id), str(emoji).strip()

    def _on_insert(self, change: ChangeEvent) -> None:
        self._reconcile(change, reacted=True)

    def _on_delete(self, change: ChangeEvent) -> None:
        self._reconcile(change, reacted=False)

    def _reconcile(self, change: ChangeEvent, *, reacted: bool) -> None:
        key = self._key(change.value("message_id"), change.value("emoji"))
        actor = change.value("user_id")
        if key is None or actor is None:
            logger.info("%s %s without message, emoji or user; refetching", MESSAGE_REACTIONS_TABLE, change.type)
            run_in_background(self.refresh(), description="message reactions full refetch")
            return
        if key[0] not in self._messages.get():
            return
        self._clock.mark(key)

        if str(actor) == self._ctx.viewer_id:
            state = self.get_reaction(*key)
            if state.viewer_has_reacted == reacted:
                return
            self._states.set(key, state.model_copy(update={"viewer_has_reacted": reacted}))
        else:
            others = self._others.setdefault(key, set())
            if (str(actor) in others) == reacted:
                return
            if reacted:
                others.add(str(actor))
            else:
                others.discard(str(actor))
        self._recount(key)


def _unique(values: Iterable[str]) -> tuple[str, ...]:
    return tuple(dict.fromkeys(str(value) for value in values))


__all__ = ["ReactionCache"]
