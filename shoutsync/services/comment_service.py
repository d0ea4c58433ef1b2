"""Comment threads with placeholder posts and realtime merging."""
from __future__ import annotations

import bisect
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from ..clients.backend import BackendError, Order, eq
from ..constants import SHOUT_COMMENTS_TABLE, SPOT_COMMENTS_TABLE, TEMP_ID_PREFIX
from ..schemas import ChangeEvent, ChangeType, Comment
from .background import run_in_background
from .channel_registry import ChannelLease
from .invalidation import RefetchTopic
from .live_ref import LiveRef
from .optimistic import ChangeClock

if TYPE_CHECKING:
    from ..context import SyncContext

logger = logging.getLogger(__name__)


class CommentPostError(RuntimeError):
    """Raised when a comment could not be stored; the placeholder is already gone."""


class CommentDeleteError(RuntimeError):
    """Raised when a comment could not be deleted."""


@dataclass(frozen=True)
class CommentTable:
    table: str
    target_column: str
    channel_name: str
    author_column: str = "user_id"
    topics: tuple[RefetchTopic, ...] = ()


SHOUT_COMMENTS = CommentTable(
    SHOUT_COMMENTS_TABLE,
    "shout_id",
    "shout-comments-global",
    topics=(RefetchTopic.SHOUT, RefetchTopic.COUNT),
)
SPOT_COMMENTS = CommentTable(SPOT_COMMENTS_TABLE, "spot_id", "spot-comments-global", topics=(RefetchTopic.EVENT,))


def _sort_key(comment: Comment) -> datetime:
    return comment.created_at


class CommentThread:
    """Ordered comments for whichever target is currently displayed."""

    def __init__(self, context: "SyncContext", table: CommentTable = SHOUT_COMMENTS, target_id: str | None = None) -> None:
        self._ctx = context
        self._table = table
        self._target: LiveRef[str | None] = LiveRef(str(target_id) if target_id is not None else None)
        self._comments: list[Comment] = []
        self._clock = ChangeClock()
        self._lease: ChannelLease | None = None
        self.is_loading = False

    async def __aenter__(self) -> "CommentThread":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def comments(self) -> tuple[Comment, ...]:
        return tuple(self._comments)

    @property
    def target_id(self) -> str | None:
        return self._target.get()

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

    async def set_target(self, target_id: str | None) -> None:
        """Switch the displayed target without touching the subscription."""

        self._target.set(str(target_id) if target_id is not None else None)
        self._comments = []
        await self.refresh()

    async def refresh(self) -> None:
        target = self._target.get()
        if not target:
            self._comments = []
            return

        self.is_loading = True
        started = self._clock.begin()
        try:
            rows = await self._fetch(target)
            if rows is None or self._target.get() != target:
                return  # failed, or the thread moved on while we were waiting
            self._apply_snapshot(rows, started)
        finally:
            self._clock.end()
            self.is_loading = False

    async def _fetch(self, target: str) -> list[dict[str, Any]] | None:
        try:
            return await self._ctx.backend.select(
                self._table.table,
                filters=[eq(self._table.target_column, target)],
                order=Order("created_at"),
            )
        except BackendError:
            logger.exception("Error fetching %s for %s", self._table.table, target)
            return None

    def _apply_snapshot(self, rows: list[dict[str, Any]], started: int) -> None:
        """Merge a server read with comments that arrived or left while it was in flight."""

        fetched: dict[str, Comment] = {}
        for row in rows:
            comment = self._parse(row)
            if comment is not None:
                fetched[comment.id] = comment
        current = {comment.id: comment for comment in self._comments}

        merged: dict[str, Comment] = {}
        for comment_id, comment in fetched.items():
            if not self._clock.changed_since(comment_id, started):
                merged[comment_id] = comment
            elif comment_id in current:
                merged[comment_id] = current[comment_id]
        for comment_id, comment in current.items():
            if comment_id in fetched:
                continue
            if comment.is_placeholder or self._clock.changed_since(comment_id, started):
                merged[comment_id] = comment
        self._comments = sorted(merged.values(), key=_sort_key)

    async def add_comment(self, author_id: str, content: str, *, parent_id: str | None = None) -> Comment | None:
        """Show the comment right away, then store it.

        Returns the confirmed comment, or None when there is nothing to post.
        """

        target = self._target.get()
        text = content.strip()
        if not target or not text:
            return None

        placeholder = Comment(
            id=f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}",
            target_id=target,
            author_id=str(author_id),
            content=text,
            created_at=datetime.now(timezone.utc),
            parent_id=parent_id,
        )
        self._comments.append(placeholder)

        row: dict[str, Any] = {
            self._table.target_column: target,
            self._table.author_column: str(author_id),
            "content": text,
        }
        if parent_id is not None:
            row["parent_id"] = parent_id

        try:
            stored = await self._ctx.backend.insert(self._table.table, row)
        except BackendError as exc:
            self._discard(placeholder.id)
            logger.warning("Error adding comment to %s %s: %s", self._table.table, target, exc)
            raise CommentPostError("Could not post comment") from exc

        self._discard(placeholder.id)
        confirmed = self._parse(stored)
        if confirmed is None:
            run_in_background(self.refresh(), description=f"{self._table.table} refetch after post")
        elif self._target.get() == confirmed.target_id:
            self._merge(confirmed)
        self._trigger_topics()
        return confirmed

    async def delete_comment(self, comment_id: str) -> None:
        comment_id = str(comment_id)
        if comment_id.startswith(TEMP_ID_PREFIX):
            self._discard(comment_id)
            return
        try:
            await self._ctx.backend.delete(self._table.table, filters=[eq("id", comment_id)])
        except BackendError as exc:
            logger.warning("Error deleting comment %s: %s", comment_id, exc)
            raise CommentDeleteError("Could not delete comment") from exc
        self._discard(comment_id)
        self._trigger_topics()

    def _trigger_topics(self) -> None:
        for topic in self._table.topics:
            self._ctx.invalidation.trigger(topic)

    def _parse(self, row: dict[str, Any]) -> Comment | None:
        try:
            return Comment.from_row(
                row,
                target_column=self._table.target_column,
                author_column=self._table.author_column,
            )
        except ValidationError:
            logger.warning("Malformed %s row: %s", self._table.table, row)
            return None

    def _discard(self, comment_id: str) -> None:
        self._clock.mark(comment_id)
        self._comments = [comment for comment in self._comments if comment.id != comment_id]

    def _merge(self, comment: Comment) -> None:
        if any(existing.id == comment.id for existing in self._comments):
            return
        self._clock.mark(comment.id)
        placeholder = self._matching_placeholder(comment)
        if placeholder is not None:
            self._discard(placeholder.id)
        keys = [_sort_key(existing) for existing in self._comments]
        self._comments.insert(bisect.bisect_right(keys, _sort_key(comment)), comment)

    def _matching_placeholder(self, comment: Comment) -> Comment | None:
        candidates = [
            existing
            for existing in self._comments
            if existing.is_placeholder and existing.author_id == comment.author_id
        ]
        for candidate in candidates:
            if candidate.content == comment.content:
                return candidate
        return candidates[0] if candidates else None

    def _on_insert(self, change: ChangeEvent) -> None:
        row = change.new or {}
        target = self._target.get()
        if not target or str(row.get(self._table.target_column)) != target:
            return
        comment = self._parse(row)
        if comment is None:
            run_in_background(self.refresh(), description=f"{self._table.table} refetch after malformed insert")
            return
        self._merge(comment)

    def _on_delete(self, change: ChangeEvent) -> None:
        row = change.old or {}
        comment_id = row.get("id")
        if comment_id is None:
            run_in_background(self.refresh(), description=f"{self._table.table} refetch after malformed delete")
            return
        owner = row.get(self._table.target_column)
        if owner is not None and str(owner) != self._target.get():
            return
        # Ids are unique, so a key-only delete payload is still safe to apply.
        self._discard(str(comment_id))


__all__ = [
    "CommentDeleteError",
    "CommentPostError",
    "CommentTable",
    "CommentThread",
    "SHOUT_COMMENTS",
    "SPOT_COMMENTS",
]
