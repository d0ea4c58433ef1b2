"""Viewer notification feed reconciled with realtime inserts, updates and deletes."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Iterable

from pydantic import ValidationError

from ..clients.backend import BackendError, Order, eq, gte
from ..constants import NOTIFICATIONS_TABLE, PROFILES_DISPLAY_RPC
from ..schemas import ChangeEvent, ChangeType, NotificationRecord, TriggerUserProfile
from .background import run_in_background
from .channel_registry import ChannelLease
from .optimistic import ChangeClock, MutationToken, OptimisticStore

if TYPE_CHECKING:
    from ..context import SyncContext

logger = logging.getLogger(__name__)


def _marked_read(record: NotificationRecord) -> Callable[[NotificationRecord | None], NotificationRecord]:
    return lambda _current: record.model_copy(update={"is_read": True})


class NotificationFeed:
    """Recent notifications for the signed-in viewer, newest first."""

    def __init__(self, context: "SyncContext") -> None:
        self._ctx = context
        self._records: OptimisticStore[str, NotificationRecord] = OptimisticStore()
        self._clock = ChangeClock()
        self._lease: ChannelLease | None = None
        self.loading = True

    @property
    def notifications(self) -> list[NotificationRecord]:
        return sorted(self._records.values(), key=lambda record: record.created_at, reverse=True)

    @property
    def has_unread(self) -> bool:
        return any(not record.is_read for record in self._records.values())

    def get(self, notification_id: str) -> NotificationRecord | None:
        return self._records.get(str(notification_id))

    async def start(self) -> None:
        viewer = self._ctx.viewer_id
        if viewer and self._lease is None:
            lease = self._ctx.registry.get_or_create_channel(f"notifications-{viewer}")
            lease.on(ChangeType.INSERT, NOTIFICATIONS_TABLE, self._on_insert)
            lease.on(ChangeType.UPDATE, NOTIFICATIONS_TABLE, self._on_update)
            lease.on(ChangeType.DELETE, NOTIFICATIONS_TABLE, self._on_delete)
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
            self._records.clear()
            self.loading = False
            return

        settings = self._ctx.settings
        since = datetime.now(timezone.utc) - timedelta(days=settings.notification_window_days)
        started = self._clock.begin()
        try:
            try:
                rows = await self._ctx.backend.select(
                    NOTIFICATIONS_TABLE,
                    filters=[eq("recipient_id", viewer), gte("created_at", since)],
                    order=Order("created_at", ascending=False),
                    limit=settings.notification_limit,
                )
            except BackendError:
                logger.exception("Notification fetch failed")
                return
            records = [record for record in (self._parse(row) for row in rows) if record is not None]
            profiles = await self._load_profiles(record.trigger_user_id for record in records)
            self._apply_snapshot(records, profiles, started)
        finally:
            self._clock.end()
            self.loading = False

    def _apply_snapshot(
        self,
        records: list[NotificationRecord],
        profiles: dict[str, TriggerUserProfile],
        started: int,
    ) -> None:
        if self._clock.all_changed_since(started):
            logger.debug("Notifications were cleared during the fetch; dropping the snapshot")
            return
        fetched = {record.id: record for record in records}
        for key in self._records.keys():
            if key not in fetched and not self._clock.changed_since(key, started):
                self._records.discard(key)
        for key, record in fetched.items():
            # Local changes newer than the snapshot win, as do unsettled read marks.
            if self._clock.changed_since(key, started) or self._records.pending(key):
                continue
            profile = profiles.get(record.trigger_user_id)
            if profile is not None:
                record = record.model_copy(update={"trigger_user": profile})
            self._records.set(key, record)

    async def mark_as_read(self, notification_id: str) -> bool:
        viewer = self._ctx.viewer_id
        key = str(notification_id)
        current = self._records.get(key)
        if not viewer or current is None:
            return False
        token = self._records.apply_optimistic(key, _marked_read(current))
        try:
            await self._ctx.backend.update(
                NOTIFICATIONS_TABLE,
                {"is_read": True},
                filters=[eq("id", key), eq("recipient_id", viewer)],
            )
        except BackendError as exc:
            self._records.rollback(token)
            logger.warning("Error marking notification %s as read: %s", key, exc)
            self._ctx.notify_error("Could not mark notification as read.")
            return False
        self._records.confirm(token)
        return True

    async def mark_all_as_read(self) -> bool:
        viewer = self._ctx.viewer_id
        if not viewer:
            return False
        tokens: list[MutationToken[str, NotificationRecord]] = [
            self._records.apply_optimistic(record.id, _marked_read(record))
            for record in self._records.values()
            if not record.is_read
        ]
        try:
            await self._ctx.backend.update(
                NOTIFICATIONS_TABLE,
                {"is_read": True},
                filters=[eq("recipient_id", viewer), eq("is_read", False)],
            )
        except BackendError as exc:
            for token in reversed(tokens):
                self._records.rollback(token)
            logger.warning("Error marking all notifications as read: %s", exc)
            self._ctx.notify_error("Could not mark notifications as read.")
            return False
        for token in tokens:
            self._records.confirm(token)
        return True

    async def clear_all(self) -> bool:
        viewer = self._ctx.viewer_id
        if not viewer:
            return False
        try:
            await self._ctx.backend.delete(NOTIFICATIONS_TABLE, filters=[eq("recipient_id", viewer)])
        except BackendError as exc:
            logger.warning("Error clearing notifications: %s", exc)
            self._ctx.notify_error("Could not clear notifications.")
            return False
        self._clock.mark_all()
        self._records.clear()
        return True

    async def _load_profiles(self, user_ids: Iterable[str]) -> dict[str, TriggerUserProfile]:
        unique = list(dict.fromkeys(user_ids))
        if not unique:
            return {}
        try:
            data = await self._ctx.backend.rpc(PROFILES_DISPLAY_RPC, {"user_ids": unique})
        except BackendError as exc:
            logger.warning("Profile lookup failed for %d users: %s", len(unique), exc)
            return {}
        profiles: dict[str, TriggerUserProfile] = {}
        for item in data or []:
            try:
                profile = TriggerUserProfile.model_validate({**item, "id": str(item.get("id"))})
            except (ValidationError, AttributeError):
                logger.warning("Skipping malformed profile payload: %r", item)
                continue
            profiles[profile.id] = profile
        return profiles

    async def _enrich(self, notification_id: str, trigger_user_id: str) -> None:
        profiles = await self._load_profiles([trigger_user_id])
        profile = profiles.get(trigger_user_id)
        current = self._records.get(notification_id)
        if profile is None or current is None:
            return
        self._records.set(notification_id, current.model_copy(update={"trigger_user": profile}))

    def _parse(self, row: dict[str, Any]) -> NotificationRecord | None:
        try:
            return NotificationRecord.model_validate(row)
        except ValidationError:
            logger.warning("Malformed notification row: %s", row)
            return None

    def _on_insert(self, change: ChangeEvent) -> None:
        row = change.new or {}
        if str(row.get("recipient_id")) != self._ctx.viewer_id:
            return
        record = self._parse(row)
        if record is None or record.id in self._records:
            return
        logger.debug("New notification %s", record.id)
        self._clock.mark(record.id)
        self._records.set(record.id, record)
        run_in_background(
            self._enrich(record.id, record.trigger_user_id),
            description=f"profile lookup for notification {record.id}",
        )

    def _on_update(self, change: ChangeEvent) -> None:
        row = change.new or {}
        key = str(row.get("id"))
        current = self._records.get(key)
        if current is None:
            return
        self._clock.mark(key)
        merged = {**current.model_dump(exclude={"trigger_user"}), **row}
        record = self._parse(merged)
        if record is None:
            return
        self._records.set(key, record.model_copy(update={"trigger_user": current.trigger_user}))

    def _on_delete(self, change: ChangeEvent) -> None:
        row = change.old or {}
        if row.get("id") is not None:
            key = str(row["id"])
            self._clock.mark(key)
            self._records.discard(key)


__all__ = ["NotificationFeed"]
