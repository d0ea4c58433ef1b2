"""Shared realtime channels keyed by name.

The backend rejects a second live subscription with the same name. Every
consumer goes through one ``ChannelRegistry``, which hands out leases on a
single ``RealtimeChannel`` per name.
"""
from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable

from ..clients.backend import ChannelConflictError, RealtimeTransport
from ..schemas import ChangeEvent, ChangeType, ChannelStatus
from .background import run_in_background

logger = logging.getLogger(__name__)

ChangeHandler = Callable[[ChangeEvent], Any]
StatusListener = Callable[[ChannelStatus], Any]

_ERROR_STATUSES = {ChannelStatus.CHANNEL_ERROR, ChannelStatus.TIMED_OUT}


@dataclass(frozen=True, eq=False)
class ChannelBinding:
    event: ChangeType | None  # None listens to every change type
    table: str
    handler: ChangeHandler

    def matches(self, change: ChangeEvent) -> bool:
        return change.table == self.table and (self.event is None or change.type is self.event)


class RealtimeChannel:
    """One underlying realtime subscription shared by every lease on its name."""

    def __init__(self, name: str, transport: RealtimeTransport) -> None:
        self.name = name
        self.handle: Any = None
        self.subscribed = False
        self.removed = False
        self.ref_count = 0
        self.status: ChannelStatus | None = None
        self._transport = transport
        self._bindings: list[ChannelBinding] = []
        self._status_listeners: list[StatusListener] = []

    @property
    def handler_count(self) -> int:
        return len(self._bindings)

    def on(self, event: ChangeType | str | None, table: str, handler: ChangeHandler) -> ChannelBinding:
        """Attach a handler; allowed before or after ``subscribe``."""

        kind = None if event in (None, "*") else ChangeType(event)
        binding = ChannelBinding(event=kind, table=table, handler=handler)
        self._bindings.append(binding)
        return binding

    def off(self, binding: ChannelBinding) -> None:
        try:
            self._bindings.remove(binding)
        except ValueError:
            pass

    def subscribe(self, callback: StatusListener | None = None) -> bool:
        """Open the transport subscription once; later calls only register ``callback``.

        Returns True when this call actually opened the subscription.
        """

        if self.removed:
            logger.warning("Ignoring subscribe on removed channel %s", self.name)
            return False
        if callback is not None:
            self._status_listeners.append(callback)
        if self.subscribed:
            logger.debug("Channel %s already subscribed", self.name)
            return False
        self.subscribed = True
        try:
            self.handle = self._transport.open(self.name, self._dispatch, self._on_status)
        except ChannelConflictError:
            self.subscribed = False
            logger.error("Channel %s is already live on the transport; not subscribing twice", self.name)
            return False
        except Exception:
            self.subscribed = False
            logger.exception("Failed to open realtime channel %s", self.name)
            return False
        return True

    def clear(self) -> None:
        self._bindings.clear()
        self._status_listeners.clear()

    def _dispatch(self, change: ChangeEvent) -> None:
        if self.removed:
            return
        for binding in list(self._bindings):
            if not binding.matches(change):
                continue
            try:
                result = binding.handler(change)
            except Exception:
                logger.exception("Realtime handler failed on channel %s for %s %s", self.name, change.type, change.table)
                continue
            if inspect.isawaitable(result):
                run_in_background(result, description=f"{self.name} {change.type} {change.table}")

    def _on_status(self, status: ChannelStatus, error: Exception | None = None) -> None:
        self.status = status
        if status in _ERROR_STATUSES:
            # No automatic retry; the next mount gets a fresh channel.
            logger.error("Channel %s reported %s: %s", self.name, status, error)
        else:
            logger.debug("Channel %s status %s", self.name, status)
        for listener in list(self._status_listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Status listener failed on channel %s", self.name)

    def __repr__(self) -> str:
        return (
            f"RealtimeChannel(name={self.name!r}, subscribed={self.subscribed}, "
            f"removed={self.removed}, refs={self.ref_count}, handlers={len(self._bindings)})"
        )


class ChannelLease:
    """A consumer's claim on a shared channel.

    Handlers attached through the lease are detached when it is released, so
    a remounted consumer never receives an event twice.
    """

    def __init__(self, channel: RealtimeChannel, should_subscribe: bool) -> None:
        self.channel = channel
        self.should_subscribe = should_subscribe
        self.released = False
        self._bindings: list[ChannelBinding] = []

    def on(self, event: ChangeType | str | None, table: str, handler: ChangeHandler) -> "ChannelLease":
        self._bindings.append(self.channel.on(event, table, handler))
        return self

    def subscribe(self, callback: StatusListener | None = None) -> bool:
        return self.channel.subscribe(callback)

    def detach(self) -> None:
        for binding in self._bindings:
            self.channel.off(binding)
        self._bindings.clear()


class ChannelRegistry:
    """Tracks one ``RealtimeChannel`` per name and enforces a single subscribe per name."""

    def __init__(self, transport: RealtimeTransport) -> None:
        self._transport = transport
        self._channels: dict[str, RealtimeChannel] = {}

    def get_or_create_channel(self, name: str) -> ChannelLease:
        """Return a lease on the channel called ``name``, creating it on first use.

        ``should_subscribe`` is True while nobody has subscribed the channel
        yet; once subscribed, callers only attach handlers.
        """

        channel = self._channels.get(name)
        if channel is None or channel.removed:
            channel = RealtimeChannel(name, self._transport)
            self._channels[name] = channel
            logger.debug("Created realtime channel %s", name)
        channel.ref_count += 1
        return ChannelLease(channel, should_subscribe=not channel.subscribed)

    def safe_remove_channel(self, target: ChannelLease | RealtimeChannel | None) -> None:
        """Release a lease or tear a channel down; repeated calls are no-ops."""

        if target is None:
            return
        if isinstance(target, ChannelLease):
            if target.released:
                return
            target.released = True
            target.detach()
            channel = target.channel
            if channel.removed:
                return
            channel.ref_count = max(0, channel.ref_count - 1)
            if channel.ref_count > 0:
                return
        else:
            channel = target
        self._teardown(channel)

    def close_all(self) -> None:
        for channel in list(self._channels.values()):
            self._teardown(channel)

    def channel_names(self) -> list[str]:
        return sorted(self._channels)

    def get(self, name: str) -> RealtimeChannel | None:
        return self._channels.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._channels

    def __len__(self) -> int:
        return len(self._channels)

    def _teardown(self, channel: RealtimeChannel) -> None:
        if channel.removed:
            return
        channel.removed = True
        channel.ref_count = 0
        if self._channels.get(channel.name) is channel:
            del self._channels[channel.name]
        handle, channel.handle = channel.handle, None
        if handle is not None:
            try:
                self._transport.close(handle)
            except Exception:
                logger.debug("Channel cleanup error for %s (safe to ignore)", channel.name, exc_info=True)
        channel.clear()
        logger.debug("Removed realtime channel %s", channel.name)


__all__ = ["ChannelBinding", "ChannelLease", "ChannelRegistry", "RealtimeChannel"]
