"""Process-wide sync context created once at startup and injected into consumers."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable

from .clients.backend import Backend, RealtimeTransport
from .config import Settings, get_settings
from .services.channel_registry import ChannelRegistry
from .services.invalidation import InvalidationBus, NullInvalidationBus

logger = logging.getLogger(__name__)

ErrorReporter = Callable[[str], None]


@dataclass
class SyncContext:
    """Bundles the backend, the shared channel registry and the invalidation bus.

    ``report_error`` is the user-facing notification hook (a toast in the UI)
    used by mutations that fail after an optimistic update.
    """

    backend: Backend
    transport: RealtimeTransport
    viewer_id: str | None = None
    settings: Settings = field(default_factory=get_settings)
    invalidation: InvalidationBus = field(default_factory=InvalidationBus)
    report_error: ErrorReporter | None = None
    registry: ChannelRegistry = field(init=False)

    def __post_init__(self) -> None:
        self.registry = ChannelRegistry(self.transport)

    def notify_error(self, message: str) -> None:
        logger.warning(message)
        if self.report_error is None:
            return
        try:
            self.report_error(message)
        except Exception:
            logger.exception("Error reporter failed")

    def close(self) -> None:
        self.registry.close_all()


_NULL_BUS = NullInvalidationBus()


def resolve_invalidation_bus(context: SyncContext | None) -> InvalidationBus:
    """Return the context's bus, or a no-op bus when no context is mounted."""

    if context is None:
        logger.debug("No sync context available; refetch bus calls are no-ops")
        return _NULL_BUS
    return context.invalidation


__all__ = ["ErrorReporter", "SyncContext", "resolve_invalidation_bus"]
