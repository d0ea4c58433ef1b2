"""Cross-feature refetch callbacks keyed by a fixed set of topics."""
from __future__ import annotations

import inspect
import logging
from enum import StrEnum
from typing import Any, Callable

from .background import run_in_background

logger = logging.getLogger(__name__)

RefetchCallback = Callable[[], Any]
Unregister = Callable[[], None]


class RefetchTopic(StrEnum):
    SHOUT = "shout"
    EVENT = "event"
    COUNT = "count"


def _noop() -> None:
    return None


class InvalidationBus:
    """Lets one feature's mutation refresh unrelated views without coupling them."""

    def __init__(self) -> None:
        self._callbacks: dict[RefetchTopic, dict[RefetchCallback, None]] = {topic: {} for topic in RefetchTopic}

    def register(self, topic: RefetchTopic | str, callback: RefetchCallback) -> Unregister:
        resolved = RefetchTopic(topic)
        self._callbacks[resolved][callback] = None

        def unregister() -> None:
            self._callbacks[resolved].pop(callback, None)

        return unregister

    def trigger(self, topic: RefetchTopic | str) -> int:
        """Run every callback for ``topic``; a failing callback never stops the rest."""

        try:
            resolved = RefetchTopic(topic)
        except ValueError:
            logger.warning("Ignoring refetch trigger for unknown topic %r", topic)
            return 0
        callbacks = list(self._callbacks[resolved])
        logger.debug("Triggering %s refetch, registered functions: %d", resolved, len(callbacks))
        for callback in callbacks:
            try:
                result = callback()
            except Exception:
                logger.exception("Error triggering %s refetch", resolved)
                continue
            if inspect.isawaitable(result):
                run_in_background(result, description=f"{resolved} refetch")
        return len(callbacks)

    def count(self, topic: RefetchTopic | str) -> int:
        return len(self._callbacks[RefetchTopic(topic)])

    def register_shout_refetch(self, callback: RefetchCallback) -> Unregister:
        return self.register(RefetchTopic.SHOUT, callback)

    def register_event_refetch(self, callback: RefetchCallback) -> Unregister:
        return self.register(RefetchTopic.EVENT, callback)

    def register_count_refetch(self, callback: RefetchCallback) -> Unregister:
        return self.register(RefetchTopic.COUNT, callback)

    def trigger_shout_refetch(self) -> int:
        return self.trigger(RefetchTopic.SHOUT)

    def trigger_event_refetch(self) -> int:
        return self.trigger(RefetchTopic.EVENT)

    def trigger_count_refetch(self) -> int:
        return self.trigger(RefetchTopic.COUNT)


class NullInvalidationBus(InvalidationBus):
    """Stand-in used when no sync context is available: every call is a no-op."""

    def register(self, topic: RefetchTopic | str, callback: RefetchCallback) -> Unregister:
        return _noop

    def trigger(self, topic: RefetchTopic | str) -> int:
        return 0

    def count(self, topic: RefetchTopic | str) -> int:
        return 0


__all__ = ["InvalidationBus", "NullInvalidationBus", "RefetchTopic", "RefetchCallback", "Unregister"]
