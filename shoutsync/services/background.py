"""Fire-and-forget task helpers for background refetches and writes."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable

logger = logging.getLogger(__name__)

_pending: set[asyncio.Task[Any]] = set()


async def _guarded(awaitable: Awaitable[Any], description: str) -> Any:
    try:
        return await awaitable
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Background task failed: %s", description)
        return None


def run_in_background(awaitable: Awaitable[Any], *, description: str) -> asyncio.Task[Any] | None:
    """Schedule ``awaitable`` on the running loop, logging instead of raising on failure."""

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        logger.warning("No running event loop; dropping background task %s", description)
        if inspect.iscoroutine(awaitable):
            awaitable.close()
        return None
    task = loop.create_task(_guarded(awaitable, description))
    _pending.add(task)
    task.add_done_callback(_pending.discard)
    return task


async def drain_background() -> None:
    """Wait until every scheduled background task (including ones they spawn) settles."""

    while _pending:
        await asyncio.gather(*list(_pending), return_exceptions=True)


__all__ = ["run_in_background", "drain_background"]
