"""Shared fixtures: an in-process backend and per-viewer sync contexts."""
from __future__ import annotations

from typing import Callable, Iterator

import pytest

from shoutsync.clients import MemoryBackend
from shoutsync.config import Settings
from shoutsync.constants import (
    EVENT_LIKES_TABLE,
    MESSAGE_REACTIONS_TABLE,
    SHOUT_COMMENT_LIKES_TABLE,
    SHOUT_LIKES_TABLE,
    SPOT_COMMENT_LIKES_TABLE,
)
from shoutsync.context import ErrorReporter, SyncContext


@pytest.fixture
def settings() -> Settings:
    return Settings(
        SUPABASE_URL="http://backend.test",
        SUPABASE_ANON_KEY="test-anon-key",
        SUPABASE_ACCESS_TOKEN=None,
        SHOUTSYNC_REFETCH_DEBOUNCE_MS=10,
        SHOUTSYNC_NOTIFICATION_WINDOW_DAYS=7,
        SHOUTSYNC_NOTIFICATION_LIMIT=50,
    )


@pytest.fixture
def backend() -> MemoryBackend:
    backend = MemoryBackend()
    backend.add_unique(SHOUT_LIKES_TABLE, "shout_id", "user_id")
    backend.add_unique(EVENT_LIKES_TABLE, "event_id", "user_id")
    backend.add_unique(SHOUT_COMMENT_LIKES_TABLE, "comment_id", "user_id")
    backend.add_unique(SPOT_COMMENT_LIKES_TABLE, "comment_id", "user_id")
    backend.add_unique(MESSAGE_REACTIONS_TABLE, "message_id", "user_id", "emoji")
    return backend


@pytest.fixture
def make_context(backend: MemoryBackend, settings: Settings) -> Iterator[Callable[..., SyncContext]]:
    """Each context gets its own realtime connection, like a separate device."""

    created: list[SyncContext] = []

    def _factory(
        viewer_id: str | None = "viewer-1",
        *,
        auto_deliver: bool = True,
        report_error: ErrorReporter | None = None,
    ) -> SyncContext:
        context = SyncContext(
            backend=backend,
            transport=backend.connect(auto_deliver=auto_deliver),
            viewer_id=viewer_id,
            settings=settings,
            report_error=report_error,
        )
        created.append(context)
        return context

    yield _factory
    for context in created:
        context.close()
