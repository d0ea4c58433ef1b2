import asyncio

from shoutsync.clients import eq
from shoutsync.constants import (
    ENGAGEMENT_CHANNEL,
    EVENT_LIKES_TABLE,
    SHOUT_COMMENT_LIKES_TABLE,
    SHOUT_COMMENTS_TABLE,
    SHOUT_LIKES_TABLE,
    SPOT_COMMENTS_TABLE,
)
from shoutsync.services import EngagementRealtime, RefetchTopic


def _recording_bus(context):
    seen: list[RefetchTopic] = []
    for topic in RefetchTopic:
        context.invalidation.register(topic, lambda topic=topic: seen.append(topic))
    return seen


def test_writes_from_other_clients_trigger_the_mapped_topics(backend, make_context):
    viewer = make_context("viewer-1")
    other = make_context("user-2")
    seen = _recording_bus(viewer)
    listener = EngagementRealtime(viewer)
    listener.start()

    async def scenario():
        await other.backend.insert(SHOUT_LIKES_TABLE, {"shout_id": "s1", "user_id": "user-2"})
        await other.backend.insert(SHOUT_COMMENTS_TABLE, {"shout_id": "s1", "user_id": "user-2", "content": "hi"})
        await other.backend.insert(EVENT_LIKES_TABLE, {"event_id": "e1", "user_id": "user-2"})
        await other.backend.insert(SPOT_COMMENTS_TABLE, {"spot_id": "p1", "user_id": "user-2", "content": "wow"})
        await other.backend.insert(SHOUT_COMMENT_LIKES_TABLE, {"comment_id": "c1", "user_id": "user-2"})

    asyncio.run(scenario())
    assert seen == [
        RefetchTopic.SHOUT,
        RefetchTopic.COUNT,
        RefetchTopic.SHOUT,
        RefetchTopic.COUNT,
        RefetchTopic.EVENT,
        RefetchTopic.EVENT,
    ]


def test_deletes_trigger_refetches_too(backend, make_context):
    rows = backend.seed(EVENT_LIKES_TABLE, [{"event_id": "e1", "user_id": "user-2"}])
    viewer = make_context("viewer-1")
    seen = _recording_bus(viewer)
    listener = EngagementRealtime(viewer)
    listener.start()

    asyncio.run(backend.delete(EVENT_LIKES_TABLE, filters=[eq("id", rows[0]["id"])]))
    assert seen == [RefetchTopic.EVENT]


def test_start_is_idempotent_and_close_releases_the_channel(make_context):
    context = make_context("viewer-1")
    listener = EngagementRealtime(context)

    listener.start()
    listener.start()
    assert listener.active is True
    assert context.transport.open_counts[ENGAGEMENT_CHANNEL] == 1

    listener.close()
    listener.close()
    assert listener.active is False
    assert ENGAGEMENT_CHANNEL not in context.registry
    assert context.transport.open_channels == []


def test_two_listeners_share_one_subscription(make_context):
    context = make_context("viewer-1")
    seen = _recording_bus(context)
    first = EngagementRealtime(context)
    second = EngagementRealtime(context)
    first.start()
    second.start()

    asyncio.run(context.backend.insert(EVENT_LIKES_TABLE, {"event_id": "e1", "user_id": "user-2"}))
    assert context.transport.open_counts[ENGAGEMENT_CHANNEL] == 1
    assert seen == [RefetchTopic.EVENT, RefetchTopic.EVENT]

    first.close()
    assert ENGAGEMENT_CHANNEL in context.registry
    second.close()
    assert ENGAGEMENT_CHANNEL not in context.registry
