import asyncio
import logging

from shoutsync.clients import MemoryRealtime
from shoutsync.schemas import ChangeEvent, ChangeType, ChannelStatus
from shoutsync.services import ChannelRegistry, drain_background


def _like_event(user_id: str = "user-2", table: str = "shout_likes") -> ChangeEvent:
    return ChangeEvent(table=table, type=ChangeType.INSERT, new={"shout_id": "s1", "user_id": user_id})


def _noop(change: ChangeEvent) -> None:
    return None


def test_same_name_returns_the_same_channel_and_subscribes_once():
    transport = MemoryRealtime()
    registry = ChannelRegistry(transport)

    first = registry.get_or_create_channel("shout-likes-realtime")
    assert first.should_subscribe is True
    assert first.subscribe() is True

    second = registry.get_or_create_channel("shout-likes-realtime")
    assert second.channel is first.channel
    assert second.should_subscribe is False
    assert second.subscribe() is False

    assert transport.open_counts["shout-likes-realtime"] == 1
    assert first.channel.ref_count == 2
    assert len(registry) == 1


def test_concurrent_mounts_before_subscribe_still_open_once():
    transport = MemoryRealtime()
    registry = ChannelRegistry(transport)

    first = registry.get_or_create_channel("counts")
    second = registry.get_or_create_channel("counts")
    assert first.should_subscribe and second.should_subscribe

    first.subscribe()
    second.subscribe()

    assert transport.open_counts["counts"] == 1
    assert first.channel.status is ChannelStatus.SUBSCRIBED


def test_releasing_a_lease_detaches_only_its_handlers():
    transport = MemoryRealtime()
    registry = ChannelRegistry(transport)
    received: list[str] = []

    first = registry.get_or_create_channel("likes").on(ChangeType.INSERT, "shout_likes", lambda c: received.append("a"))
    first.subscribe()
    second = registry.get_or_create_channel("likes").on(ChangeType.INSERT, "shout_likes", lambda c: received.append("b"))

    registry.safe_remove_channel(first)
    transport.publish(_like_event())

    assert received == ["b"]
    assert "likes" in registry
    assert transport.open_channels == ["likes"]

    registry.safe_remove_channel(second)
    assert "likes" not in registry
    assert transport.open_channels == []
    assert second.channel.removed is True


def test_safe_remove_is_idempotent():
    transport = MemoryRealtime()
    registry = ChannelRegistry(transport)
    lease = registry.get_or_create_channel("notifications-u1")
    lease.subscribe()

    registry.safe_remove_channel(lease)
    registry.safe_remove_channel(lease)
    registry.safe_remove_channel(lease.channel)
    registry.safe_remove_channel(None)

    assert transport.open_channels == []
    assert lease.channel.ref_count == 0


def test_removing_the_channel_forces_teardown_and_allows_a_fresh_one():
    transport = MemoryRealtime()
    registry = ChannelRegistry(transport)
    first = registry.get_or_create_channel("engagement")
    first.subscribe()
    other = registry.get_or_create_channel("engagement")

    registry.safe_remove_channel(first.channel)
    assert first.channel.removed is True
    registry.safe_remove_channel(other)

    fresh = registry.get_or_create_channel("engagement")
    assert fresh.channel is not first.channel
    assert fresh.should_subscribe is True
    assert fresh.subscribe() is True
    assert transport.open_counts["engagement"] == 2


def test_handlers_attached_after_subscribe_still_receive_events():
    transport = MemoryRealtime()
    registry = ChannelRegistry(transport)
    received: list[ChangeEvent] = []

    lease = registry.get_or_create_channel("likes")
    lease.subscribe()
    lease.on("*", "shout_likes", received.append)

    event = _like_event()
    transport.publish(event)
    transport.publish(_like_event(table="event_likes"))

    assert received == [event]


def test_failing_handler_does_not_block_other_handlers(caplog):
    transport = MemoryRealtime()
    registry = ChannelRegistry(transport)
    received: list[str] = []

    def _explode(change: ChangeEvent) -> None:
        raise ValueError("bad payload")

    lease = registry.get_or_create_channel("likes")
    lease.on(ChangeType.INSERT, "shout_likes", _explode)
    lease.on(ChangeType.INSERT, "shout_likes", lambda c: received.append(c.new["user_id"]))
    lease.subscribe()

    with caplog.at_level(logging.ERROR, logger="shoutsync"):
        transport.publish(_like_event("user-7"))

    assert received == ["user-7"]
    assert any("Realtime handler failed" in record.getMessage() for record in caplog.records)


def test_async_handlers_are_scheduled_on_the_running_loop():
    transport = MemoryRealtime()
    registry = ChannelRegistry(transport)
    received: list[str] = []

    async def _handler(change: ChangeEvent) -> None:
        await asyncio.sleep(0)
        received.append(change.new["user_id"])

    async def scenario() -> None:
        lease = registry.get_or_create_channel("likes").on(ChangeType.INSERT, "shout_likes", _handler)
        lease.subscribe()
        transport.publish(_like_event("user-3"))
        await drain_background()

    asyncio.run(scenario())
    assert received == ["user-3"]


def test_name_already_live_on_transport_is_logged_not_raised(caplog):
    transport = MemoryRealtime()
    transport.open("shout-counts-global", _noop, lambda status, error: None)
    registry = ChannelRegistry(transport)
    lease = registry.get_or_create_channel("shout-counts-global")

    with caplog.at_level(logging.ERROR, logger="shoutsync"):
        assert lease.subscribe() is False

    assert lease.channel.subscribed is False
    assert any("already live" in record.getMessage() for record in caplog.records)


def test_channel_error_is_logged_and_forwarded_without_retry(caplog):
    transport = MemoryRealtime()
    registry = ChannelRegistry(transport)
    statuses: list[ChannelStatus] = []
    lease = registry.get_or_create_channel("likes")
    lease.subscribe(statuses.append)

    with caplog.at_level(logging.ERROR, logger="shoutsync"):
        transport.fail("likes", RuntimeError("socket dropped"))

    assert statuses == [ChannelStatus.SUBSCRIBED, ChannelStatus.CHANNEL_ERROR]
    assert lease.channel.status is ChannelStatus.CHANNEL_ERROR
    assert transport.open_counts["likes"] == 1
    assert any("CHANNEL_ERROR" in record.getMessage() for record in caplog.records)


def test_close_all_tears_every_channel_down():
    transport = MemoryRealtime()
    registry = ChannelRegistry(transport)
    for name in ("a", "b", "c"):
        registry.get_or_create_channel(name).subscribe()

    registry.close_all()

    assert registry.channel_names() == []
    assert transport.open_channels == []
