import asyncio
from datetime import datetime, timedelta, timezone

from shoutsync.clients import eq
from shoutsync.constants import NOTIFICATIONS_TABLE, PROFILES_DISPLAY_RPC
from shoutsync.schemas import NotificationType
from shoutsync.services import NotificationFeed, drain_background


def _profiles(params):
    return [{"id": user_id, "nick": f"nick-{user_id}", "avatar_url": None} for user_id in params["user_ids"]]


def _seed(backend):
    now = datetime.now(timezone.utc)
    return backend.seed(
        NOTIFICATIONS_TABLE,
        [
            {
                "id": "n1",
                "recipient_id": "viewer-1",
                "trigger_user_id": "user-2",
                "type": NotificationType.FRIEND_SHOUT.value,
                "resource_id": "s1",
                "is_read": False,
                "created_at": now - timedelta(hours=3),
            },
            {
                "id": "n2",
                "recipient_id": "viewer-1",
                "trigger_user_id": "user-3",
                "type": NotificationType.NEW_COMMENT.value,
                "resource_id": "s1",
                "is_read": True,
                "created_at": now - timedelta(hours=1),
            },
            {
                "id": "n-old",
                "recipient_id": "viewer-1",
                "trigger_user_id": "user-2",
                "type": NotificationType.FRIEND_EVENT.value,
                "is_read": False,
                "created_at": now - timedelta(days=30),
            },
            {
                "id": "n-other",
                "recipient_id": "user-9",
                "trigger_user_id": "viewer-1",
                "type": NotificationType.NEW_PARTICIPANT.value,
                "is_read": False,
                "created_at": now,
            },
        ],
    )


def test_feed_loads_recent_notifications_newest_first_with_profiles(backend, make_context):
    _seed(backend)
    backend.register_rpc(PROFILES_DISPLAY_RPC, _profiles)
    context = make_context("viewer-1")

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()
        return feed

    feed = asyncio.run(scenario())
    assert [record.id for record in feed.notifications] == ["n2", "n1"]
    assert feed.has_unread is True
    assert feed.get("n1").trigger_user.nick == "nick-user-2"
    assert feed.loading is False


def test_missing_profile_lookup_leaves_records_unenriched(backend, make_context):
    _seed(backend)
    context = make_context("viewer-1")

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()
        return feed

    feed = asyncio.run(scenario())
    assert len(feed.notifications) == 2
    assert all(record.trigger_user is None for record in feed.notifications)


def test_realtime_changes_are_applied_for_the_viewer_only(backend, make_context):
    _seed(backend)
    backend.register_rpc(PROFILES_DISPLAY_RPC, _profiles)
    context = make_context("viewer-1")

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()

        await backend.insert(
            NOTIFICATIONS_TABLE,
            {"recipient_id": "viewer-1", "trigger_user_id": "user-4", "type": "new_participant", "is_read": False},
        )
        await backend.insert(
            NOTIFICATIONS_TABLE,
            {"recipient_id": "user-9", "trigger_user_id": "user-4", "type": "new_participant", "is_read": False},
        )
        await drain_background()
        newest = feed.notifications[0]
        assert newest.trigger_user_id == "user-4"
        assert newest.trigger_user.nick == "nick-user-4"

        await backend.update(NOTIFICATIONS_TABLE, {"is_read": True}, filters=[])
        assert feed.has_unread is False
        assert feed.get("n1").trigger_user.nick == "nick-user-2"

        await backend.delete(NOTIFICATIONS_TABLE, filters=[])
        return feed.notifications

    assert asyncio.run(scenario()) == []


def test_mark_as_read_is_optimistic_and_persisted(backend, make_context):
    _seed(backend)
    backend.latency = 0.01
    context = make_context("viewer-1")

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()
        pending = asyncio.create_task(feed.mark_as_read("n1"))
        await asyncio.sleep(0)
        assert feed.get("n1").is_read is True
        return await pending

    assert asyncio.run(scenario()) is True
    stored = {row["id"]: row for row in backend.tables[NOTIFICATIONS_TABLE]}
    assert stored["n1"]["is_read"] is True
    assert stored["n-old"]["is_read"] is False


def test_failed_mark_as_read_rolls_back_and_reports(backend, make_context):
    _seed(backend)
    backend.fail("update", NOTIFICATIONS_TABLE)
    reports: list[str] = []
    context = make_context("viewer-1", report_error=reports.append)

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()
        assert await feed.mark_as_read("n1") is False
        return feed.get("n1").is_read

    assert asyncio.run(scenario()) is False
    assert reports == ["Could not mark notification as read."]


def test_mark_all_as_read_rolls_back_every_record_on_failure(backend, make_context):
    _seed(backend)
    context = make_context("viewer-1")

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()
        backend.fail("update", NOTIFICATIONS_TABLE)
        assert await feed.mark_all_as_read() is False
        assert feed.has_unread is True
        assert feed.get("n2").is_read is True

        assert await feed.mark_all_as_read() is True
        return feed.has_unread

    assert asyncio.run(scenario()) is False
    stored = {row["id"]: row for row in backend.tables[NOTIFICATIONS_TABLE]}
    assert stored["n-old"]["is_read"] is True
    assert stored["n-other"]["is_read"] is False


def test_clear_all_only_clears_after_the_delete_succeeds(backend, make_context):
    _seed(backend)
    context = make_context("viewer-1", report_error=lambda message: None)

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()
        backend.fail("delete", NOTIFICATIONS_TABLE)
        assert await feed.clear_all() is False
        assert len(feed.notifications) == 2

        assert await feed.clear_all() is True
        return feed.notifications

    assert asyncio.run(scenario()) == []
    assert [row["id"] for row in backend.tables[NOTIFICATIONS_TABLE]] == ["n-other"]


def test_signed_out_feed_is_empty(backend, make_context):
    _seed(backend)
    context = make_context(None)

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()
        assert await feed.mark_all_as_read() is False
        return feed.notifications

    assert asyncio.run(scenario()) == []
    assert backend.call_count("select", NOTIFICATIONS_TABLE) == 0


def test_failed_read_mark_does_not_bring_back_a_cleared_feed(backend, make_context):
    _seed(backend)
    reports: list[str] = []
    context = make_context("viewer-1", report_error=reports.append)

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()
        backend.fail("update", NOTIFICATIONS_TABLE)
        backend.slow("update", NOTIFICATIONS_TABLE, before=0.05)

        marking = asyncio.create_task(feed.mark_as_read("n1"))
        await asyncio.sleep(0)
        assert feed.get("n1").is_read is True

        assert await feed.clear_all() is True
        assert await marking is False
        return feed.notifications, feed.has_unread

    assert asyncio.run(scenario()) == ([], False)
    assert [row["id"] for row in backend.tables[NOTIFICATIONS_TABLE]] == ["n-other"]


def test_deleted_notification_stays_gone_after_a_failed_read_mark(backend, make_context):
    _seed(backend)
    context = make_context("viewer-1", report_error=lambda message: None)

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()
        backend.fail("update", NOTIFICATIONS_TABLE)
        backend.slow("update", NOTIFICATIONS_TABLE, before=0.05)

        marking = asyncio.create_task(feed.mark_as_read("n1"))
        await asyncio.sleep(0)
        await backend.delete(NOTIFICATIONS_TABLE, filters=[eq("id", "n1")])
        await marking
        return [record.id for record in feed.notifications]

    assert asyncio.run(scenario()) == ["n2"]


def test_refresh_keeps_notifications_that_arrived_during_the_read(backend, make_context):
    _seed(backend)
    backend.register_rpc(PROFILES_DISPLAY_RPC, _profiles)
    context = make_context("viewer-1")

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()

        backend.slow("select", NOTIFICATIONS_TABLE, after=0.05)
        refreshing = asyncio.create_task(feed.refresh())
        await asyncio.sleep(0.01)
        await backend.insert(
            NOTIFICATIONS_TABLE,
            {
                "id": "n3",
                "recipient_id": "viewer-1",
                "trigger_user_id": "user-4",
                "type": NotificationType.NEW_COMMENT.value,
                "resource_id": "s2",
                "is_read": False,
            },
        )
        await refreshing
        await drain_background()
        return [record.id for record in feed.notifications]

    assert asyncio.run(scenario()) == ["n3", "n2", "n1"]


def test_marking_an_unknown_notification_writes_nothing(backend, make_context):
    _seed(backend)
    context = make_context("viewer-1")

    async def scenario():
        feed = NotificationFeed(context)
        await feed.start()
        return await feed.mark_as_read("n-missing")

    assert asyncio.run(scenario()) is False
    assert backend.call_count("update") == 0
