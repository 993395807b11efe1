"""
Tests for the Redis-backed notification feed.
"""

from datetime import datetime, timedelta, timezone

import pytest

from shared.data_store import NotificationStore, detail_key, feed_key
from shared.errors import NotFoundError
from shared.models import Notification, NotificationStatus

BASE_TIME = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)


def make_notification(nid: str, user_id: str = "u1", minutes: int = 0, **kwargs) -> Notification:
    return Notification(
        id=nid,
        user_id=user_id,
        title=kwargs.pop("title", f"Title {nid}"),
        message=kwargs.pop("message", f"Message {nid}"),
        created_at=BASE_TIME + timedelta(minutes=minutes),
        **kwargs,
    )


class TestAppend:
    """Tests for adding notifications to a feed."""

    async def test_round_trip(self, store):
        stored = make_notification("n1", category="order", data={"orderId": "o1"}, action_url="/orders/o1")
        await store.append(stored)

        feed = await store.read("u1")

        assert feed == [stored]

    async def test_layout(self, store, redis):
        """Test records and feeds live under the keys other readers expect."""
        await store.append(make_notification("n1"))

        assert await redis.lrange("notifications:u1", 0, -1) == ["n1"]
        raw = await redis.get("notification:u1:n1")
        assert '"userId":"u1"' in raw

    async def test_ttl_applied_to_both_keys(self, store, redis):
        await store.append(make_notification("n1"))

        assert 0 < await redis.ttl(detail_key("u1", "n1")) <= 7 * 24 * 60 * 60
        assert 0 < await redis.ttl(feed_key("u1")) <= 7 * 24 * 60 * 60

    async def test_zero_ttl_is_gone_immediately(self, store):
        await store.append(make_notification("n1"), ttl_seconds=0)

        assert await store.read("u1") == []
        assert await store.get("u1", "n1") is None

    async def test_feeds_are_per_user(self, store):
        await store.append(make_notification("n1", user_id="u1"))
        await store.append(make_notification("n2", user_id="u2"))

        assert [n.id for n in await store.read("u1")] == ["n1"]
        assert [n.id for n in await store.read("u2")] == ["n2"]


class TestRead:
    """Tests for reading feeds."""

    async def test_newest_first(self, store):
        await store.append(make_notification("old", minutes=0))
        await store.append(make_notification("new", minutes=5))
        await store.append(make_notification("middle", minutes=2))

        assert [n.id for n in await store.read("u1")] == ["new", "middle", "old"]

    async def test_limit(self, store):
        for i in range(5):
            await store.append(make_notification(f"n{i}", minutes=i))

        assert [n.id for n in await store.read("u1", limit=2)] == ["n4", "n3"]
        assert len(await store.read("u1", limit=None)) == 5
        assert await store.read("u1", limit=0) == []

    async def test_empty_feed(self, store):
        assert await store.read("nobody") == []

    async def test_expired_detail_is_skipped(self, store, redis):
        await store.append(make_notification("n1", minutes=0))
        await store.append(make_notification("n2", minutes=1))
        await redis.delete(detail_key("u1", "n1"))

        assert [n.id for n in await store.read("u1")] == ["n2"]

    async def test_page_reports_more(self, store):
        for i in range(3):
            await store.append(make_notification(f"n{i}", minutes=i))

        page, has_more = await store.read_page("u1", 2)
        assert [n.id for n in page] == ["n2", "n1"]
        assert has_more

        page, has_more = await store.read_page("u1", 3)
        assert len(page) == 3
        assert not has_more

    async def test_page_with_expired_detail_still_reports_more(self, store, redis):
        for i in range(3):
            await store.append(make_notification(f"n{i}", minutes=i))
        await redis.delete(detail_key("u1", "n2"))

        page, has_more = await store.read_page("u1", 2)

        assert [n.id for n in page] == ["n1"]
        assert has_more


class TestMarkRead:
    """Tests for the read state."""

    async def test_mark_read(self, store):
        await store.append(make_notification("n1"))

        updated = await store.mark_read("u1", "n1")
        stored = await store.get("u1", "n1")

        assert updated.status == NotificationStatus.READ
        assert stored.status == NotificationStatus.READ
        assert stored.read_at is not None

    async def test_mark_read_keeps_ttl(self, store, redis):
        await store.append(make_notification("n1"), ttl_seconds=600)

        await store.mark_read("u1", "n1")

        assert 0 < await redis.ttl(detail_key("u1", "n1")) <= 600

    async def test_mark_read_twice_is_noop(self, store):
        await store.append(make_notification("n1"))
        first = await store.mark_read("u1", "n1")

        second = await store.mark_read("u1", "n1")

        assert second.read_at == first.read_at
        assert (await store.get("u1", "n1")).read_at == first.read_at

    async def test_mark_read_missing(self, store):
        with pytest.raises(NotFoundError):
            await store.mark_read("u1", "nope")

    async def test_other_users_notification_not_found(self, store):
        await store.append(make_notification("n1", user_id="u1"))

        with pytest.raises(NotFoundError):
            await store.mark_read("u2", "n1")

    async def test_unread_count(self, store):
        await store.append(make_notification("n1"))
        await store.append(make_notification("n2", minutes=1))
        await store.mark_read("u1", "n1")

        assert await store.unread_count("u1") == 1


class TestDelete:
    """Tests for removing notifications."""

    async def test_delete(self, store):
        await store.append(make_notification("n1"))

        assert await store.delete("u1", "n1") is True
        assert await store.read("u1") == []
        assert await store.get("u1", "n1") is None

    async def test_delete_removes_every_occurrence(self, store, redis):
        await store.append(make_notification("n1"))
        await redis.lpush(feed_key("u1"), "n1")

        await store.delete("u1", "n1")

        assert await redis.lrange(feed_key("u1"), 0, -1) == []

    async def test_delete_missing(self, store):
        assert await store.delete("u1", "nope") is False


class TestStats:
    """Tests for feed statistics."""

    async def test_stats(self, store):
        await store.append(make_notification("n1", category="order", priority="HIGH"))
        await store.append(make_notification("n2", minutes=1, category="order"))
        await store.append(make_notification("n3", minutes=2, category="account"))
        await store.mark_read("u1", "n3")

        stats = await store.stats("u1")

        assert stats["total"] == 3
        assert stats["unread"] == 2
        assert stats["byCategory"] == {"order": 2, "account": 1}
        assert stats["byPriority"] == {"HIGH": 1, "MEDIUM": 2}

    async def test_stats_empty(self, store):
        assert await store.stats("nobody") == {"total": 0, "unread": 0, "byCategory": {}, "byPriority": {}}
