"""
Redis-backed store for per-user in-app notification feeds.

Layout (compatible with the existing frontend readers):
    notification:{userId}:{id}   JSON detail record, TTL 7 days
    notifications:{userId}       list of ids, newest first, TTL 7 days

Design decisions:
- append() writes the detail, pushes the id and refreshes both TTLs in a
  single MULTI/EXEC transaction, so a feed never outlives its records by
  more than the remaining TTL of the older entries
- read() tolerates ids whose detail has already expired and skips them
- mark_read() rewrites the record with KEEPTTL: reading a notification
  does not extend its retention
- Unread counts are recomputed from the feed; there is no counter to
  drift out of sync
"""

import logging
from collections import Counter
from typing import Any, Optional

from redis.asyncio import Redis

from shared.errors import NotFoundError
from shared.models import Notification

logger = logging.getLogger("notification_store")

FEED_TTL_SECONDS = 7 * 24 * 60 * 60


def detail_key(user_id: str, notification_id: str) -> str:
    return f"notification:{user_id}:{notification_id}"


def feed_key(user_id: str) -> str:
    return f"notifications:{user_id}"


class NotificationStore:
    """
    Per-user notification feed.

    Example:
        store = NotificationStore(redis)
        await store.append(Notification(id="n1", user_id="u1", title="Hi", message="..."))
        feed = await store.read("u1", limit=20)
    """

    def __init__(self, redis: Redis, ttl_seconds: int = FEED_TTL_SECONDS):
        """
        Args:
            redis: Client created with decode_responses=True
            ttl_seconds: Retention of feeds and records
        """
        self.redis = redis
        self.ttl_seconds = ttl_seconds

    # =========================================================================
    # Writes
    # =========================================================================

    async def append(self, notification: Notification, ttl_seconds: Optional[int] = None) -> Notification:
        """Add a notification to the head of its user's feed."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        detail = detail_key(notification.user_id, notification.id)
        feed = feed_key(notification.user_id)

        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(detail, notification.to_json())
            pipe.expire(detail, ttl)
            pipe.lpush(feed, notification.id)
            pipe.expire(feed, ttl)
            await pipe.execute()

        logger.info(
            f"Stored notification {notification.id} for user {notification.user_id} "
            f"({notification.category}/{notification.priority})"
        )
        return notification

    async def mark_read(self, user_id: str, notification_id: str) -> Notification:
        """
        Mark a notification as read.

        Calling it again on a read notification is a no-op that returns the
        stored record unchanged.

        Raises:
            NotFoundError: The notification does not exist or has expired
        """
        key = detail_key(user_id, notification_id)
        notification = await self.get(user_id, notification_id)
        if notification is None:
            raise NotFoundError(f"Notification {notification_id} not found")

        if not notification.mark_read():
            return notification

        # xx: do not resurrect a record that expired since the read above
        stored = await self.redis.set(key, notification.to_json(), keepttl=True, xx=True)
        if not stored:
            raise NotFoundError(f"Notification {notification_id} not found")
        logger.info(f"Notification {notification_id} marked as read for user {user_id}")
        return notification

    async def delete(self, user_id: str, notification_id: str) -> bool:
        """
        Remove a notification and every occurrence of its id in the feed.

        Returns:
            True when a detail record was deleted
        """
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.delete(detail_key(user_id, notification_id))
            pipe.lrem(feed_key(user_id), 0, notification_id)
            deleted, _ = await pipe.execute()

        if deleted:
            logger.info(f"Deleted notification {notification_id} for user {user_id}")
        return bool(deleted)

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, user_id: str, notification_id: str) -> Optional[Notification]:
        raw = await self.redis.get(detail_key(user_id, notification_id))
        if raw is None:
            return None
        return Notification.model_validate_json(raw)

    async def read(self, user_id: str, limit: Optional[int] = 50) -> list[Notification]:
        """
        Fetch a user's feed, newest first.

        Args:
            user_id: Feed owner
            limit: Maximum ids to read from the feed; None reads the whole feed

        Returns:
            Notifications whose detail still exists, sorted by created_at descending
        """
        if limit is not None and limit <= 0:
            return []
        end = -1 if limit is None else limit - 1
        ids = await self.redis.lrange(feed_key(user_id), 0, end)
        return await self._load(user_id, ids)

    async def read_page(self, user_id: str, limit: int) -> tuple[list[Notification], bool]:
        """
        Fetch one page of a user's feed and whether older entries follow it.

        The flag looks one id past the page in the feed list, so expired
        details inside the page do not make the feed look exhausted.
        """
        if limit <= 0:
            return [], False
        ids = await self.redis.lrange(feed_key(user_id), 0, limit)
        return await self._load(user_id, ids[:limit]), len(ids) > limit

    async def _load(self, user_id: str, ids: list[str]) -> list[Notification]:
        if not ids:
            return []
        records = await self.redis.mget([detail_key(user_id, nid) for nid in ids])
        notifications = [Notification.model_validate_json(raw) for raw in records if raw is not None]

        missing = len(ids) - len(notifications)
        if missing:
            logger.debug(f"Skipped {missing} expired notification(s) in feed of user {user_id}")

        notifications.sort(key=lambda n: n.created_at, reverse=True)
        return notifications

    async def unread_count(self, user_id: str) -> int:
        feed = await self.read(user_id, limit=None)
        return sum(1 for n in feed if n.is_unread)

    async def stats(self, user_id: str) -> dict[str, Any]:
        """Totals for a user's feed, broken down by category and priority."""
        feed = await self.read(user_id, limit=None)
        return {
            "total": len(feed),
            "unread": sum(1 for n in feed if n.is_unread),
            "byCategory": dict(Counter(n.category for n in feed)),
            "byPriority": dict(Counter(n.priority for n in feed)),
        }
