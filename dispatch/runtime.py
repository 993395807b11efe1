"""
The dispatch runtime: every long-lived object of the service in one place.

A DispatchRuntime owns the Redis client, the notification store, both job
queues with their workers, the template renderer, the mail transport and
the event router. It is built once at startup (connect() verifies Redis
before anything is accepted), handed to the API through app.state, and
closed on shutdown. Nothing here is a module-level singleton; tests build
a runtime around a fake Redis.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from redis.asyncio import Redis
from redis.exceptions import RedisError

from dispatch.event_router import DispatchResult, EventRouter, RouteContext
from dispatch.queue import EMAIL_POLICY, IN_APP_POLICY, Clock, JobQueue
from dispatch.workers import (
    ORDER_CONFIRMATION,
    SEND_EMAIL,
    SEND_IN_APP,
    WELCOME_EMAIL,
    EmailWorker,
    InAppWorker,
)
from shared.channels import MailTransport, create_mail_transport, is_valid_email
from shared.config import Settings, get_settings
from shared.data_store import NotificationStore
from shared.errors import ServiceUnavailableError, ValidationError
from shared.models import (
    Job,
    NotificationCategory,
    NotificationChannel,
    Priority,
    QueueName,
    priority_value,
)
from shared.templates import TemplateRenderer

logger = logging.getLogger("runtime")

# Accepted spellings of queue names in admin requests
QUEUE_ALIASES: dict[str, QueueName] = {
    "email": QueueName.EMAIL,
    "inapp": QueueName.IN_APP,
    "in-app": QueueName.IN_APP,
    QueueName.EMAIL.value: QueueName.EMAIL,
    QueueName.IN_APP.value: QueueName.IN_APP,
}

TEST_EMAIL_SUBJECT = "Test Email - Notification Service"

TEST_EMAIL_HTML = """\
<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <h1 style="color: #4F46E5;">Test Email Successful</h1>
  <p>This is a test email from the Notification Service.</p>
  <p><strong>Timestamp:</strong> {timestamp}</p>
  <p><strong>Service:</strong> {service}</p>
  <p style="color: #666; font-size: 12px;">
    If you received this email, the notification service is working correctly.
  </p>
</div>
"""


class DispatchRuntime:
    """
    Runtime context shared by the API and the workers.

    Example:
        runtime = await DispatchRuntime.connect(get_settings())
        runtime.start_workers()
        await runtime.router.dispatch("order.created", {...})
        ...
        await runtime.close()
    """

    def __init__(
        self,
        redis: Redis,
        settings: Optional[Settings] = None,
        *,
        transport: Optional[MailTransport] = None,
        renderer: Optional[TemplateRenderer] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self.redis = redis
        self.started_at = time.monotonic()

        feed, template, queue = self.settings.feed, self.settings.template, self.settings.queue
        self.store = NotificationStore(redis, ttl_seconds=feed.ttl_seconds)
        self.renderer = renderer or TemplateRenderer(
            templates_dir=template.templates_dir,
            locale=template.locale,
            currency=template.currency,
        )
        self.transport = transport or create_mail_transport(self.settings.email)

        queue_options: dict[str, Any] = dict(
            key_prefix=self.settings.redis.key_prefix,
            priority_range=(queue.priority_min, queue.priority_max),
            lease_ms=queue.lease_ms,
            job_timeout=queue.job_timeout_seconds,
            poll_interval_ms=queue.poll_interval_ms,
            stalled_check_interval_ms=queue.stalled_check_interval_ms,
            clock=clock,
        )
        self.email_queue = JobQueue(redis, QueueName.EMAIL.value, EMAIL_POLICY, **queue_options)
        self.in_app_queue = JobQueue(redis, QueueName.IN_APP.value, IN_APP_POLICY, **queue_options)
        self.queues: dict[QueueName, JobQueue] = {
            QueueName.EMAIL: self.email_queue,
            QueueName.IN_APP: self.in_app_queue,
        }

        frontend_url = self.settings.service.frontend_url
        EmailWorker(self.renderer, self.transport, frontend_url).register(self.email_queue)
        InAppWorker(self.store).register(self.in_app_queue)

        self.router = EventRouter(
            self.queues,
            RouteContext(
                frontend_url=frontend_url,
                admin_email=self.settings.email.admin_email,
                alert_recipient=self.settings.email.alert_recipient,
            ),
        )

    @classmethod
    async def connect(cls, settings: Optional[Settings] = None, **kwargs: Any) -> "DispatchRuntime":
        """
        Open the Redis connection, verify it and build the runtime.

        Raises:
            ServiceUnavailableError: Redis did not answer PING
        """
        settings = settings or get_settings()
        redis = Redis.from_url(
            settings.redis.url,
            decode_responses=True,
            socket_timeout=settings.redis.socket_timeout,
            socket_connect_timeout=settings.redis.connect_timeout,
        )
        try:
            await redis.ping()
        except RedisError as exc:
            await redis.aclose()
            raise ServiceUnavailableError(f"Redis is not reachable: {exc}") from exc
        logger.info("Connected to Redis")

        runtime = cls(redis, settings, **kwargs)
        runtime.renderer.preload()
        return runtime

    # =========================================================================
    # Queues
    # =========================================================================

    def queue(self, queue_type: str) -> JobQueue:
        """
        Look up a queue by name or alias ("email", "inapp", "in-app").

        Raises:
            ValidationError: unknown queue
        """
        name = QUEUE_ALIASES.get(queue_type)
        if name is None:
            raise ValidationError(f"Unknown queue: {queue_type}")
        return self.queues[name]

    def _select(self, queue_type: str) -> list[JobQueue]:
        if queue_type == "all":
            return list(self.queues.values())
        return [self.queue(queue_type)]

    def start_workers(self) -> None:
        self.email_queue.start(self.settings.queue.email_concurrency)
        self.in_app_queue.start(self.settings.queue.in_app_concurrency)

    async def queue_stats(self) -> dict[str, Any]:
        email = await self.email_queue.counts()
        in_app = await self.in_app_queue.counts()
        return {
            "email": email.model_dump(),
            "inApp": in_app.model_dump(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def retry_failed(self, queue_type: str = "all") -> dict[str, int]:
        """Re-queue terminally failed jobs. Returns the count per queue."""
        return {q.name: await q.retry_failed() for q in self._select(queue_type)}

    async def pause(self, queue_type: str = "all") -> list[str]:
        queues = self._select(queue_type)
        for q in queues:
            await q.pause()
        return [q.name for q in queues]

    async def resume(self, queue_type: str = "all") -> list[str]:
        queues = self._select(queue_type)
        for q in queues:
            await q.resume()
        return [q.name for q in queues]

    # =========================================================================
    # Submissions
    # =========================================================================

    async def dispatch_event(self, event_type: Optional[str], data: Any) -> DispatchResult:
        return await self.router.dispatch(event_type, data)

    async def submit_direct(
        self,
        channel: str,
        recipient: str,
        title: Optional[str] = None,
        message: Optional[str] = None,
        priority: str = Priority.MEDIUM.value,
        template: Optional[str] = None,
        template_data: Optional[dict[str, Any]] = None,
        action_url: Optional[str] = None,
        category: Optional[str] = None,
        delay_ms: int = 0,
    ) -> Job:
        """
        Queue a notification without going through the event router.

        EMAIL needs a title or a template; the message becomes the html body
        when no template is given. IN_APP needs a title and a message.

        Raises:
            ValidationError: the request breaks one of the rules above
        """
        try:
            kind = NotificationChannel(channel)
        except ValueError:
            raise ValidationError(f"Invalid notification type: {channel}") from None
        try:
            level = Priority(priority)
        except ValueError:
            raise ValidationError(f"Invalid priority: {priority}") from None
        if not recipient:
            raise ValidationError("recipient is required")

        if kind == NotificationChannel.EMAIL:
            if not title and not template:
                raise ValidationError("Email notifications require a title or a template")
            payload: dict[str, Any] = {"to": recipient, "subject": title}
            if template:
                payload.update(template=template, template_data=template_data or {})
            else:
                payload["html"] = message or ""
            return await self.email_queue.submit(
                SEND_EMAIL, payload, priority=priority_value(level), delay_ms=delay_ms
            )

        if not title or not message:
            raise ValidationError("In-app notifications require a title and a message")
        try:
            category_value = NotificationCategory(category or NotificationCategory.SYSTEM).value
        except ValueError:
            raise ValidationError(f"Invalid category: {category}") from None
        payload = {
            "user_id": recipient,
            "title": title,
            "message": message,
            "category": category_value,
            "priority": level.value,
            "data": template_data or {},
            "action_url": action_url,
        }
        return await self.in_app_queue.submit(
            SEND_IN_APP, payload, priority=priority_value(level), delay_ms=delay_ms
        )

    # =========================================================================
    # Email submissions
    # =========================================================================

    @staticmethod
    def _email_priority(to: Optional[str], priority: str, delay_ms: int) -> int:
        if not to or not is_valid_email(to):
            raise ValidationError("Valid email address is required")
        try:
            level = Priority(priority)
        except ValueError:
            raise ValidationError(f"Invalid priority: {priority}") from None
        if delay_ms < 0:
            raise ValidationError("Delay must not be negative")
        return priority_value(level)

    async def submit_email(
        self,
        to: Optional[str],
        subject: Optional[str] = None,
        html: Optional[str] = None,
        text: Optional[str] = None,
        template: Optional[str] = None,
        template_data: Optional[dict[str, Any]] = None,
        priority: str = Priority.MEDIUM.value,
        delay_ms: int = 0,
    ) -> Job:
        """
        Queue a generic email with its own content or a named template.

        Raises:
            ValidationError: bad address or priority, neither subject nor
                template, or no content at all
        """
        number = self._email_priority(to, priority, delay_ms)
        if not subject and not template:
            raise ValidationError("Subject or template is required")
        if not html and not text and not template:
            raise ValidationError("Email content (html, text, or template) is required")

        payload: dict[str, Any] = {"to": to, "subject": subject, "html": html, "text": text}
        if template:
            payload.update(template=template, template_data=template_data or {})
        return await self.email_queue.submit(SEND_EMAIL, payload, priority=number, delay_ms=delay_ms)

    async def submit_welcome_email(
        self,
        to: Optional[str],
        first_name: Optional[str],
        login_url: Optional[str] = None,
        priority: str = Priority.HIGH.value,
        delay_ms: int = 0,
    ) -> Job:
        number = self._email_priority(to, priority, delay_ms)
        if not first_name:
            raise ValidationError("First name is required")
        payload = {
            "to": to,
            "firstName": first_name,
            "loginUrl": login_url or f"{self.settings.service.frontend_url}/login",
        }
        return await self.email_queue.submit(WELCOME_EMAIL, payload, priority=number, delay_ms=delay_ms)

    async def submit_order_confirmation(
        self,
        to: Optional[str],
        first_name: Optional[str],
        order: Any,
        priority: str = Priority.HIGH.value,
        delay_ms: int = 0,
    ) -> Job:
        number = self._email_priority(to, priority, delay_ms)
        if not first_name:
            raise ValidationError("First name is required")
        if not isinstance(order, dict) or not order.get("id"):
            raise ValidationError("Order information is required")
        payload = {"to": to, "firstName": first_name, "order": order}
        return await self.email_queue.submit(ORDER_CONFIRMATION, payload, priority=number, delay_ms=delay_ms)

    async def submit_test_email(self, to: Optional[str]) -> Job:
        """Queue a fixed high-priority message that proves the mail path works."""
        if not to or not is_valid_email(to):
            raise ValidationError("Valid test email address is required")
        html = TEST_EMAIL_HTML.format(
            timestamp=datetime.now(timezone.utc).isoformat(),
            service=self.settings.service.name,
        )
        payload = {"to": to, "subject": TEST_EMAIL_SUBJECT, "html": html}
        return await self.email_queue.submit(SEND_EMAIL, payload, priority=priority_value(Priority.HIGH))

    async def email_status(self) -> dict[str, Any]:
        """Transport settings, reachability and the email queue counts."""
        connected = await self.transport.verify()
        return {
            **self.transport.status(),
            "connected": connected,
            "queue": (await self.email_queue.counts()).model_dump(),
        }

    @staticmethod
    def estimated_processing_time(delay_ms: int) -> str:
        return (datetime.now(timezone.utc) + timedelta(milliseconds=delay_ms)).isoformat()

    # =========================================================================
    # Health and lifecycle
    # =========================================================================

    async def redis_ok(self) -> bool:
        try:
            return bool(await self.redis.ping())
        except RedisError as exc:
            logger.warning(f"Redis health check failed: {exc}")
            return False

    async def health(self) -> dict[str, Any]:
        """Detailed health: Redis, queue counts and the mail transport."""
        redis_ok = await self.redis_ok()
        report: dict[str, Any] = {
            "status": "healthy" if redis_ok else "unhealthy",
            "service": self.settings.service.name,
            "version": self.settings.service.version,
            "uptimeSeconds": round(time.monotonic() - self.started_at, 1),
            "redis": "connected" if redis_ok else "disconnected",
            "email": self.transport.status(),
            "workers": {q.name: q.running for q in self.queues.values()},
        }
        if redis_ok:
            report["queues"] = await self.queue_stats()
        return report

    async def close(self) -> None:
        """Drain the workers, then release the transport and Redis."""
        for q in self.queues.values():
            await q.close()
        await self.transport.close()
        await self.redis.aclose()
        logger.info("Dispatch runtime closed")
