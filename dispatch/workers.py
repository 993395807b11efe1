"""
Worker functions, one per job type.

Email jobs (queue "email-notifications"):
- send-email: direct html/text, or a template plus data
- welcome-email: the welcome template for a new user
- order-confirmation: the order confirmation template

In-app jobs (queue "in-app-notifications"):
- send-in-app: build a Notification and append it to the user's feed

Workers report a JobOutcome instead of raising: delivery and storage
errors become failed outcomes and the queue applies its retry policy.
A retried in-app job creates a new notification with a new id.
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from redis.exceptions import RedisError

from dispatch.queue import JobQueue
from shared.channels import DeliveryError, MailMessage, MailTransport
from shared.data_store import NotificationStore
from shared.models import Job, JobOutcome, Notification
from shared.templates import TemplateRenderer, render_subject

logger = logging.getLogger("workers")

SEND_EMAIL = "send-email"
WELCOME_EMAIL = "welcome-email"
ORDER_CONFIRMATION = "order-confirmation"
SEND_IN_APP = "send-in-app"


class EmailWorker:
    """Renders and delivers email jobs through a shared mail transport."""

    def __init__(self, renderer: TemplateRenderer, transport: MailTransport, frontend_url: str = ""):
        self.renderer = renderer
        self.transport = transport
        self.frontend_url = frontend_url.rstrip("/")

    def register(self, queue: JobQueue) -> None:
        queue.register(SEND_EMAIL, self.send_email)
        queue.register(WELCOME_EMAIL, self.welcome_email)
        queue.register(ORDER_CONFIRMATION, self.order_confirmation)

    async def _deliver(self, job: Job, message: MailMessage) -> JobOutcome:
        if not message.to:
            return JobOutcome.failed("Email job has no recipient")
        try:
            receipt = await self.transport.send(message)
        except DeliveryError as exc:
            return JobOutcome.failed(str(exc))

        logger.info(f"Job {job.id}: {receipt}")
        return JobOutcome.ok(
            messageId=receipt.message_id,
            recipient=receipt.recipient,
            sentAt=receipt.accepted_at.isoformat(),
        )

    async def send_email(self, job: Job) -> JobOutcome:
        """
        Generic email.

        Payload: to, subject?, html?, text?, template?, template_data?
        With a template, the html is rendered from it and the subject
        defaults to the template's subject line.
        """
        payload = job.payload
        template = payload.get("template")
        html = payload.get("html")
        subject = payload.get("subject")

        if template:
            data = payload.get("template_data") or {}
            html = self.renderer.render(template, data)
            subject = subject or render_subject(template, data)

        message = MailMessage(
            to=payload.get("to", ""),
            subject=subject or "Notification",
            html=html,
            text=payload.get("text"),
        )
        return await self._deliver(job, message)

    async def welcome_email(self, job: Job) -> JobOutcome:
        """Payload: to, firstName, loginUrl?"""
        data = {
            "firstName": job.payload.get("firstName", ""),
            "loginUrl": job.payload.get("loginUrl") or f"{self.frontend_url}/login",
        }
        message = MailMessage(
            to=job.payload.get("to", ""),
            subject=render_subject("welcome", data),
            html=self.renderer.render("welcome", data),
        )
        return await self._deliver(job, message)

    async def order_confirmation(self, job: Job) -> JobOutcome:
        """Payload: to, firstName, order{id, items, total, createdAt?}"""
        order: dict[str, Any] = job.payload.get("order") or {}
        data = {
            "firstName": job.payload.get("firstName", ""),
            "orderId": order.get("id"),
            "items": order.get("items") or [],
            "total": order.get("total"),
            "orderDate": order.get("createdAt") or datetime.now(timezone.utc).isoformat(),
            "trackingUrl": f"{self.frontend_url}/orders/{order.get('id')}",
        }
        message = MailMessage(
            to=job.payload.get("to", ""),
            subject=render_subject("order-confirmation", data),
            html=self.renderer.render("order-confirmation", data),
        )
        return await self._deliver(job, message)


class InAppWorker:
    """Stores in-app notifications in the user's feed."""

    def __init__(self, store: NotificationStore):
        self.store = store

    def register(self, queue: JobQueue) -> None:
        queue.register(SEND_IN_APP, self.send_in_app)

    async def send_in_app(self, job: Job) -> JobOutcome:
        """
        Payload: user_id, title, message, category?, priority?, data?, action_url?
        """
        payload = job.payload
        if not payload.get("user_id"):
            return JobOutcome.failed("In-app job has no user_id")

        notification = Notification(
            id=str(uuid4()),
            user_id=payload["user_id"],
            title=payload.get("title", ""),
            message=payload.get("message", ""),
            category=payload.get("category") or "system",
            priority=payload.get("priority") or "MEDIUM",
            data=payload.get("data") or {},
            action_url=payload.get("action_url"),
        )
        try:
            await self.store.append(notification)
        except RedisError as exc:
            return JobOutcome.failed(f"Could not store notification: {exc}")

        return JobOutcome.ok(
            notificationId=notification.id,
            userId=notification.user_id,
            sentAt=notification.created_at.isoformat(),
        )
