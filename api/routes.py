"""
HTTP routes of the dispatch API.

Every handler reads the DispatchRuntime from app.state through the
get_runtime dependency; there is no module-level state.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query, Request

from api.models import (
    EmailAccepted,
    EmailTestRequest,
    EventAccepted,
    EventRequest,
    EventTypeInfo,
    FeedResponse,
    NotificationAccepted,
    NotificationOwnerRequest,
    NotificationResponse,
    OrderConfirmationRequest,
    QueueRequest,
    SendEmailRequest,
    SendNotificationRequest,
    TemplatePreview,
    TemplatePreviewRequest,
    WebhookRequest,
    WelcomeEmailRequest,
)
from dispatch.events import describe_events
from dispatch.runtime import DispatchRuntime
from dispatch.workers import ORDER_CONFIRMATION, WELCOME_EMAIL
from shared.errors import NotFoundError, ServiceUnavailableError, ValidationError

logger = logging.getLogger("notification_api")


def get_runtime(request: Request) -> DispatchRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise ServiceUnavailableError("Dispatch runtime is not running")
    return runtime


def _require_user(body: Optional[NotificationOwnerRequest]) -> str:
    if body is None or not body.user_id:
        raise ValidationError("userId is required")
    return body.user_id


# =============================================================================
# Events
# =============================================================================

events = APIRouter(prefix="/events", tags=["Events"])


@events.post("", status_code=202, response_model=EventAccepted)
async def process_event(body: EventRequest, runtime: DispatchRuntime = Depends(get_runtime)):
    """
    Accept a domain event and queue its notifications.

    202 means the jobs were queued, not that anything was delivered.
    """
    result = await runtime.dispatch_event(body.event_type, body.data)
    return EventAccepted.model_validate(result.to_dict())


@events.post("/webhook", status_code=202, response_model=EventAccepted)
async def process_webhook(body: WebhookRequest, runtime: DispatchRuntime = Depends(get_runtime)):
    """Accept an event from an external service; handled like POST /events."""
    keys = sorted(body.data) if isinstance(body.data, dict) else []
    logger.info(f"Webhook from {body.source}: {body.event_type} at {body.timestamp}, data keys {keys}")
    result = await runtime.dispatch_event(body.event_type, body.data)
    return EventAccepted.model_validate(result.to_dict())


@events.get("/types", response_model=list[EventTypeInfo])
async def list_event_types():
    """Event types this service handles, with their required fields."""
    return [EventTypeInfo.model_validate(info) for info in describe_events()]


# =============================================================================
# Notifications
# =============================================================================

notifications = APIRouter(prefix="/notifications", tags=["Notifications"])


@notifications.post("/send", status_code=202, response_model=NotificationAccepted)
async def send_notification(body: SendNotificationRequest, runtime: DispatchRuntime = Depends(get_runtime)):
    """Queue an email or in-app notification directly."""
    if body.delay < 0:
        raise ValidationError("delay must not be negative")
    job = await runtime.submit_direct(
        channel=body.type or "",
        recipient=body.recipient or "",
        title=body.title,
        message=body.message,
        priority=body.priority,
        template=body.template,
        template_data=body.template_data,
        action_url=body.action_url,
        category=body.category,
        delay_ms=body.delay,
    )
    return NotificationAccepted(
        job_id=job.id,
        queue=job.queue_name,
        type=body.type,
        estimated_processing_time=runtime.estimated_processing_time(body.delay),
    )


@notifications.get("/user/{user_id}", response_model=FeedResponse)
async def get_user_notifications(
    user_id: str,
    limit: Optional[int] = Query(None, ge=1, le=500),
    unread_only: bool = Query(False, alias="unreadOnly"),
    runtime: DispatchRuntime = Depends(get_runtime),
):
    """A user's feed, newest first."""
    limit = limit or runtime.settings.feed.default_limit
    feed, has_more = await runtime.store.read_page(user_id, limit)
    if unread_only:
        feed = [n for n in feed if n.is_unread]
    return FeedResponse(
        notifications=feed,
        total_count=len(feed),
        unread_count=await runtime.store.unread_count(user_id),
        has_more=has_more,
    )


@notifications.get("/user/{user_id}/stats")
async def get_user_stats(user_id: str, runtime: DispatchRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """Feed totals by category and priority."""
    return {"userId": user_id, **(await runtime.store.stats(user_id))}


@notifications.put("/{notification_id}/read", response_model=NotificationResponse)
async def mark_as_read(
    notification_id: str,
    body: Optional[NotificationOwnerRequest] = Body(None),
    runtime: DispatchRuntime = Depends(get_runtime),
):
    user_id = _require_user(body)
    notification = await runtime.store.mark_read(user_id, notification_id)
    return NotificationResponse(notification=notification)


@notifications.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    body: Optional[NotificationOwnerRequest] = Body(None),
    runtime: DispatchRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    user_id = _require_user(body)
    if not await runtime.store.delete(user_id, notification_id):
        raise NotFoundError(f"Notification {notification_id} not found")
    return {"success": True, "message": "Notification deleted"}


@notifications.get("/admin/queue/stats", tags=["Admin"])
async def queue_stats(runtime: DispatchRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await runtime.queue_stats()


@notifications.post("/admin/queue/retry", tags=["Admin"])
async def retry_failed_jobs(
    body: Optional[QueueRequest] = Body(None),
    runtime: DispatchRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    """Re-queue terminally failed jobs with their attempt counters reset."""
    body = body or QueueRequest()
    retried = await runtime.retry_failed(body.queue_type)
    logger.info(f"Admin retry of {body.queue_type}: {retried}")
    return {"success": True, "queueType": body.queue_type, "retried": retried}


@notifications.post("/admin/queue/pause", tags=["Admin"])
async def pause_queues(
    body: Optional[QueueRequest] = Body(None),
    runtime: DispatchRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    body = body or QueueRequest()
    return {"success": True, "paused": await runtime.pause(body.queue_type)}


@notifications.post("/admin/queue/resume", tags=["Admin"])
async def resume_queues(
    body: Optional[QueueRequest] = Body(None),
    runtime: DispatchRuntime = Depends(get_runtime),
) -> dict[str, Any]:
    body = body or QueueRequest()
    return {"success": True, "resumed": await runtime.resume(body.queue_type)}


# =============================================================================
# Emails
# =============================================================================

emails = APIRouter(prefix="/emails", tags=["Emails"])


@emails.get("/templates")
async def list_templates(runtime: DispatchRuntime = Depends(get_runtime)) -> dict[str, Any]:
    templates = runtime.renderer.available_templates()
    return {"templates": [t.to_dict() for t in templates], "count": len(templates)}


@emails.post("/templates/{name}/preview", response_model=TemplatePreview)
async def preview_template(
    name: str,
    body: Optional[TemplatePreviewRequest] = Body(None),
    runtime: DispatchRuntime = Depends(get_runtime),
):
    """Render a template with sample data without sending anything."""
    data = body.data if body else {}
    return TemplatePreview(name=name, html=runtime.renderer.render(name, data))


@emails.post("/send", status_code=202, response_model=EmailAccepted, response_model_exclude_none=True)
async def send_email(body: SendEmailRequest, runtime: DispatchRuntime = Depends(get_runtime)):
    """Queue an email with its own content or a named template."""
    job = await runtime.submit_email(
        to=body.to,
        subject=body.subject,
        html=body.html,
        text=body.text,
        template=body.template,
        template_data=body.template_data,
        priority=body.priority,
        delay_ms=body.delay,
    )
    logger.info(f"Email job {job.id} queued for {body.to} (template={body.template}, priority={body.priority})")
    return EmailAccepted(
        message="Email queued successfully",
        job_id=job.id,
        to=body.to,
        subject=body.subject,
        template=body.template,
        priority=body.priority,
        estimated_processing_time=runtime.estimated_processing_time(body.delay),
    )


@emails.post("/welcome", status_code=202, response_model=EmailAccepted, response_model_exclude_none=True)
async def send_welcome_email(body: WelcomeEmailRequest, runtime: DispatchRuntime = Depends(get_runtime)):
    job = await runtime.submit_welcome_email(
        to=body.to,
        first_name=body.first_name,
        login_url=body.login_url,
        priority=body.priority,
        delay_ms=body.delay,
    )
    logger.info(f"Welcome email job {job.id} queued for {body.to}")
    return EmailAccepted(
        message="Welcome email queued successfully",
        job_id=job.id,
        to=body.to,
        first_name=body.first_name,
        type=WELCOME_EMAIL,
    )


@emails.post("/order-confirmation", status_code=202, response_model=EmailAccepted, response_model_exclude_none=True)
async def send_order_confirmation(body: OrderConfirmationRequest, runtime: DispatchRuntime = Depends(get_runtime)):
    job = await runtime.submit_order_confirmation(
        to=body.to,
        first_name=body.first_name,
        order=body.order,
        priority=body.priority,
        delay_ms=body.delay,
    )
    order_id = str(body.order["id"])
    logger.info(f"Order confirmation job {job.id} queued for {body.to} (order {order_id})")
    return EmailAccepted(
        message="Order confirmation email queued successfully",
        job_id=job.id,
        to=body.to,
        order_id=order_id,
        type=f"{ORDER_CONFIRMATION}-email",
    )


@emails.post("/test", status_code=202, response_model=EmailAccepted, response_model_exclude_none=True)
async def send_test_email(
    body: Optional[EmailTestRequest] = Body(None),
    runtime: DispatchRuntime = Depends(get_runtime),
):
    """Queue a fixed message to check the mail path end to end."""
    to = body.to if body else None
    job = await runtime.submit_test_email(to)
    logger.info(f"Test email job {job.id} queued for {to}")
    return EmailAccepted(message="Test email queued successfully", job_id=job.id, to=to, type="test-email")


@emails.get("/status")
async def email_status(runtime: DispatchRuntime = Depends(get_runtime)) -> dict[str, Any]:
    """Mail transport settings and reachability, with the email queue counts."""
    return {
        "success": True,
        "emailService": await runtime.email_status(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
