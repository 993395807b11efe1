"""
Routes domain events to notification jobs.

Each event type is bound to a pure function that turns the payload into
zero or more JobSubmissions (one per channel). The router validates the
event, calls the function, and submits the resulting jobs to their queues.

Routing table:

    user.registered     welcome email (HIGH)           + welcome notification (account)
    order.created       order confirmation email (HIGH) + order notification (orderId, total)
    order.confirmed                                       order confirmed notification
    order.shipped       shipped email with tracking     + shipped notification (trackingNumber)
    order.delivered                                       delivered notification
    order.cancelled                                       cancelled notification (reason)
    product.low_stock   admin alert email
    admin.action        admin alert email, only when an admin address is configured

Design decisions:
- Route functions never touch Redis; they are tested without any queue
- ROUTES must cover every EventType, checked when the module is imported
- Nothing is submitted unless validation passed; submission errors
  propagate to the caller and are not retried here
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, Optional

from dispatch.events import EventType, parse_event
from dispatch.queue import JobQueue
from dispatch.workers import ORDER_CONFIRMATION, SEND_EMAIL, SEND_IN_APP, WELCOME_EMAIL
from shared.models import NotificationCategory, Priority, QueueName, priority_value

logger = logging.getLogger("event_router")


@dataclass(frozen=True)
class JobSubmission:
    """A job the router wants queued."""
    queue: QueueName
    job_type: str
    payload: dict[str, Any]
    action: str
    priority: int = 0
    delay_ms: int = 0

    @property
    def channel(self) -> str:
        return "email" if self.queue == QueueName.EMAIL else "in-app"


@dataclass(frozen=True)
class RouteContext:
    """Deployment facts route functions need (URLs, admin address, time)."""
    frontend_url: str = "http://localhost:3000"
    admin_email: Optional[str] = None
    alert_recipient: str = "admin@localhost"
    now: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


RouteFn = Callable[[dict[str, Any], RouteContext], list[JobSubmission]]


def email_job(job_type: str, payload: dict[str, Any], action: str, priority: Priority = Priority.HIGH) -> JobSubmission:
    return JobSubmission(
        queue=QueueName.EMAIL,
        job_type=job_type,
        payload=payload,
        action=action,
        priority=priority_value(priority),
    )


def in_app_job(
    user_id: str,
    title: str,
    message: str,
    action: str,
    category: NotificationCategory = NotificationCategory.ORDER,
    priority: Priority = Priority.MEDIUM,
    data: Optional[dict[str, Any]] = None,
    action_url: Optional[str] = None,
) -> JobSubmission:
    return JobSubmission(
        queue=QueueName.IN_APP,
        job_type=SEND_IN_APP,
        payload={
            "user_id": user_id,
            "title": title,
            "message": message,
            "category": category.value,
            "priority": priority.value,
            "data": data or {},
            "action_url": action_url,
        },
        action=action,
        priority=priority_value(priority),
    )


# =============================================================================
# Route Functions
# =============================================================================

def route_user_registered(payload: dict[str, Any], ctx: RouteContext) -> list[JobSubmission]:
    user = payload["user"]
    return [
        email_job(
            WELCOME_EMAIL,
            {"to": user["email"], "firstName": user["firstName"], "loginUrl": f"{ctx.frontend_url}/login"},
            action="welcome-email",
        ),
        in_app_job(
            user["id"],
            "Welcome!",
            f"Hi {user['firstName']}, your account is ready. "
            "Complete your profile to get personalized recommendations.",
            action="welcome-notification",
            category=NotificationCategory.ACCOUNT,
            action_url="/profile",
        ),
    ]


def route_order_created(payload: dict[str, Any], ctx: RouteContext) -> list[JobSubmission]:
    order, user = payload["order"], payload["user"]
    return [
        email_job(
            ORDER_CONFIRMATION,
            {"to": user["email"], "firstName": user.get("firstName", ""), "order": order},
            action="order-confirmation-email",
        ),
        in_app_job(
            user["id"],
            "Order received",
            f"Your order #{order['id']} has been received and is being processed.",
            action="order-created-notification",
            priority=Priority.HIGH,
            data={"orderId": order["id"], "total": order["total"]},
            action_url=f"/orders/{order['id']}",
        ),
    ]


def route_order_confirmed(payload: dict[str, Any], ctx: RouteContext) -> list[JobSubmission]:
    order, user = payload["order"], payload["user"]
    return [
        in_app_job(
            user["id"],
            "Order confirmed",
            f"Your order #{order['id']} has been confirmed and is being prepared.",
            action="order-confirmed-notification",
            data={"orderId": order["id"], "status": "confirmed"},
            action_url=f"/orders/{order['id']}",
        ),
    ]


def route_order_shipped(payload: dict[str, Any], ctx: RouteContext) -> list[JobSubmission]:
    order, user = payload["order"], payload["user"]
    tracking_number = payload["trackingNumber"]
    tracking_path = f"/orders/{order['id']}/tracking"
    return [
        email_job(
            SEND_EMAIL,
            {
                "to": user["email"],
                "template": "order-shipped",
                "template_data": {
                    "firstName": user.get("firstName", ""),
                    "orderId": order["id"],
                    "trackingNumber": tracking_number,
                    "trackingUrl": f"{ctx.frontend_url}{tracking_path}",
                    "estimatedDelivery": payload.get("estimatedDelivery"),
                },
            },
            action="order-shipped-email",
        ),
        in_app_job(
            user["id"],
            "Order shipped",
            f"Your order #{order['id']} is on its way. Tracking number: {tracking_number}",
            action="order-shipped-notification",
            data={"orderId": order["id"], "trackingNumber": tracking_number, "status": "shipped"},
            action_url=tracking_path,
        ),
    ]


def route_order_delivered(payload: dict[str, Any], ctx: RouteContext) -> list[JobSubmission]:
    order, user = payload["order"], payload["user"]
    return [
        in_app_job(
            user["id"],
            "Order delivered",
            f"Your order #{order['id']} has been delivered. Let us know what you think!",
            action="order-delivered-notification",
            data={"orderId": order["id"], "status": "delivered"},
            action_url=f"/orders/{order['id']}/review",
        ),
    ]


def route_order_cancelled(payload: dict[str, Any], ctx: RouteContext) -> list[JobSubmission]:
    order, user = payload["order"], payload["user"]
    reason = payload.get("reason")
    message = f"Your order #{order['id']} has been cancelled."
    if reason:
        message += f" Reason: {reason}"
    return [
        in_app_job(
            user["id"],
            "Order cancelled",
            message,
            action="order-cancelled-notification",
            data={"orderId": order["id"], "status": "cancelled", "reason": reason},
            action_url=f"/orders/{order['id']}",
        ),
    ]


def route_product_low_stock(payload: dict[str, Any], ctx: RouteContext) -> list[JobSubmission]:
    product = payload["product"]
    current, threshold = payload["currentStock"], payload["threshold"]
    return [
        email_job(
            SEND_EMAIL,
            {
                "to": ctx.alert_recipient,
                "template": "admin-alert",
                "template_data": {
                    "alertType": "low_stock",
                    "message": f"Product {product['name']} is running low: {current} left (threshold {threshold}).",
                    "data": {
                        "productId": product["id"],
                        "productName": product["name"],
                        "currentStock": current,
                        "threshold": threshold,
                    },
                    "timestamp": ctx.now.isoformat(),
                    "dashboardUrl": f"{ctx.frontend_url}/admin/products/{product['id']}",
                },
            },
            action="low-stock-alert",
        ),
    ]


def route_admin_action(payload: dict[str, Any], ctx: RouteContext) -> list[JobSubmission]:
    if not ctx.admin_email:
        return []
    performed_by = payload["adminUser"]["email"]
    return [
        email_job(
            SEND_EMAIL,
            {
                "to": ctx.admin_email,
                "template": "admin-alert",
                "template_data": {
                    "alertType": "admin_action",
                    "message": f"{performed_by} performed '{payload['action']}'.",
                    "data": {
                        "action": payload["action"],
                        "performedBy": performed_by,
                        "details": payload.get("details"),
                    },
                    "timestamp": ctx.now.isoformat(),
                    "dashboardUrl": f"{ctx.frontend_url}/admin",
                },
            },
            action="admin-action-alert",
            priority=Priority.MEDIUM,
        ),
    ]


ROUTES: dict[EventType, RouteFn] = {
    EventType.USER_REGISTERED: route_user_registered,
    EventType.ORDER_CREATED: route_order_created,
    EventType.ORDER_CONFIRMED: route_order_confirmed,
    EventType.ORDER_SHIPPED: route_order_shipped,
    EventType.ORDER_DELIVERED: route_order_delivered,
    EventType.ORDER_CANCELLED: route_order_cancelled,
    EventType.PRODUCT_LOW_STOCK: route_product_low_stock,
    EventType.ADMIN_ACTION: route_admin_action,
}

_unrouted = set(EventType) - set(ROUTES)
if _unrouted:
    raise RuntimeError(f"Event types without a route: {sorted(t.value for t in _unrouted)}")


# =============================================================================
# Router
# =============================================================================

@dataclass
class DispatchedJob:
    type: str
    job_id: str
    action: str


@dataclass
class DispatchResult:
    """What the caller of POST /events gets back."""
    event_type: str
    jobs: list[DispatchedJob]

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type,
            "processedNotifications": len(self.jobs),
            "jobs": [{"type": j.type, "jobId": j.job_id, "action": j.action} for j in self.jobs],
        }


class EventRouter:
    """
    Validates events and submits the jobs they route to.

    Example:
        router = EventRouter(queues, RouteContext(frontend_url="https://shop.example"))
        result = await router.dispatch("user.registered", {"user": {...}})
    """

    def __init__(
        self,
        queues: Mapping[QueueName, JobQueue],
        context: Optional[RouteContext] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.queues = queues
        self.context = context or RouteContext()
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def route(self, event_type: Optional[str], data: Any) -> list[JobSubmission]:
        """
        Validate an event and compute its jobs without submitting them.

        Raises:
            InvalidEventError: unknown type or missing data
            MissingEventFieldsError: required fields absent
        """
        event = parse_event(event_type, data)
        context = RouteContext(
            frontend_url=self.context.frontend_url,
            admin_email=self.context.admin_email,
            alert_recipient=self.context.alert_recipient,
            now=self.clock(),
        )
        submissions = ROUTES[event.event_type](event.payload, context)
        logger.debug(f"{event} routed to {[s.action for s in submissions]}")
        return submissions

    async def dispatch(self, event_type: Optional[str], data: Any) -> DispatchResult:
        """Validate, route and submit. Returns the submitted jobs."""
        submissions = self.route(event_type, data)
        jobs = []
        for submission in submissions:
            job = await self.queues[submission.queue].submit(
                submission.job_type,
                submission.payload,
                priority=submission.priority,
                delay_ms=submission.delay_ms,
            )
            jobs.append(DispatchedJob(type=submission.channel, job_id=job.id, action=submission.action))

        logger.info(f"Processed {event_type}: {len(jobs)} job(s) queued")
        return DispatchResult(event_type=str(event_type), jobs=jobs)
