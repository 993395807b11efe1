"""
Domain events the notification service reacts to.

Events are published by the user, order and catalog services; they arrive
over HTTP as {eventType, data}. Each type declares the field paths its
payload must carry. Validation happens before routing so that a bad event
never queues anything.

Field paths use dots for nesting ("user.email"). A trailing "?" marks a
field that is documented but optional ("reason?").
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from shared.errors import InvalidEventError, MissingEventFieldsError


# =============================================================================
# Event Types
# =============================================================================

class EventType(str, Enum):
    """Every event type the router knows how to handle."""
    USER_REGISTERED = "user.registered"
    ORDER_CREATED = "order.created"
    ORDER_CONFIRMED = "order.confirmed"
    ORDER_SHIPPED = "order.shipped"
    ORDER_DELIVERED = "order.delivered"
    ORDER_CANCELLED = "order.cancelled"
    PRODUCT_LOW_STOCK = "product.low_stock"
    ADMIN_ACTION = "admin.action"


@dataclass(frozen=True)
class EventDefinition:
    """Catalogue entry for one event type."""
    event_type: EventType
    description: str
    fields: tuple[str, ...]

    @property
    def required_fields(self) -> list[str]:
        return [f for f in self.fields if not f.endswith("?")]

    def to_dict(self) -> dict[str, Any]:
        return {
            "eventType": self.event_type.value,
            "description": self.description,
            "requiredFields": list(self.fields),
        }


EVENT_DEFINITIONS: dict[EventType, EventDefinition] = {
    definition.event_type: definition
    for definition in (
        EventDefinition(
            EventType.USER_REGISTERED,
            "New user registration; sends a welcome email and notification",
            ("user.id", "user.email", "user.firstName"),
        ),
        EventDefinition(
            EventType.ORDER_CREATED,
            "Order placed; sends an order confirmation email and notification",
            ("order.id", "order.total", "order.items", "user.id", "user.email"),
        ),
        EventDefinition(
            EventType.ORDER_CONFIRMED,
            "Order confirmed by the store",
            ("order.id", "user.id"),
        ),
        EventDefinition(
            EventType.ORDER_SHIPPED,
            "Order shipped; sends tracking details by email and notification",
            ("order.id", "user.id", "user.email", "trackingNumber"),
        ),
        EventDefinition(
            EventType.ORDER_DELIVERED,
            "Order delivered; invites the customer to review it",
            ("order.id", "user.id"),
        ),
        EventDefinition(
            EventType.ORDER_CANCELLED,
            "Order cancelled",
            ("order.id", "user.id", "reason?"),
        ),
        EventDefinition(
            EventType.PRODUCT_LOW_STOCK,
            "Product stock under threshold; alerts the administrators",
            ("product.id", "product.name", "currentStock", "threshold"),
        ),
        EventDefinition(
            EventType.ADMIN_ACTION,
            "Administrative action that should be reported",
            ("action", "adminUser.email", "details?"),
        ),
    )
}


# =============================================================================
# Validation
# =============================================================================

_MISSING = object()


def resolve_path(data: Any, path: str) -> Any:
    """
    Follow a dotted path through nested mappings.

    Returns the module-level _MISSING sentinel when any step is absent.
    """
    current = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def missing_fields(event_type: EventType, data: dict[str, Any]) -> list[str]:
    """Required field paths that are absent, None or empty strings."""
    missing = []
    for path in EVENT_DEFINITIONS[event_type].required_fields:
        value = resolve_path(data, path)
        if value is _MISSING or value is None or value == "":
            missing.append(path)
    return missing


@dataclass
class Event:
    """
    A validated inbound event.

    Events are transient: they are routed into jobs and never stored.
    """
    event_type: EventType
    payload: dict[str, Any]
    event_id: str = field(default_factory=lambda: str(uuid4()))
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        return f"Event({self.event_type.value}, id={self.event_id[:8]})"


def parse_event(event_type: Optional[str], data: Any) -> Event:
    """
    Validate raw input and build an Event.

    Raises:
        InvalidEventError: eventType is missing or unknown, or data is not an object
        MissingEventFieldsError: data lacks fields required for the type
    """
    if not event_type or not data or not isinstance(data, dict):
        raise InvalidEventError("eventType and data are required")
    try:
        kind = EventType(event_type)
    except ValueError:
        raise InvalidEventError(
            f"Unknown event type: {event_type}",
            details={"supportedEvents": [t.value for t in EventType]},
        ) from None

    missing = missing_fields(kind, data)
    if missing:
        raise MissingEventFieldsError(kind.value, missing)
    return Event(event_type=kind, payload=data)


def describe_events() -> list[dict[str, Any]]:
    """The event catalogue, in declaration order."""
    return [EVENT_DEFINITIONS[t].to_dict() for t in EventType]
