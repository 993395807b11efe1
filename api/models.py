"""
Request and response models of the dispatch API.

Field names are snake_case in Python and camelCase on the wire, matching
what the gateway and the frontend already send and read. Fields whose
validity is a business rule (notification type, priority, required
combinations) are plain strings here and are checked by the runtime, so
that breaking a rule is a 400 with the service's error shape.
"""

from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from shared.models import Notification


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Requests
# =============================================================================

class EventRequest(ApiModel):
    """An inbound domain event."""
    event_type: Optional[str] = Field(None, description="e.g. order.shipped")
    data: Any = Field(None, description="Event payload")


class SendNotificationRequest(ApiModel):
    """Direct submission that bypasses the event router."""
    type: Optional[str] = Field(None, description="EMAIL or IN_APP")
    recipient: Optional[str] = Field(None, description="Email address or user id")
    title: Optional[str] = None
    message: Optional[str] = None
    priority: str = Field("MEDIUM", description="LOW, MEDIUM, HIGH or CRITICAL")
    template: Optional[str] = None
    template_data: Optional[dict[str, Any]] = None
    action_url: Optional[str] = None
    category: Optional[str] = None
    delay: int = Field(0, description="Milliseconds before the job becomes eligible")


class NotificationOwnerRequest(ApiModel):
    """Body of read/delete requests. Ownership is checked upstream."""
    user_id: Optional[str] = None


class QueueRequest(ApiModel):
    queue_type: str = Field("all", description="all, email or inapp")


class TemplatePreviewRequest(ApiModel):
    data: dict[str, Any] = Field(default_factory=dict)


class WebhookRequest(ApiModel):
    """An event pushed by an external service."""
    source: Optional[str] = None
    event_type: Optional[str] = None
    data: Any = None
    timestamp: Optional[str] = None


class SendEmailRequest(ApiModel):
    """A generic email: own subject and content, or a named template."""
    to: Optional[str] = None
    subject: Optional[str] = None
    html: Optional[str] = None
    text: Optional[str] = None
    template: Optional[str] = None
    template_data: Optional[dict[str, Any]] = None
    priority: str = Field("MEDIUM", description="LOW, MEDIUM, HIGH or CRITICAL")
    delay: int = Field(0, description="Milliseconds before the job becomes eligible")


class WelcomeEmailRequest(ApiModel):
    to: Optional[str] = None
    first_name: Optional[str] = None
    login_url: Optional[str] = None
    priority: str = "HIGH"
    delay: int = 0


class OrderConfirmationRequest(ApiModel):
    to: Optional[str] = None
    first_name: Optional[str] = None
    order: Optional[dict[str, Any]] = None
    priority: str = "HIGH"
    delay: int = 0


class EmailTestRequest(ApiModel):
    to: Optional[str] = None


# =============================================================================
# Responses
# =============================================================================

class JobRef(ApiModel):
    type: str
    job_id: str
    action: str


class EventAccepted(ApiModel):
    event_type: str
    processed_notifications: int
    jobs: list[JobRef]


class EventTypeInfo(ApiModel):
    event_type: str
    description: str
    required_fields: list[str]


class NotificationAccepted(ApiModel):
    success: bool = True
    job_id: str
    queue: str
    type: str
    estimated_processing_time: str


class EmailAccepted(ApiModel):
    """A queued email job. Only the fields relevant to the endpoint are sent."""
    success: bool = True
    message: str
    job_id: str
    to: str
    type: Optional[str] = None
    subject: Optional[str] = None
    template: Optional[str] = None
    priority: Optional[str] = None
    first_name: Optional[str] = None
    order_id: Optional[str] = None
    estimated_processing_time: Optional[str] = None


class FeedResponse(ApiModel):
    notifications: list[Notification]
    total_count: int
    unread_count: int
    has_more: bool


class NotificationResponse(ApiModel):
    success: bool = True
    notification: Notification


class TemplatePreview(ApiModel):
    name: str
    html: str
