"""
Domain models for the notification dispatch service.

Two families of models live here:
- Notifications: the in-app feed entries users see, persisted per user
- Jobs: units of asynchronous work held by the queue runtime

Design decisions:
- Pydantic for validation and (de)serialization to Redis
- Notifications use camelCase aliases because they travel over HTTP and
  are stored in a layout other services already read
- Jobs keep snake_case; only this service reads them
- Worker outcomes are plain dataclasses, like other in-process results
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Enums
# =============================================================================

class Priority(str, Enum):
    """
    Notification priority levels.

    Each level maps to the numeric queue priority used when the
    notification is delivered through a job (see PRIORITY_VALUES).
    """
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


PRIORITY_VALUES: dict[str, int] = {
    Priority.LOW: 1,
    Priority.MEDIUM: 5,
    Priority.HIGH: 10,
    Priority.CRITICAL: 20,
}


def priority_value(priority: "Priority | str") -> int:
    """Numeric queue priority for a priority level."""
    return PRIORITY_VALUES[Priority(priority)]


class NotificationCategory(str, Enum):
    """Feed categories shown in the user's notification center."""
    ORDER = "order"
    ACCOUNT = "account"
    SYSTEM = "system"
    PROMOTION = "promotion"


class NotificationStatus(str, Enum):
    """Read state. Only ever moves from UNREAD to READ."""
    UNREAD = "unread"
    READ = "read"


class NotificationChannel(str, Enum):
    """Delivery channels for direct submissions."""
    EMAIL = "EMAIL"
    IN_APP = "IN_APP"


class QueueName(str, Enum):
    """The two job queues."""
    EMAIL = "email-notifications"
    IN_APP = "in-app-notifications"


class JobState(str, Enum):
    """
    Job lifecycle.

    waiting -> active -> completed
    waiting -> active -> delayed (retry after backoff) -> waiting
    waiting -> active -> failed (attempts exhausted)
    A stalled active job goes straight back to waiting.
    """
    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class BackoffType(str, Enum):
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


# =============================================================================
# Notifications
# =============================================================================

class Notification(BaseModel):
    """
    An in-app notification in a user's feed.

    Created by the in-app worker, mutated only by mark-as-read, removed
    by explicit delete or TTL expiry.
    """
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
    )

    id: str = Field(..., description="Unique notification identifier")
    user_id: str = Field(..., description="Owner of the feed")
    title: str
    message: str
    category: NotificationCategory = NotificationCategory.SYSTEM
    priority: Priority = Priority.MEDIUM
    data: dict[str, Any] = Field(default_factory=dict)
    action_url: Optional[str] = None
    status: NotificationStatus = NotificationStatus.UNREAD
    created_at: datetime = Field(default_factory=utcnow)
    read_at: Optional[datetime] = None

    @property
    def is_unread(self) -> bool:
        return self.status == NotificationStatus.UNREAD

    def mark_read(self, now: Optional[datetime] = None) -> bool:
        """
        Move the notification to READ.

        Returns False (and leaves read_at untouched) when it already was.
        """
        if not self.is_unread:
            return False
        self.status = NotificationStatus.READ
        self.read_at = now or utcnow()
        return True

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


# =============================================================================
# Jobs
# =============================================================================

class BackoffPolicy(BaseModel):
    """Delay before a failed job becomes eligible again."""
    model_config = ConfigDict(use_enum_values=True)

    type: BackoffType = BackoffType.FIXED
    delay_ms: int = Field(default=1000, ge=0)

    def delay_for(self, attempts_made: int) -> int:
        """
        Backoff in milliseconds after the given number of failed attempts.

        Exponential doubles the base delay per attempt: 1 -> delay,
        2 -> 2 * delay, 3 -> 4 * delay.
        """
        if self.type == BackoffType.EXPONENTIAL:
            return self.delay_ms * 2 ** max(attempts_made - 1, 0)
        return self.delay_ms


class Job(BaseModel):
    """A unit of asynchronous work owned by one queue."""
    model_config = ConfigDict(use_enum_values=True)

    id: str
    queue_name: str
    job_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    delay_ms: int = 0
    attempts: int = Field(default=0, description="Attempts that finished (failed or succeeded)")
    max_attempts: int = 1
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    state: JobState = JobState.WAITING
    created_at: int = Field(..., description="Submission time, epoch milliseconds")
    processed_at: Optional[int] = None
    finished_at: Optional[int] = None
    failed_reason: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    stalled_count: int = 0

    @property
    def sequence(self) -> int:
        """Submission order within the queue."""
        return int(self.id)

    @property
    def can_retry(self) -> bool:
        return self.attempts < self.max_attempts


@dataclass
class JobOutcome:
    """
    What a worker reports back for one job attempt.

    The queue interprets a failed outcome as "retry or fail terminally"
    according to the queue's policy.
    """
    success: bool
    result: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @classmethod
    def ok(cls, **result: Any) -> "JobOutcome":
        return cls(success=True, result=result)

    @classmethod
    def failed(cls, error: str) -> "JobOutcome":
        return cls(success=False, error=error)


class QueueCounts(BaseModel):
    """Aggregate job counts for one queue."""
    waiting: int = 0
    delayed: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    paused: bool = False
