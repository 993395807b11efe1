"""
Tests for shared domain models.

These tests verify serialization of notifications, the read-state rule,
and the backoff arithmetic used by the job queues.
"""

import json
from datetime import datetime, timezone

from shared.models import (
    BackoffPolicy,
    BackoffType,
    Job,
    JobOutcome,
    JobState,
    Notification,
    NotificationCategory,
    NotificationStatus,
    Priority,
    priority_value,
)


class TestPriority:
    """Tests for priority levels."""

    def test_queue_values(self):
        """Test each level maps to its numeric queue priority."""
        assert priority_value(Priority.LOW) == 1
        assert priority_value(Priority.MEDIUM) == 5
        assert priority_value(Priority.HIGH) == 10
        assert priority_value("CRITICAL") == 20


class TestNotification:
    """Tests for the Notification model."""

    def test_defaults(self):
        """Test a new notification is an unread system message of medium priority."""
        n = Notification(id="n1", user_id="u1", title="Hi", message="Hello")

        assert n.status == NotificationStatus.UNREAD
        assert n.category == NotificationCategory.SYSTEM
        assert n.priority == Priority.MEDIUM
        assert n.read_at is None
        assert n.created_at.tzinfo is not None

    def test_serializes_with_camel_case(self):
        """Test the stored JSON uses the camelCase layout."""
        n = Notification(id="n1", user_id="u1", title="Hi", message="Hello", action_url="/profile")

        data = json.loads(n.to_json())

        assert data["userId"] == "u1"
        assert data["actionUrl"] == "/profile"
        assert data["status"] == "unread"
        assert "createdAt" in data
        assert "user_id" not in data

    def test_parses_stored_json(self):
        """Test a stored record parses back to an equal model."""
        n = Notification(id="n1", user_id="u1", title="Hi", message="Hello", data={"orderId": "o1"})

        assert Notification.model_validate_json(n.to_json()) == n

    def test_mark_read(self):
        """Test marking as read sets status and timestamp."""
        n = Notification(id="n1", user_id="u1", title="Hi", message="Hello")
        when = datetime(2024, 3, 5, tzinfo=timezone.utc)

        assert n.mark_read(when) is True
        assert n.status == NotificationStatus.READ
        assert n.read_at == when

    def test_mark_read_twice_keeps_first_timestamp(self):
        """Test a second mark_read is a no-op."""
        n = Notification(id="n1", user_id="u1", title="Hi", message="Hello")
        first = datetime(2024, 3, 5, tzinfo=timezone.utc)
        n.mark_read(first)

        assert n.mark_read(datetime(2024, 3, 6, tzinfo=timezone.utc)) is False
        assert n.read_at == first


class TestBackoffPolicy:
    """Tests for retry delays."""

    def test_exponential(self):
        """Test exponential backoff doubles per attempt."""
        policy = BackoffPolicy(type=BackoffType.EXPONENTIAL, delay_ms=5000)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [5000, 10000, 20000]

    def test_fixed(self):
        """Test fixed backoff is constant."""
        policy = BackoffPolicy(type=BackoffType.FIXED, delay_ms=2000)

        assert [policy.delay_for(n) for n in (1, 2, 3)] == [2000, 2000, 2000]


class TestJob:
    """Tests for the Job model."""

    def test_can_retry(self):
        """Test retries are allowed until attempts reach the maximum."""
        job = Job(id="7", queue_name="q", job_type="t", max_attempts=2, created_at=0)
        assert job.can_retry
        job.attempts = 2
        assert not job.can_retry

    def test_round_trips_through_json(self):
        """Test a job survives storage."""
        job = Job(
            id="7",
            queue_name="q",
            job_type="t",
            payload={"to": "a@b.com"},
            backoff=BackoffPolicy(type=BackoffType.EXPONENTIAL, delay_ms=5000),
            created_at=123,
        )

        restored = Job.model_validate_json(job.model_dump_json())

        assert restored == job
        assert restored.sequence == 7
        assert restored.state == JobState.WAITING

    def test_outcomes(self):
        """Test outcome constructors."""
        ok = JobOutcome.ok(messageId="m1")
        failed = JobOutcome.failed("boom")

        assert ok.success and ok.result == {"messageId": "m1"}
        assert not failed.success and failed.error == "boom"
