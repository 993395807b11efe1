"""
Asynchronous notification dispatch.

- events: the event catalogue and payload validation
- event_router: event type -> job submissions, and their submission
- queue: Redis-backed priority job queues with retries and leases
- workers: email and in-app job processors
- runtime: the context object that wires all of the above together
"""

from dispatch.event_router import EventRouter, JobSubmission, RouteContext
from dispatch.events import EventType, parse_event
from dispatch.queue import EMAIL_POLICY, IN_APP_POLICY, JobQueue, QueuePolicy
from dispatch.runtime import DispatchRuntime

__all__ = [
    "EventRouter",
    "JobSubmission",
    "RouteContext",
    "EventType",
    "parse_event",
    "EMAIL_POLICY",
    "IN_APP_POLICY",
    "JobQueue",
    "QueuePolicy",
    "DispatchRuntime",
]
