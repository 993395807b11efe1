"""
Error taxonomy for the notification dispatch service.

Each error carries the HTTP status and machine-readable code the API
reports for it. Authentication and authorization are enforced upstream
(the gateway), so there are no 401/403 errors here.
"""

from datetime import datetime, timezone
from typing import Any, Optional


class NotificationServiceError(Exception):
    """Base class for every error the service reports. Maps to 500."""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Body of the JSON error response."""
        error: dict[str, Any] = {
            "message": self.message,
            "code": self.code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.details:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationError(NotificationServiceError):
    """Request input is malformed. Raised before anything is queued."""
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidEventError(ValidationError):
    """Unknown event type, or an event without data."""
    code = "INVALID_EVENT"


class MissingEventFieldsError(InvalidEventError):
    """A known event whose payload lacks required fields."""
    status_code = 422
    code = "MISSING_FIELDS"

    def __init__(self, event_type: str, missing: list[str]):
        super().__init__(
            f"Missing required fields for {event_type}: {', '.join(missing)}",
            details={"eventType": event_type, "missingFields": missing},
        )
        self.missing = missing


class NotFoundError(NotificationServiceError):
    """A notification (or job) is absent or has expired."""
    status_code = 404
    code = "NOT_FOUND"


class ServiceUnavailableError(NotificationServiceError):
    """Redis or the mail transport cannot be reached, or the runtime is shutting down."""
    status_code = 503
    code = "SERVICE_UNAVAILABLE"
