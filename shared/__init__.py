"""
Shared building blocks of the notification dispatch service.

- Configuration (pydantic-settings) and the error taxonomy
- Domain models (Notification, Job, enums)
- The Redis-backed notification feed store
- Mail transports (SMTP, console)
- Email templates and their renderer
"""

from shared.channels import ConsoleMailTransport, DeliveryError, MailTransport, SmtpMailTransport
from shared.config import Settings, get_settings, reset_settings
from shared.data_store import NotificationStore
from shared.models import Job, JobOutcome, Notification
from shared.templates import TemplateRenderer

__all__ = [
    "ConsoleMailTransport",
    "DeliveryError",
    "MailTransport",
    "SmtpMailTransport",
    "Settings",
    "get_settings",
    "reset_settings",
    "NotificationStore",
    "Job",
    "JobOutcome",
    "Notification",
    "TemplateRenderer",
]
