"""
Mail transports used by the email worker.

Two implementations share one interface:
- SmtpMailTransport: real delivery through aiosmtplib
- ConsoleMailTransport: logs the message and keeps it in memory, for
  development and tests; it can simulate failures

Design decisions:
- One transport instance is shared by every email worker slot
- Delivery problems raise DeliveryError; the worker turns that into a
  failed job outcome and the queue decides whether to retry
- Header values are sanitized before they reach the MIME message
- SMTP calls are bounded by a single-digit-second timeout
"""

import logging
import random
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Optional
from uuid import uuid4

import aiosmtplib

from shared.config import EmailSettings

logger = logging.getLogger("mail")

_HEADER_INJECTION = re.compile(r"[\r\n\x00\x0b\x0c]")
_EMAIL_ADDRESS = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


class DeliveryError(Exception):
    """The transport could not hand the message over."""

    def __init__(self, recipient: str, reason: str):
        super().__init__(f"Delivery to {recipient} failed: {reason}")
        self.recipient = recipient
        self.reason = reason


def sanitize_header(value: str, max_length: int = 998) -> str:
    """Strip characters that would allow header injection, and cap the length."""
    if not value:
        return ""
    return _HEADER_INJECTION.sub("", value)[:max_length].strip()


def is_valid_email(address: str) -> bool:
    return bool(address) and _EMAIL_ADDRESS.match(address) is not None


@dataclass
class MailMessage:
    """An email ready to be delivered."""
    to: str
    subject: str
    html: Optional[str] = None
    text: Optional[str] = None


@dataclass
class DeliveryReceipt:
    """What the transport reports for an accepted message."""
    message_id: str
    recipient: str
    subject: str
    accepted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __str__(self) -> str:
        return f"EMAIL to {self.recipient}: {self.subject} ({self.message_id})"


class MailTransport(ABC):
    """Interface every mail transport implements."""
    name: str = "base"

    @abstractmethod
    async def send(self, message: MailMessage) -> DeliveryReceipt:
        """Deliver a message. Raises DeliveryError on failure."""

    async def verify(self) -> bool:
        """Check the transport can be reached."""
        return True

    async def close(self) -> None:
        return None

    def status(self) -> dict:
        return {"transport": self.name}


class SmtpMailTransport(MailTransport):
    """Delivers mail through an SMTP server."""
    name = "smtp"

    def __init__(self, settings: EmailSettings):
        self.settings = settings

    def _client(self) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=self.settings.smtp_host,
            port=self.settings.smtp_port,
            use_tls=self.settings.use_tls,
            start_tls=False if self.settings.use_tls else self.settings.start_tls,
            timeout=self.settings.timeout_seconds,
        )

    def _build(self, message: MailMessage, recipient: str, message_id: str) -> MIMEMultipart:
        mime = MIMEMultipart("alternative")
        mime["Subject"] = Header(sanitize_header(message.subject, max_length=200), "utf-8")
        mime["From"] = formataddr((
            sanitize_header(self.settings.from_name, max_length=100),
            sanitize_header(self.settings.from_email),
        ))
        mime["To"] = recipient
        mime["Message-ID"] = message_id
        if message.text:
            mime.attach(MIMEText(message.text, "plain", "utf-8"))
        if message.html:
            mime.attach(MIMEText(message.html, "html", "utf-8"))
        return mime

    async def send(self, message: MailMessage) -> DeliveryReceipt:
        recipient = sanitize_header(message.to)
        if not is_valid_email(recipient):
            raise DeliveryError(message.to, "invalid email address")

        domain = self.settings.from_email.split("@")[-1]
        message_id = make_msgid(domain=domain)
        mime = self._build(message, recipient, message_id)
        try:
            async with self._client() as smtp:
                if self.settings.smtp_username:
                    await smtp.login(self.settings.smtp_username, self.settings.smtp_password)
                await smtp.send_message(mime)
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.error(f"[EMAIL FAILED] To: {recipient} | Subject: {message.subject} | Error: {exc}")
            raise DeliveryError(recipient, str(exc)) from exc

        logger.info(f"[EMAIL] To: {recipient} | Subject: {message.subject} | Id: {message_id}")
        return DeliveryReceipt(message_id=message_id, recipient=recipient, subject=message.subject)

    async def verify(self) -> bool:
        try:
            async with self._client() as smtp:
                await smtp.noop()
        except (aiosmtplib.SMTPException, OSError) as exc:
            logger.warning(f"SMTP server {self.settings.smtp_host}:{self.settings.smtp_port} unreachable: {exc}")
            return False
        return True

    def status(self) -> dict:
        return {
            "transport": self.name,
            "host": self.settings.smtp_host,
            "port": self.settings.smtp_port,
            "from": self.settings.from_email,
        }


class ConsoleMailTransport(MailTransport):
    """
    Logs emails instead of sending them.

    Keeps every accepted message for test assertions and can simulate
    delivery failures, either randomly or for the next N sends.
    """
    name = "console"

    def __init__(self, fail_rate: float = 0.0):
        """
        Args:
            fail_rate: Probability of send failure (0.0 to 1.0), for testing.
        """
        self.fail_rate = fail_rate
        self._fail_next = 0
        self.sent_messages: list[tuple[DeliveryReceipt, MailMessage]] = []
        self.attempts = 0

    def fail_next(self, count: int = 1) -> None:
        """Make the next `count` sends fail."""
        self._fail_next = count

    async def send(self, message: MailMessage) -> DeliveryReceipt:
        self.attempts += 1
        if self._fail_next > 0 or random.random() < self.fail_rate:
            self._fail_next = max(self._fail_next - 1, 0)
            logger.error(f"[EMAIL FAILED] To: {message.to} | Subject: {message.subject} | Error: simulated failure")
            raise DeliveryError(message.to, "simulated delivery failure")

        receipt = DeliveryReceipt(
            message_id=f"console-{uuid4().hex}@localhost",
            recipient=message.to,
            subject=message.subject,
        )
        logger.info(f"[EMAIL] To: {message.to} | Subject: {message.subject}")
        logger.debug(f"[EMAIL BODY] {message.html or message.text}")
        self.sent_messages.append((receipt, message))
        return receipt

    def get_sent_count(self) -> int:
        return len(self.sent_messages)

    def clear_history(self) -> None:
        self.sent_messages.clear()
        self.attempts = 0

    def find_message_to(self, recipient: str) -> Optional[MailMessage]:
        """Most recent message sent to a recipient."""
        for _, message in reversed(self.sent_messages):
            if message.to == recipient:
                return message
        return None


def create_mail_transport(settings: EmailSettings) -> MailTransport:
    """Build the transport selected in configuration."""
    if settings.transport == "smtp":
        logger.info(f"Using SMTP transport {settings.smtp_host}:{settings.smtp_port}")
        return SmtpMailTransport(settings)
    logger.info("Using console mail transport, emails are logged and not sent")
    return ConsoleMailTransport()
