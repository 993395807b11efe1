"""
Configuration for the notification dispatch service.

Every setting can be supplied through environment variables (or a .env file).
Settings are grouped by concern, each group with its own prefix:

    REDIS_URL=redis://redis:6379/0
    EMAIL_TRANSPORT=smtp
    EMAIL_ADMIN_EMAIL=ops@example.com
    QUEUE_EMAIL_CONCURRENCY=4
    FEED_TTL_SECONDS=604800

Design decisions:
- One BaseSettings class per concern, aggregated by Settings
- Timeouts default to single-digit seconds so a stuck dependency
  cannot hold a worker slot for long
- A process-wide instance is available through get_settings(), but every
  component also accepts its settings explicitly (tests build their own)
"""

import logging
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("config")

DEFAULT_TEMPLATES_DIR = Path(__file__).parent / "email_templates"

# Widest priority range whose wait scores stay exact as Redis doubles
PRIORITY_SPAN_LIMIT = 9000


class RedisSettings(BaseSettings):
    """Connection to the Redis instance backing queues and feeds."""
    url: str = Field(default="redis://localhost:6379/0")
    socket_timeout: float = Field(default=5.0, gt=0, le=9.0)
    connect_timeout: float = Field(default=5.0, gt=0, le=9.0)
    key_prefix: str = Field(default="queue", description="Prefix for job queue keys")

    model_config = SettingsConfigDict(env_prefix="REDIS_", env_file=".env", extra="ignore")


class EmailSettings(BaseSettings):
    """Outbound mail transport."""
    transport: Literal["smtp", "console"] = Field(default="console")
    smtp_host: str = Field(default="localhost")
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str = Field(default="")
    smtp_password: str = Field(default="")
    use_tls: bool = Field(default=False)
    start_tls: bool = Field(default=True)
    from_email: str = Field(default="noreply@ecommerce.com")
    from_name: str = Field(default="E-commerce Platform")
    admin_email: Optional[str] = Field(default=None, description="Recipient of admin alerts")
    timeout_seconds: float = Field(default=5.0, gt=0, le=9.0)

    model_config = SettingsConfigDict(env_prefix="EMAIL_", env_file=".env", extra="ignore")

    @field_validator("from_email", "admin_email", mode="before")
    @classmethod
    def validate_address(cls, v: Optional[str]) -> Optional[str]:
        if v and "@" not in v:
            raise ValueError(f"Invalid email address: {v}")
        return v.strip().lower() if v else None

    @property
    def alert_recipient(self) -> str:
        """Where low-stock alerts go when no admin address is configured."""
        return self.admin_email or self.smtp_username or self.from_email


class QueueSettings(BaseSettings):
    """Worker slots, leases and limits for the job queues."""
    email_concurrency: int = Field(default=2, ge=1, le=64)
    in_app_concurrency: int = Field(default=4, ge=1, le=64)
    poll_interval_ms: int = Field(default=500, ge=10)
    lease_ms: int = Field(default=30_000, ge=1_000)
    stalled_check_interval_ms: int = Field(default=30_000, ge=1_000)
    job_timeout_seconds: float = Field(default=8.0, gt=0, le=9.0)
    priority_min: int = Field(default=0)
    priority_max: int = Field(default=100)

    model_config = SettingsConfigDict(env_prefix="QUEUE_", env_file=".env", extra="ignore")

    @model_validator(mode="after")
    def check_priority_range(self) -> "QueueSettings":
        span = self.priority_max - self.priority_min
        if span <= 0:
            raise ValueError("priority_max must be greater than priority_min")
        if span > PRIORITY_SPAN_LIMIT:
            raise ValueError(
                f"Priority range wider than {PRIORITY_SPAN_LIMIT}: {self.priority_min}..{self.priority_max}"
            )
        return self


class FeedSettings(BaseSettings):
    """Retention and paging of in-app notification feeds."""
    ttl_seconds: int = Field(default=7 * 24 * 60 * 60, ge=0)
    default_limit: int = Field(default=20, ge=1, le=500)

    model_config = SettingsConfigDict(env_prefix="FEED_", env_file=".env", extra="ignore")


class TemplateSettings(BaseSettings):
    """Where email templates live and how values are formatted."""
    templates_dir: Path = Field(default=DEFAULT_TEMPLATES_DIR)
    locale: str = Field(default="en-US")
    currency: str = Field(default="USD")

    model_config = SettingsConfigDict(env_prefix="TEMPLATE_", env_file=".env", extra="ignore")


class ServiceSettings(BaseSettings):
    """Process-level settings."""
    name: str = Field(default="notification-service")
    version: str = Field(default="1.0.0")
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3005, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    frontend_url: str = Field(default="http://localhost:3000")
    run_workers: bool = Field(default=True, description="Start queue workers inside the API process")

    model_config = SettingsConfigDict(env_prefix="SERVICE_", env_file=".env", extra="ignore")

    @field_validator("frontend_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")


class Settings(BaseSettings):
    """Aggregate settings for the whole service."""
    service: ServiceSettings = Field(default_factory=ServiceSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    email: EmailSettings = Field(default_factory=EmailSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    feed: FeedSettings = Field(default_factory=FeedSettings)
    template: TemplateSettings = Field(default_factory=TemplateSettings)

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    @staticmethod
    def load() -> "Settings":
        settings = Settings()
        logger.info(
            f"Settings loaded: service={settings.service.name} "
            f"transport={settings.email.transport} locale={settings.template.locale}"
        )
        return settings


# =============================================================================
# Singleton
# =============================================================================

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the process-wide settings, loading them on first use."""
    global _settings
    if _settings is None:
        _settings = Settings.load()
    return _settings


def reset_settings() -> None:
    """Forget the loaded settings (tests)."""
    global _settings
    _settings = None
