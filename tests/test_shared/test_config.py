"""
Tests for configuration loading.
"""

import pydantic
import pytest

from shared.config import (
    EmailSettings,
    FeedSettings,
    QueueSettings,
    ServiceSettings,
    Settings,
    get_settings,
    reset_settings,
)


class TestDefaults:
    """Tests for default values."""

    def test_feed_retention_is_seven_days(self):
        assert FeedSettings().ttl_seconds == 7 * 24 * 60 * 60

    def test_timeouts_are_single_digit_seconds(self):
        """Test no external call is allowed to block a worker for long."""
        settings = Settings()

        assert settings.redis.socket_timeout < 10
        assert settings.email.timeout_seconds < 10
        assert settings.queue.job_timeout_seconds < 10

    def test_priority_range(self):
        queue = QueueSettings()
        assert (queue.priority_min, queue.priority_max) == (0, 100)

    @pytest.mark.parametrize("bounds", [(0, 20_000), (-5_000, 5_000), (10, 10), (50, 0)])
    def test_priority_range_rejected(self, bounds):
        """Test wait scores cannot outgrow exact double precision."""
        low, high = bounds
        with pytest.raises(pydantic.ValidationError):
            QueueSettings(priority_min=low, priority_max=high)

    def test_widest_priority_range(self):
        queue = QueueSettings(priority_min=0, priority_max=9000)
        assert (queue.priority_max - queue.priority_min) * 10 ** 12 < 2 ** 53


class TestEnvironment:
    """Tests for environment overrides."""

    def test_env_override(self, monkeypatch):
        """Test prefixed variables override defaults."""
        monkeypatch.setenv("QUEUE_EMAIL_CONCURRENCY", "7")
        monkeypatch.setenv("EMAIL_ADMIN_EMAIL", "Ops@Shop.test")

        settings = Settings()

        assert settings.queue.email_concurrency == 7
        assert settings.email.admin_email == "ops@shop.test"

    def test_invalid_email_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            EmailSettings(from_email="not-an-address")

    def test_frontend_url_trailing_slash(self):
        assert ServiceSettings(frontend_url="https://shop.test/").frontend_url == "https://shop.test"


class TestAlertRecipient:
    """Tests for where admin alerts go."""

    def test_prefers_admin_email(self):
        email = EmailSettings(admin_email="admin@shop.test", smtp_username="smtp@shop.test")
        assert email.alert_recipient == "admin@shop.test"

    def test_falls_back_to_smtp_user_then_sender(self):
        assert EmailSettings(admin_email=None, smtp_username="smtp@shop.test").alert_recipient == "smtp@shop.test"
        email = EmailSettings(admin_email=None, smtp_username="", from_email="noreply@shop.test")
        assert email.alert_recipient == "noreply@shop.test"


class TestSingleton:
    """Tests for the process-wide settings."""

    def test_get_settings_is_cached(self):
        reset_settings()
        try:
            assert get_settings() is get_settings()
        finally:
            reset_settings()

    def test_reset_settings(self):
        reset_settings()
        first = get_settings()
        reset_settings()
        try:
            assert get_settings() is not first
        finally:
            reset_settings()
