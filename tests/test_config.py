import pytest

from services.config import load_settings


def test_db_dsn_is_required(monkeypatch):
    monkeypatch.delenv("DB_DSN", raising=False)

    with pytest.raises(RuntimeError):
        load_settings()


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("DB_DSN", "postgresql://localhost/notifications")
    monkeypatch.setenv("SCHEDULED_SWEEP_INTERVAL", "30")
    monkeypatch.setenv("WEBHOOK_PORT", "8081")
    monkeypatch.setenv("SMTP_USER", "robot@example.com")
    monkeypatch.setenv("SMTP_STARTTLS", "false")
    monkeypatch.setenv("TWILIO_ACCOUNT_SID", "AC123")
    monkeypatch.delenv("REDIS_URL", raising=False)

    settings = load_settings()

    assert settings.db_dsn == "postgresql://localhost/notifications"
    assert settings.scheduled_interval == 30.0
    assert settings.retry_interval == 300.0
    assert settings.webhook_port == 8081
    assert settings.redis_url is None
    assert settings.smtp.from_address == "robot@example.com"
    assert settings.smtp.starttls is False
    assert not settings.twilio.configured
    assert settings.rules_path.name == "notification_rules.json"
