"""Environment-driven settings."""

from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import socket

from dotenv import load_dotenv

from channels import FcmConfig, SmtpConfig, TwilioConfig

BASE_DIR = Path(__file__).resolve().parent.parent


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, "") or default)


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, "") or default)


@dataclass(frozen=True)
class Settings:
    db_dsn: str
    db_pool_min: int
    db_pool_max: int
    redis_url: str | None
    stream_prefix: str
    consumer_group: str
    consumer_name: str
    scheduled_interval: float
    retry_interval: float
    claim_lease_seconds: float
    webhook_host: str
    webhook_port: int
    webhook_token: str | None
    rules_path: Path
    log_level: str
    smtp: SmtpConfig
    twilio: TwilioConfig
    fcm: FcmConfig


def load_settings() -> Settings:
    load_dotenv()
    db_dsn = os.getenv("DB_DSN")
    if not db_dsn:
        raise RuntimeError("DB_DSN is not set")
    return Settings(
        db_dsn=db_dsn,
        db_pool_min=_env_int("DB_POOL_MIN", 1),
        db_pool_max=_env_int("DB_POOL_MAX", 5),
        redis_url=os.getenv("REDIS_URL") or None,
        stream_prefix=os.getenv("EVENT_STREAM_PREFIX", "events"),
        consumer_group=os.getenv("EVENT_CONSUMER_GROUP", "notification-service"),
        consumer_name=os.getenv("EVENT_CONSUMER_NAME") or socket.gethostname(),
        scheduled_interval=_env_float("SCHEDULED_SWEEP_INTERVAL", 60.0),
        retry_interval=_env_float("RETRY_SWEEP_INTERVAL", 300.0),
        claim_lease_seconds=_env_float("CLAIM_LEASE_SECONDS", 300.0),
        webhook_host=os.getenv("WEBHOOK_HOST", "0.0.0.0"),
        webhook_port=_env_int("WEBHOOK_PORT", 0),
        webhook_token=os.getenv("WEBHOOK_TOKEN") or None,
        rules_path=Path(os.getenv("NOTIFICATION_RULES_PATH") or BASE_DIR / "docs" / "notification_rules.json"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        smtp=SmtpConfig(
            host=os.getenv("SMTP_HOST", "smtp.gmail.com"),
            port=_env_int("SMTP_PORT", 587),
            username=os.getenv("SMTP_USER") or None,
            password=os.getenv("SMTP_PASS") or None,
            sender=os.getenv("SMTP_FROM") or None,
            sender_name=os.getenv("SMTP_FROM_NAME") or None,
            starttls=_env_flag("SMTP_STARTTLS", True),
        ),
        twilio=TwilioConfig(
            account_sid=os.getenv("TWILIO_ACCOUNT_SID") or None,
            auth_token=os.getenv("TWILIO_AUTH_TOKEN") or None,
            from_number=os.getenv("TWILIO_PHONE_NUMBER") or None,
        ),
        fcm=FcmConfig(
            project_id=os.getenv("FIREBASE_PROJECT_ID") or None,
            access_token=os.getenv("FIREBASE_ACCESS_TOKEN") or None,
        ),
    )


__all__ = ["BASE_DIR", "Settings", "load_settings"]
