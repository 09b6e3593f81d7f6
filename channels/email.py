"""Email delivery over SMTP."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
import logging
import re
import smtplib
from typing import Any, Mapping

from notifications.errors import ProviderError
from notifications.models import NotificationType

from .base import ChannelDispatcher, DeliveryOutcome

logger = logging.getLogger(__name__)

DEFAULT_SUBJECT = "Notification"
TAG_RE = re.compile(r"<[^>]+>")


@dataclass(slots=True, frozen=True)
class SmtpConfig:
    host: str = "smtp.gmail.com"
    port: int = 587
    username: str | None = None
    password: str | None = None
    sender: str | None = None
    sender_name: str | None = None
    starttls: bool = True
    timeout: float = 10.0

    @property
    def from_address(self) -> str | None:
        return self.sender or self.username

    @property
    def configured(self) -> bool:
        return bool(self.host and self.from_address)


def strip_html(html: str) -> str:
    return TAG_RE.sub("", html)


def build_message(config: SmtpConfig, *, to: str, subject: str, html_body: str) -> MIMEMultipart:
    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    sender = config.from_address or ""
    msg["From"] = formataddr((config.sender_name, sender)) if config.sender_name else sender
    msg["To"] = to
    msg["Message-ID"] = make_msgid()
    msg.attach(MIMEText(strip_html(html_body), "plain", "utf-8"))
    msg.attach(MIMEText(html_body, "html", "utf-8"))
    return msg


class SmtpEmailDispatcher(ChannelDispatcher):
    channel = NotificationType.EMAIL

    def __init__(self, config: SmtpConfig) -> None:
        self.config = config

    async def _send(
        self,
        destination: str,
        subject: str | None,
        body: str,
        metadata: Mapping[str, Any],
    ) -> DeliveryOutcome:
        if not self.config.configured:
            raise ProviderError(0, "Email service not configured")
        msg = build_message(self.config, to=destination, subject=subject or DEFAULT_SUBJECT, html_body=body)
        # smtplib is blocking
        await asyncio.to_thread(self._send_smtp, destination, msg)
        message_id = msg["Message-ID"]
        logger.info("Email sent to %s: %s", destination, message_id)
        return DeliveryOutcome.ok(provider_message_id=message_id, message="Email sent successfully")

    def _send_smtp(self, destination: str, msg: MIMEMultipart) -> None:
        cfg = self.config
        try:
            with smtplib.SMTP(cfg.host, cfg.port, timeout=cfg.timeout) as server:
                if cfg.starttls:
                    server.starttls()
                if cfg.username and cfg.password:
                    server.login(cfg.username, cfg.password)
                server.sendmail(cfg.from_address, [destination], msg.as_string())
        except (smtplib.SMTPException, OSError) as exc:
            raise ProviderError(0, f"SMTP delivery failed: {exc}") from exc


__all__ = ["SmtpConfig", "SmtpEmailDispatcher", "build_message", "strip_html"]
