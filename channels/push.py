"""Push delivery through Firebase Cloud Messaging (HTTP v1 API)."""

from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import Any, Mapping

import aiohttp

from notifications.errors import ProviderError
from notifications.models import NotificationType

from .base import ChannelDispatcher, DeliveryOutcome

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://fcm.googleapis.com"
DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=20)
DEFAULT_TITLE = "Notification"


class FcmAPIError(ProviderError):
    """Raised when FCM rejects a message."""


@dataclass(slots=True, frozen=True)
class FcmConfig:
    project_id: str | None = None
    access_token: str | None = None
    base_url: str = DEFAULT_BASE_URL

    @property
    def configured(self) -> bool:
        return bool(self.project_id and self.access_token)


def _data_payload(metadata: Mapping[str, Any]) -> dict[str, str]:
    # FCM data values must be strings
    result: dict[str, str] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        result[str(key)] = value if isinstance(value, str) else json.dumps(value, default=str)
    return result


def build_message(*, token: str, title: str, body: str, metadata: Mapping[str, Any]) -> dict[str, Any]:
    return {
        "message": {
            "token": token,
            "notification": {"title": title, "body": body},
            "data": _data_payload(metadata),
            "android": {
                "priority": "high",
                "notification": {"sound": "default", "channel_id": "default"},
            },
            "apns": {"payload": {"aps": {"sound": "default", "badge": 1}}},
        }
    }


class FcmPushDispatcher(ChannelDispatcher):
    channel = NotificationType.PUSH

    def __init__(
        self,
        config: FcmConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        timeout: aiohttp.ClientTimeout = DEFAULT_TIMEOUT,
    ) -> None:
        self.config = config
        self._own_session = session is None
        self._session = session
        self._timeout = timeout

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._own_session = True
        return self._session

    async def close(self) -> None:
        if self._own_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def _send(
        self,
        destination: str,
        subject: str | None,
        body: str,
        metadata: Mapping[str, Any],
    ) -> DeliveryOutcome:
        if not self.config.configured:
            raise ProviderError(0, "Push notification service not configured")
        url = f"{self.config.base_url.rstrip('/')}/v1/projects/{self.config.project_id}/messages:send"
        headers = {"Authorization": f"Bearer {self.config.access_token}"}
        payload = build_message(token=destination, title=subject or DEFAULT_TITLE, body=body, metadata=metadata)
        async with self._get_session().post(url, headers=headers, json=payload) as resp:
            ctype = resp.headers.get("Content-Type", "")
            data = await resp.json() if "application/json" in ctype else await resp.text()
            if resp.status >= 400:
                error = data.get("error", {}) if isinstance(data, Mapping) else {}
                message = error.get("message") if isinstance(error, Mapping) else None
                raise FcmAPIError(resp.status, str(message or data), data)
        name = data.get("name") if isinstance(data, Mapping) else None
        logger.info("Push notification sent: %s", name)
        return DeliveryOutcome.ok(provider_message_id=name, message="Push notification sent successfully")


__all__ = ["FcmAPIError", "FcmConfig", "FcmPushDispatcher", "build_message"]
