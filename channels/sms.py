"""
Async Twilio client and the SMS dispatcher built on it.

Twilio docs: https://www.twilio.com/docs/sms/api/message-resource
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Mapping

import aiohttp

from notifications.errors import ProviderError
from notifications.models import NotificationType

from .base import ChannelDispatcher, DeliveryOutcome

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.twilio.com"
DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=20)


class TwilioAPIError(ProviderError):
    """Raised when Twilio responds with an error."""


@dataclass(slots=True, frozen=True)
class TwilioConfig:
    account_sid: str | None = None
    auth_token: str | None = None
    from_number: str | None = None
    base_url: str = DEFAULT_BASE_URL

    @property
    def configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)


class TwilioClient:
    """Thin async wrapper around the Twilio Messages API."""

    def __init__(
        self,
        config: TwilioConfig,
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

    async def __aenter__(self) -> "TwilioClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def send_message(self, *, to: str, body: str) -> Any:
        path = f"/2010-04-01/Accounts/{self.config.account_sid}/Messages.json"
        form = {"To": to, "From": self.config.from_number or "", "Body": body}
        return await self._request("POST", path, data=form)

    async def _request(self, method: str, path: str, *, data: Mapping[str, str] | None = None) -> Any:
        url = f"{self.config.base_url.rstrip('/')}{path}"
        auth = aiohttp.BasicAuth(self.config.account_sid or "", self.config.auth_token or "")
        logger.debug("Twilio %s %s", method, url)
        async with self._get_session().request(method, url, auth=auth, data=data) as resp:
            payload = await self._parse_response(resp)
            if resp.status >= 400:
                message = payload.get("message") if isinstance(payload, Mapping) else payload
                raise TwilioAPIError(resp.status, str(message), payload)
            return payload

    @staticmethod
    async def _parse_response(resp: aiohttp.ClientResponse) -> Any:
        ctype = resp.headers.get("Content-Type", "")
        if "application/json" in ctype:
            return await resp.json()
        return await resp.text()


class TwilioSmsDispatcher(ChannelDispatcher):
    channel = NotificationType.SMS

    def __init__(self, client: TwilioClient) -> None:
        self.client = client

    async def _send(
        self,
        destination: str,
        subject: str | None,
        body: str,
        metadata: Mapping[str, Any],
    ) -> DeliveryOutcome:
        if not self.client.config.configured:
            raise ProviderError(0, "SMS service not configured")
        response = await self.client.send_message(to=destination, body=body)
        sid = response.get("sid") if isinstance(response, Mapping) else None
        logger.info("SMS sent to %s: %s", destination, sid)
        return DeliveryOutcome.ok(provider_message_id=sid, message="SMS sent successfully")

    async def close(self) -> None:
        await self.client.close()


__all__ = ["TwilioAPIError", "TwilioClient", "TwilioConfig", "TwilioSmsDispatcher"]
