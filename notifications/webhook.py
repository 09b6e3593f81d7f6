"""Minimal aiohttp server accepting provider delivery callbacks."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Mapping, Sequence

from aiohttp import web

from utils.diag import build_info

from .errors import NotFoundError, ValidationError
from .models import parse_timestamp

if TYPE_CHECKING:
    from .orchestrator import DeliveryOrchestrator

logger = logging.getLogger(__name__)

_NOTIFICATION_ID_KEYS: tuple[str, ...] = ("notificationid", "notification_id")
_MESSAGE_ID_KEYS: tuple[str, ...] = (
    "providermessageid",
    "provider_message_id",
    "message_id",
    "messageid",
    "messagesid",
    "sid",
)


def _find_key(data: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key, value in data.items():
        if value is None or value == "":
            continue
        normalized = str(key).lower().replace("-", "_")
        if normalized in keys or normalized.replace("_", "") in keys:
            return str(value)
    return None


def _normalize_status(value: str | None, event_name: str | None) -> str | None:
    low = value.lower() if value else ""
    if not low and event_name:
        event_low = event_name.lower()
        if "read" in event_low or "delivered" in event_low:
            return "delivered"
        if "failed" in event_low or "undelivered" in event_low:
            return "failed"
    if low in {"delivered", "delivered_to_recipient", "read", "seen", "viewed", "opened"}:
        return "delivered"
    if low in {"sent", "send", "queued", "accepted", "sending"}:
        return "sent"
    if low in {"failed", "error", "undelivered", "not_delivered", "bounced"}:
        return "failed"
    return None


def _normalize_payload(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    data = payload.get("data")
    if not isinstance(data, Mapping):
        return payload
    merged = dict(data)
    for key, value in payload.items():
        if key != "data":
            merged.setdefault(key, value)
    return merged


async def apply_delivery_update(
    orchestrator: "DeliveryOrchestrator",
    payload: Mapping[str, Any] | Sequence[Mapping[str, Any]],
) -> bool:
    if isinstance(payload, Sequence) and not isinstance(payload, (Mapping, str)):
        handled_any = False
        for item in payload:
            if await apply_delivery_update(orchestrator, item):
                handled_any = True
        return handled_any

    if not isinstance(payload, Mapping):
        logger.debug("Delivery payload is not a mapping: %s", payload)
        return False

    data = _normalize_payload(payload)
    event_name = str(data.get("event") or data.get("type") or "")
    raw_status = data.get("status") or data.get("MessageStatus") or data.get("state")
    status = _normalize_status(raw_status if isinstance(raw_status, str) else None, event_name)
    if status != "delivered":
        if status == "failed":
            logger.warning("Provider reported delivery failure: %s", payload)
        return False

    notification_id = _find_key(data, _NOTIFICATION_ID_KEYS)
    provider_message_id = None if notification_id else _find_key(data, _MESSAGE_ID_KEYS)
    if not notification_id and not provider_message_id:
        logger.warning("Delivery payload missing message id. event=%s payload=%s", event_name, payload)
        return False

    delivered_at = parse_timestamp(data.get("deliveredAt") or data.get("delivered_at") or data.get("timestamp"))
    try:
        await orchestrator.mark_delivered(
            notification_id=notification_id,
            provider_message_id=provider_message_id,
            delivered_at=delivered_at,
        )
    except NotFoundError:
        logger.info("Notification %s not found for delivery callback", notification_id or provider_message_id)
        return False
    return True


class DeliveryWebhookServer:
    def __init__(self, orchestrator: "DeliveryOrchestrator", *, token: str | None = None) -> None:
        self.orchestrator = orchestrator
        self.token = token
        self._runner: web.AppRunner | None = None
        self._site: web.TCPSite | None = None

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/webhooks/delivery", self._handle)
        app.router.add_post("/webhooks/delivery/", self._handle)
        app.router.add_get("/health", self._health)
        return app

    async def start(self, host: str, port: int) -> None:
        if self._runner:
            return
        app = self.create_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, host, port)
        await self._site.start()
        logger.info("Delivery webhook server listening on %s:%s", host, port)

    async def stop(self) -> None:
        if self._site:
            await self._site.stop()
            self._site = None
        if self._runner:
            await self._runner.cleanup()
            self._runner = None
        logger.info("Delivery webhook server stopped")

    async def _health(self, request: web.Request) -> web.Response:
        return web.json_response({"ok": True, "build": build_info()})

    async def _handle(self, request: web.Request) -> web.Response:
        if self.token:
            provided = request.headers.get("X-Webhook-Token") or request.rel_url.query.get("token")
            if provided != self.token:
                return web.json_response({"ok": False, "error": "unauthorized"}, status=401)

        payload: Any
        if request.content_type == "application/x-www-form-urlencoded":
            payload = dict(await request.post())
        else:
            try:
                payload = await request.json()
            except ValueError:
                return web.json_response({"ok": False, "error": "invalid_json"}, status=400)

        logger.info("Delivery webhook payload: %s", payload)
        try:
            handled = await apply_delivery_update(self.orchestrator, payload)
        except ValidationError as exc:
            return web.json_response({"ok": False, "error": exc.message}, status=400)
        if not handled:
            logger.debug("Delivery payload ignored: %s", payload)
        return web.json_response({"ok": True, "handled": handled})


async def start_delivery_webhook(
    orchestrator: "DeliveryOrchestrator",
    *,
    host: str,
    port: int,
    token: str | None = None,
) -> DeliveryWebhookServer:
    server = DeliveryWebhookServer(orchestrator, token=token)
    await server.start(host, port)
    return server


__all__ = ["DeliveryWebhookServer", "apply_delivery_update", "start_delivery_webhook"]
