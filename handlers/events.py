from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping

from notifications import (
    DeliveryOrchestrator,
    NotificationError,
    NotificationRequest,
    NotificationRules,
    PreferencesUpdate,
    TemplateRequest,
    ValidationError,
)

logger = logging.getLogger(__name__)

LOGIN_TOPIC = "auth.user.login"


def event_data(message: Mapping[str, Any]) -> Mapping[str, Any]:
    """Inbound messages carry their body under ``data``; bare bodies are accepted too."""
    data = message.get("data")
    return data if isinstance(data, Mapping) else message


class EventHandlers:
    """Routes inbound bus topics to orchestrator operations."""

    def __init__(self, orchestrator: DeliveryOrchestrator, rules: NotificationRules):
        self.orchestrator = orchestrator
        self.rules = rules
        self._routes: dict[str, Callable[[Mapping[str, Any]], Awaitable[None]]] = {
            "notification.send": self.on_send,
            "notification.bulk.send": self.on_bulk_send,
            "notification.template.create": self.on_template_create,
            "notification.preferences.update": self.on_preferences_update,
            LOGIN_TOPIC: self.on_user_login,
        }

    @property
    def topics(self) -> tuple[str, ...]:
        return tuple(dict.fromkeys((*self._routes, *self.rules.topics)))

    async def __call__(self, topic: str, message: Mapping[str, Any]) -> None:
        data = event_data(message)
        route = self._routes.get(topic)
        try:
            if route is not None:
                await route(data)
            elif self.rules.get_rule(topic) is not None:
                await self.on_rule_event(topic, data)
            else:
                logger.warning("No handler for topic %s", topic)
        except NotificationError as exc:
            logger.error("Failed to handle %s event: %s", topic, exc)

    async def on_send(self, data: Mapping[str, Any]) -> None:
        notification = await self.orchestrator.create(NotificationRequest.from_payload(data))
        logger.info("notification.send -> %s (%s)", notification.id, notification.status.value)

    async def on_bulk_send(self, data: Mapping[str, Any]) -> None:
        items = data.get("notifications")
        if not isinstance(items, list):
            raise ValidationError("notifications must be a list", field="notifications")
        result = await self.orchestrator.create_many(items)
        logger.info("notification.bulk.send: %s created, %s failed", result.succeeded, result.failed)

    async def on_template_create(self, data: Mapping[str, Any]) -> None:
        await self.orchestrator.create_template(TemplateRequest.from_payload(data))

    async def on_preferences_update(self, data: Mapping[str, Any]) -> None:
        await self.orchestrator.update_user_preferences(PreferencesUpdate.from_payload(data))

    async def on_user_login(self, data: Mapping[str, Any]) -> None:
        logger.info("User %s logged in", data.get("userId") or data.get("user_id"))

    async def on_rule_event(self, topic: str, data: Mapping[str, Any]) -> None:
        rule = self.rules.get_rule(topic)
        request = rule.build_request(data, now=self.orchestrator.clock())
        notification = await self.orchestrator.create(request)
        logger.info("%s -> %s %s (%s)", topic, rule.template, notification.id, notification.status.value)


__all__ = ["EventHandlers", "LOGIN_TOPIC", "event_data"]
