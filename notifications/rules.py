"""Inbound event rules: which bus topics produce which templated notification."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
import json
from pathlib import Path
from typing import Any, Mapping

from .errors import ValidationError
from .models import NotificationPriority, NotificationRequest, NotificationType


@dataclass(slots=True, frozen=True)
class NotificationDefaults:
    type: NotificationType
    priority: NotificationPriority
    recipient_field: str


@dataclass(slots=True, frozen=True)
class InboundRule:
    topic: str
    template: str
    type: NotificationType
    recipient_field: str
    variables: tuple[str, ...]
    priority: NotificationPriority = NotificationPriority.NORMAL
    delay_minutes: int = 0

    def build_request(self, data: Mapping[str, Any], *, now: datetime) -> NotificationRequest:
        user_id = data.get(self.recipient_field)
        if not user_id:
            raise ValidationError(f"event {self.topic} has no {self.recipient_field}", field=self.recipient_field)
        metadata = {name: data[name] for name in self.variables if name in data}
        scheduled_at = now + timedelta(minutes=self.delay_minutes) if self.delay_minutes else None
        return NotificationRequest(
            user_id=str(user_id),
            type=self.type,
            template_name=self.template,
            priority=self.priority,
            scheduled_at=scheduled_at,
            metadata=metadata,
        )


class NotificationRules:
    """Container for inbound rules and defaults."""

    def __init__(self, defaults: NotificationDefaults, rules: Mapping[str, InboundRule]):
        self.defaults = defaults
        self._rules = dict(rules)

    @classmethod
    def empty(cls) -> "NotificationRules":
        return cls(
            NotificationDefaults(NotificationType.EMAIL, NotificationPriority.NORMAL, "userId"),
            {},
        )

    def get_rule(self, topic: str) -> InboundRule | None:
        return self._rules.get(topic)

    @property
    def topics(self) -> tuple[str, ...]:
        return tuple(self._rules)


def _parse_defaults(data: Mapping[str, Any]) -> NotificationDefaults:
    return NotificationDefaults(
        type=NotificationType(str(data.get("type") or "email")),
        priority=NotificationPriority(str(data.get("priority") or "normal")),
        recipient_field=str(data.get("recipient_field") or "userId"),
    )


def _parse_rule(entry: Mapping[str, Any], defaults: NotificationDefaults) -> InboundRule:
    timing = entry.get("timing") or {}
    delay_minutes = int(timing.get("delay_minutes") or 0)
    variables = tuple(str(var) for var in entry.get("variables", []) if var)
    return InboundRule(
        topic=str(entry.get("topic")),
        template=str(entry.get("template") or ""),
        type=NotificationType(str(entry["type"])) if entry.get("type") else defaults.type,
        recipient_field=str(entry.get("recipient_field") or defaults.recipient_field),
        variables=variables,
        priority=NotificationPriority(str(entry["priority"])) if entry.get("priority") else defaults.priority,
        delay_minutes=delay_minutes,
    )


def parse_notification_rules(raw: Mapping[str, Any]) -> NotificationRules:
    defaults = _parse_defaults(raw.get("defaults") or {})
    rules_data = raw.get("rules") or []
    rules = {
        item.get("topic"): _parse_rule(item, defaults)
        for item in rules_data
        if item.get("topic") and item.get("template")
    }
    return NotificationRules(defaults=defaults, rules=rules)


def load_notification_rules(path: str | Path) -> NotificationRules:
    file_path = Path(path)
    with file_path.open("r", encoding="utf-8") as fp:
        raw = json.load(fp)
    return parse_notification_rules(raw)


__all__ = [
    "InboundRule",
    "NotificationDefaults",
    "NotificationRules",
    "load_notification_rules",
    "parse_notification_rules",
]
