"""Per-user channel policy."""

from __future__ import annotations

from typing import TYPE_CHECKING

from .models import NotificationType, Preferences

if TYPE_CHECKING:
    from .outbox import NotificationStore

_FLAG_FIELDS: dict[NotificationType, str] = {
    NotificationType.EMAIL: "email_enabled",
    NotificationType.SMS: "sms_enabled",
    NotificationType.PUSH: "push_enabled",
    NotificationType.IN_APP: "in_app_enabled",
}

# in-app has no external address
_DESTINATION_FIELDS: dict[NotificationType, str] = {
    NotificationType.EMAIL: "email_address",
    NotificationType.SMS: "phone_number",
    NotificationType.PUSH: "push_token",
}

_DESTINATION_LABELS: dict[NotificationType, str] = {
    NotificationType.EMAIL: "email address",
    NotificationType.SMS: "phone number",
    NotificationType.PUSH: "push token",
}


def destination_for(kind: NotificationType, prefs: Preferences) -> str | None:
    attr = _DESTINATION_FIELDS.get(kind)
    if attr is None:
        return prefs.user_id
    value = getattr(prefs, attr)
    if value is None or not str(value).strip():
        return None
    return str(value).strip()


def is_enabled(kind: NotificationType, prefs: Preferences) -> bool:
    if not getattr(prefs, _FLAG_FIELDS[kind]):
        return False
    return destination_for(kind, prefs) is not None


def skip_reason(kind: NotificationType, prefs: Preferences) -> str:
    if not getattr(prefs, _FLAG_FIELDS[kind]):
        return f"User has disabled {kind.value} notifications"
    return f"No {_DESTINATION_LABELS.get(kind, 'destination')} configured for user"


class PreferenceGate:
    def __init__(self, store: "NotificationStore") -> None:
        self.store = store

    async def get(self, user_id: str) -> Preferences | None:
        return await self.store.get_preferences(user_id)

    is_enabled = staticmethod(is_enabled)
    destination_for = staticmethod(destination_for)
    skip_reason = staticmethod(skip_reason)


__all__ = ["PreferenceGate", "destination_for", "is_enabled", "skip_reason"]
