"""Records and request types of the notification engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Mapping

from .errors import ValidationError

DEFAULT_MAX_RETRIES = 3


class NotificationType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    IN_APP = "in-app"


class NotificationStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    SKIPPED = "skipped"


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO strings, epoch numbers or datetimes into aware UTC datetimes."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(float(value), tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            try:
                return datetime.fromtimestamp(float(text), tz=timezone.utc)
            except (OverflowError, OSError, ValueError):
                return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass(slots=True, frozen=True)
class Notification:
    id: str
    user_id: str
    type: NotificationType
    content: str
    status: NotificationStatus
    priority: NotificationPriority
    retry_count: int
    max_retries: int
    created_at: datetime
    updated_at: datetime
    template_id: str | None = None
    subject: str | None = None
    scheduled_at: datetime | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    error_message: str | None = None
    provider_message_id: str | None = None

    @property
    def is_terminal(self) -> bool:
        if self.status in (NotificationStatus.DELIVERED, NotificationStatus.SKIPPED):
            return True
        return self.status is NotificationStatus.FAILED and self.retry_count >= self.max_retries

    @property
    def is_retryable(self) -> bool:
        return self.status is NotificationStatus.FAILED and self.retry_count < self.max_retries

    def is_due(self, now: datetime) -> bool:
        return self.scheduled_at is None or self.scheduled_at <= now

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "template_id": self.template_id,
            "type": self.type.value,
            "subject": self.subject,
            "content": self.content,
            "status": self.status.value,
            "priority": self.priority.value,
            "scheduled_at": _iso(self.scheduled_at),
            "sent_at": _iso(self.sent_at),
            "delivered_at": _iso(self.delivered_at),
            "metadata": dict(self.metadata),
            "error_message": self.error_message,
            "provider_message_id": self.provider_message_id,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(slots=True, frozen=True)
class Template:
    id: str
    name: str
    type: NotificationType
    content: str
    created_at: datetime
    updated_at: datetime
    subject: str | None = None
    variables: Mapping[str, Any] | None = None
    is_active: bool = True


@dataclass(slots=True, frozen=True)
class Preferences:
    user_id: str
    email_enabled: bool = True
    sms_enabled: bool = True
    push_enabled: bool = True
    in_app_enabled: bool = True
    email_address: str | None = None
    phone_number: str | None = None
    push_token: str | None = None
    preferences: Mapping[str, Any] | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True, frozen=True)
class LogEntry:
    id: str
    notification_id: str
    event: str
    status: NotificationStatus
    message: str | None
    metadata: Mapping[str, Any] | None
    timestamp: datetime


@dataclass(slots=True, frozen=True)
class NewNotification:
    """Row content handed to the store by ``create``."""

    user_id: str
    type: NotificationType
    content: str
    priority: NotificationPriority = NotificationPriority.NORMAL
    max_retries: int = DEFAULT_MAX_RETRIES
    template_id: str | None = None
    subject: str | None = None
    scheduled_at: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class StatusUpdate:
    """One status transition, applied atomically together with its log entry."""

    status: NotificationStatus
    message: str | None = None
    error_message: str | None = None
    sent_at: datetime | None = None
    delivered_at: datetime | None = None
    provider_message_id: str | None = None
    increment_retry: bool = False


@dataclass(slots=True, frozen=True)
class NewLogEntry:
    event: str
    status: NotificationStatus
    message: str | None = None
    metadata: Mapping[str, Any] | None = None

    @classmethod
    def for_update(cls, update: StatusUpdate, metadata: Mapping[str, Any] | None = None) -> "NewLogEntry":
        return cls(
            event=update.status.value,
            status=update.status,
            message=update.message,
            metadata=metadata,
        )


def _pick(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _coerce_enum(enum_cls: type[Enum], value: Any, field_name: str) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(item.value for item in enum_cls)
        raise ValidationError(f"{field_name} must be one of: {allowed}", field=field_name) from None


def _coerce_mapping(value: Any, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ValidationError(f"{field_name} must be an object", field=field_name)
    return {str(key): val for key, val in value.items()}


def _coerce_optional_bool(value: Any, field_name: str) -> bool | None:
    if value is None or isinstance(value, bool):
        return value
    raise ValidationError(f"{field_name} must be a boolean", field=field_name)


def _coerce_optional_str(value: Any, field_name: str) -> str | None:
    if value is None or isinstance(value, str):
        return value
    raise ValidationError(f"{field_name} must be a string", field=field_name)


@dataclass(slots=True, frozen=True)
class NotificationRequest:
    user_id: str
    type: NotificationType
    content: str = ""
    template_name: str | None = None
    subject: str | None = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    scheduled_at: datetime | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    variables: Mapping[str, Any] | None = None
    max_retries: int = DEFAULT_MAX_RETRIES

    def __post_init__(self) -> None:
        if not self.user_id or not str(self.user_id).strip():
            raise ValidationError("userId is required", field="userId")
        if not isinstance(self.type, NotificationType):
            raise ValidationError("type must be a NotificationType", field="type")
        if not self.content and not self.template_name:
            raise ValidationError("content or templateName is required", field="content")
        if self.max_retries < 1:
            raise ValidationError("maxRetries must be at least 1", field="maxRetries")
        if self.scheduled_at is not None and self.scheduled_at.tzinfo is None:
            raise ValidationError("scheduledAt must be timezone-aware", field="scheduledAt")

    @property
    def template_variables(self) -> Mapping[str, Any]:
        return self.variables if self.variables is not None else self.metadata

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "NotificationRequest":
        if not isinstance(data, Mapping):
            raise ValidationError("notification request must be an object")
        raw_type = _pick(data, "type", "channel")
        if raw_type is None:
            raise ValidationError("type is required", field="type")
        raw_scheduled = _pick(data, "scheduledAt", "scheduled_at")
        scheduled_at = parse_timestamp(raw_scheduled)
        if raw_scheduled is not None and scheduled_at is None:
            raise ValidationError("scheduledAt is not a valid timestamp", field="scheduledAt")
        raw_retries = _pick(data, "maxRetries", "max_retries")
        try:
            max_retries = DEFAULT_MAX_RETRIES if raw_retries is None else int(raw_retries)
        except (TypeError, ValueError):
            raise ValidationError("maxRetries must be an integer", field="maxRetries") from None
        raw_variables = _pick(data, "variables")
        raw_priority = _pick(data, "priority")
        return cls(
            user_id=str(_pick(data, "userId", "user_id") or ""),
            type=_coerce_enum(NotificationType, raw_type, "type"),
            content=str(_pick(data, "content") or ""),
            template_name=_coerce_optional_str(_pick(data, "templateName", "template_name"), "templateName"),
            subject=_coerce_optional_str(_pick(data, "subject"), "subject"),
            priority=(
                NotificationPriority.NORMAL
                if raw_priority is None
                else _coerce_enum(NotificationPriority, raw_priority, "priority")
            ),
            scheduled_at=scheduled_at,
            metadata=_coerce_mapping(_pick(data, "metadata"), "metadata"),
            variables=None if raw_variables is None else _coerce_mapping(raw_variables, "variables"),
            max_retries=max_retries,
        )


@dataclass(slots=True, frozen=True)
class TemplateRequest:
    name: str
    type: NotificationType
    content: str
    subject: str | None = None
    variables: Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("name is required", field="name")
        if not self.content:
            raise ValidationError("content is required", field="content")

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "TemplateRequest":
        if not isinstance(data, Mapping):
            raise ValidationError("template request must be an object")
        raw_type = _pick(data, "type")
        if raw_type is None:
            raise ValidationError("type is required", field="type")
        raw_variables = _pick(data, "variables")
        return cls(
            name=str(_pick(data, "name") or ""),
            type=_coerce_enum(NotificationType, raw_type, "type"),
            content=str(_pick(data, "content") or ""),
            subject=_coerce_optional_str(_pick(data, "subject"), "subject"),
            variables=None if raw_variables is None else _coerce_mapping(raw_variables, "variables"),
        )


CLEARABLE_PREFERENCE_FIELDS = {
    "email_address": ("emailAddress", "email_address"),
    "phone_number": ("phoneNumber", "phone_number"),
    "push_token": ("pushToken", "push_token"),
    "preferences": ("preferences",),
}


@dataclass(slots=True, frozen=True)
class PreferencesUpdate:
    """Partial preferences change.

    ``None`` leaves a field as it is. Fields listed in ``cleared`` are reset to
    null; ``from_payload`` fills it from keys sent with an explicit ``null``.
    """

    user_id: str
    email_enabled: bool | None = None
    sms_enabled: bool | None = None
    push_enabled: bool | None = None
    in_app_enabled: bool | None = None
    email_address: str | None = None
    phone_number: str | None = None
    push_token: str | None = None
    preferences: Mapping[str, Any] | None = None
    cleared: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if not self.user_id or not str(self.user_id).strip():
            raise ValidationError("userId is required", field="userId")
        for name in self.cleared:
            if name not in CLEARABLE_PREFERENCE_FIELDS:
                raise ValidationError(f"{name} cannot be cleared", field=name)
            if getattr(self, name) is not None:
                raise ValidationError(f"{name} is both set and cleared", field=name)

    def changes(self) -> dict[str, Any]:
        values = {
            "email_enabled": self.email_enabled,
            "sms_enabled": self.sms_enabled,
            "push_enabled": self.push_enabled,
            "in_app_enabled": self.in_app_enabled,
            "email_address": self.email_address,
            "phone_number": self.phone_number,
            "push_token": self.push_token,
            "preferences": self.preferences,
        }
        result = {key: value for key, value in values.items() if value is not None}
        result.update({name: None for name in self.cleared})
        return result

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> "PreferencesUpdate":
        if not isinstance(data, Mapping):
            raise ValidationError("preferences update must be an object")
        raw_preferences = _pick(data, "preferences")
        cleared = tuple(
            name
            for name, keys in CLEARABLE_PREFERENCE_FIELDS.items()
            if any(key in data for key in keys) and _pick(data, *keys) is None
        )
        return cls(
            user_id=str(_pick(data, "userId", "user_id") or ""),
            email_enabled=_coerce_optional_bool(_pick(data, "emailEnabled", "email_enabled"), "emailEnabled"),
            sms_enabled=_coerce_optional_bool(_pick(data, "smsEnabled", "sms_enabled"), "smsEnabled"),
            push_enabled=_coerce_optional_bool(_pick(data, "pushEnabled", "push_enabled"), "pushEnabled"),
            in_app_enabled=_coerce_optional_bool(_pick(data, "inAppEnabled", "in_app_enabled"), "inAppEnabled"),
            email_address=_coerce_optional_str(_pick(data, "emailAddress", "email_address"), "emailAddress"),
            phone_number=_coerce_optional_str(_pick(data, "phoneNumber", "phone_number"), "phoneNumber"),
            push_token=_coerce_optional_str(_pick(data, "pushToken", "push_token"), "pushToken"),
            preferences=None if raw_preferences is None else _coerce_mapping(raw_preferences, "preferences"),
            cleared=cleared,
        )


@dataclass(slots=True)
class SweepResult:
    """Aggregate outcome of one sweep pass."""

    name: str
    selected: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    untouched: int = 0
    errors: int = 0

    def record(self, notification: Notification) -> None:
        if notification.status is NotificationStatus.SENT:
            self.sent += 1
        elif notification.status is NotificationStatus.FAILED:
            self.failed += 1
        elif notification.status is NotificationStatus.SKIPPED:
            self.skipped += 1
        else:
            self.untouched += 1


@dataclass(slots=True)
class BulkCreateResult:
    created: list[Notification] = field(default_factory=list)
    errors: list[tuple[int, str]] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return len(self.created)

    @property
    def failed(self) -> int:
        return len(self.errors)


__all__ = [
    "DEFAULT_MAX_RETRIES",
    "NotificationType",
    "NotificationStatus",
    "NotificationPriority",
    "Notification",
    "Template",
    "Preferences",
    "LogEntry",
    "NewNotification",
    "StatusUpdate",
    "NewLogEntry",
    "NotificationRequest",
    "TemplateRequest",
    "PreferencesUpdate",
    "SweepResult",
    "BulkCreateResult",
    "now_utc",
    "parse_timestamp",
]
