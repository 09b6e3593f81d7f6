"""Shared fixtures: an in-memory store with the same claim rules as the SQL one."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping
import uuid

import pytest

from channels.base import ChannelDispatcher, DeliveryOutcome, DispatcherRegistry
from notifications import (
    DeliveryOrchestrator,
    LogEntry,
    Notification,
    NotificationStatus,
    NotificationType,
    Preferences,
    PreferencesUpdate,
    PublishError,
    Template,
    TemplateRequest,
    ValidationError,
)
from notifications.models import NewLogEntry, NewNotification, StatusUpdate

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@dataclass
class _Claim:
    token: str
    claimed_at: datetime


class InMemoryNotificationStore:
    def __init__(self) -> None:
        self.notifications: dict[str, Notification] = {}
        self.claims: dict[str, _Claim] = {}
        self.logs: list[LogEntry] = []
        self.templates: dict[str, Template] = {}
        self.preferences: dict[str, Preferences] = {}

    # notifications

    async def insert_notification(self, new: NewNotification, *, now: datetime) -> Notification:
        notification = Notification(
            id=str(uuid.uuid4()),
            user_id=new.user_id,
            type=new.type,
            content=new.content,
            status=NotificationStatus.PENDING,
            priority=new.priority,
            retry_count=0,
            max_retries=new.max_retries,
            created_at=now,
            updated_at=now,
            template_id=new.template_id,
            subject=new.subject,
            scheduled_at=new.scheduled_at,
            metadata=dict(new.metadata),
        )
        self.notifications[notification.id] = notification
        return notification

    async def get_notification(self, notification_id: str) -> Notification | None:
        return self.notifications.get(notification_id)

    async def find_by_provider_message_id(self, provider_message_id: str) -> Notification | None:
        for notification in self.notifications.values():
            if notification.provider_message_id == provider_message_id:
                return notification
        return None

    async def list_user_notifications(self, user_id: str, limit: int, offset: int) -> list[Notification]:
        rows = [n for n in self.notifications.values() if n.user_id == user_id]
        rows.sort(key=lambda n: (n.created_at, n.id), reverse=True)
        return rows[offset : offset + limit]

    def _claim_free(self, notification_id: str, stale_before: datetime) -> bool:
        claim = self.claims.get(notification_id)
        return claim is None or claim.claimed_at < stale_before

    async def fetch_due_scheduled(
        self, *, now: datetime, lease_seconds: float, limit: int | None = None
    ) -> list[Notification]:
        stale_before = now - timedelta(seconds=lease_seconds)
        rows = [
            n
            for n in self.notifications.values()
            if n.status is NotificationStatus.PENDING
            and self._claim_free(n.id, stale_before)
            and (
                (n.scheduled_at is not None and n.scheduled_at <= now)
                or (n.scheduled_at is None and n.created_at <= stale_before)
            )
        ]
        rows.sort(key=lambda n: (n.scheduled_at or n.created_at, n.id))
        return rows if limit is None else rows[:limit]

    async def fetch_retryable(
        self, *, now: datetime, lease_seconds: float, limit: int | None = None
    ) -> list[Notification]:
        stale_before = now - timedelta(seconds=lease_seconds)
        rows = [
            n
            for n in self.notifications.values()
            if n.is_retryable and self._claim_free(n.id, stale_before)
        ]
        rows.sort(key=lambda n: (n.updated_at, n.id))
        return rows if limit is None else rows[:limit]

    async def claim_notification(
        self, notification_id: str, *, token: str, now: datetime, lease_seconds: float
    ) -> Notification | None:
        notification = self.notifications.get(notification_id)
        if notification is None:
            return None
        if not self._claim_free(notification_id, now - timedelta(seconds=lease_seconds)):
            return None
        sendable = (notification.status is NotificationStatus.PENDING and notification.is_due(now)) or (
            notification.is_retryable
        )
        if not sendable:
            return None
        self.claims[notification_id] = _Claim(token, now)
        return notification

    async def release_claim(self, notification_id: str, token: str) -> None:
        claim = self.claims.get(notification_id)
        if claim is not None and claim.token == token:
            del self.claims[notification_id]

    def _append_log(self, notification_id: str, log: NewLogEntry, now: datetime) -> None:
        self.logs.append(
            LogEntry(
                id=str(uuid.uuid4()),
                notification_id=notification_id,
                event=log.event,
                status=log.status,
                message=log.message,
                metadata=log.metadata,
                timestamp=now,
            )
        )

    async def complete_attempt(
        self,
        notification_id: str,
        *,
        token: str,
        update: StatusUpdate,
        log: NewLogEntry,
        now: datetime,
    ) -> Notification | None:
        claim = self.claims.get(notification_id)
        if claim is None or claim.token != token:
            return None
        current = self.notifications[notification_id]
        updated = replace(
            current,
            status=update.status,
            error_message=update.error_message,
            retry_count=current.retry_count + (1 if update.increment_retry else 0),
            sent_at=update.sent_at or current.sent_at,
            provider_message_id=update.provider_message_id or current.provider_message_id,
            updated_at=now,
        )
        assert updated.retry_count <= updated.max_retries
        self.notifications[notification_id] = updated
        del self.claims[notification_id]
        self._append_log(notification_id, log, now)
        return updated

    async def transition_status(
        self,
        notification_id: str,
        *,
        expected: NotificationStatus,
        update: StatusUpdate,
        log: NewLogEntry,
        now: datetime,
    ) -> Notification | None:
        current = self.notifications.get(notification_id)
        if current is None or current.status is not expected:
            return None
        updated = replace(
            current,
            status=update.status,
            delivered_at=update.delivered_at or current.delivered_at,
            updated_at=now,
        )
        self.notifications[notification_id] = updated
        self._append_log(notification_id, log, now)
        return updated

    async def list_log_entries(self, notification_id: str) -> list[LogEntry]:
        return [entry for entry in self.logs if entry.notification_id == notification_id]

    # templates

    async def get_template_by_name(self, name: str) -> Template | None:
        template = self.templates.get(name)
        return template if template is not None and template.is_active else None

    async def insert_template(self, request: TemplateRequest, *, now: datetime) -> Template:
        if request.name in self.templates:
            raise ValidationError(f"Template '{request.name}' already exists", field="name")
        template = Template(
            id=str(uuid.uuid4()),
            name=request.name,
            type=request.type,
            content=request.content,
            created_at=now,
            updated_at=now,
            subject=request.subject,
            variables=request.variables,
        )
        self.templates[template.name] = template
        return template

    # preferences

    async def get_preferences(self, user_id: str) -> Preferences | None:
        return self.preferences.get(user_id)

    async def upsert_preferences(self, update: PreferencesUpdate, *, now: datetime) -> tuple[Preferences, bool]:
        existing = self.preferences.get(update.user_id)
        if existing is None:
            prefs = Preferences(user_id=update.user_id, created_at=now, updated_at=now, **update.changes())
            self.preferences[update.user_id] = prefs
            return prefs, True
        prefs = replace(existing, updated_at=now, **update.changes())
        self.preferences[update.user_id] = prefs
        return prefs, False


class StubDispatcher(ChannelDispatcher):
    """Records every call and answers with a fixed outcome."""

    def __init__(self, channel: NotificationType, outcome: DeliveryOutcome | None = None):
        self.channel = channel
        self.outcome = outcome or DeliveryOutcome.ok(provider_message_id=f"{channel.value}-msg-1")
        self.calls: list[dict[str, Any]] = []

    async def _send(
        self,
        destination: str,
        subject: str | None,
        body: str,
        metadata: Mapping[str, Any],
    ) -> DeliveryOutcome:
        self.calls.append({"destination": destination, "subject": subject, "body": body, "metadata": metadata})
        return self.outcome


class RecordingPublisher:
    def __init__(self, *, fail: bool = False):
        self.fail = fail
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    async def publish(self, topic: str, routing_key: str, payload: Mapping[str, Any]) -> str:
        if self.fail:
            raise PublishError("bus unavailable")
        self.events.append((topic, routing_key, dict(payload)))
        return f"{len(self.events)}-0"

    def keys(self) -> list[str]:
        return [routing_key for _topic, routing_key, _payload in self.events]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryNotificationStore:
    return InMemoryNotificationStore()


@pytest.fixture
def dispatchers() -> dict[NotificationType, StubDispatcher]:
    return {kind: StubDispatcher(kind) for kind in NotificationType}


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def orchestrator(store, dispatchers, publisher, clock) -> DeliveryOrchestrator:
    return DeliveryOrchestrator(store, DispatcherRegistry(dispatchers.values()), publisher, clock=clock)


@pytest.fixture
def user_prefs(store, clock) -> Preferences:
    prefs = Preferences(
        user_id="user-1",
        email_address="user@example.com",
        phone_number="+15550001111",
        push_token="device-token",
        created_at=clock(),
        updated_at=clock(),
    )
    store.preferences[prefs.user_id] = prefs
    return prefs
