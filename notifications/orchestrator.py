"""Delivery orchestration: create, send, sweeps and the status state machine."""

from __future__ import annotations

import asyncio
from datetime import datetime
import logging
from typing import TYPE_CHECKING, Any, Callable, Mapping, Protocol, Sequence
import uuid

from .errors import (
    NotificationNotFoundError,
    PersistenceError,
    PreferencesNotFoundError,
    PublishError,
    TemplateNotFoundError,
    ValidationError,
)
from .models import (
    BulkCreateResult,
    LogEntry,
    NewLogEntry,
    NewNotification,
    Notification,
    NotificationRequest,
    NotificationStatus,
    Preferences,
    PreferencesUpdate,
    StatusUpdate,
    SweepResult,
    Template,
    TemplateRequest,
    now_utc,
)
from .preferences import PreferenceGate
from .templates import TemplateResolver

if TYPE_CHECKING:
    from channels.base import DeliveryOutcome, DispatcherRegistry

    from .outbox import NotificationStore

logger = logging.getLogger(__name__)

NOTIFICATION_EVENTS_TOPIC = "notification.events"
DEFAULT_CLAIM_LEASE_SECONDS = 300.0
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
MISSING_PREFERENCES_MESSAGE = "User notification preferences not found"


class EventPublisher(Protocol):
    async def publish(self, topic: str, routing_key: str, payload: Mapping[str, Any]) -> str:
        ...


class DeliveryOrchestrator:
    """Owns every status transition of a notification.

    ``send`` first takes a per-row claim in the store, so concurrent callers
    (request path, scheduled sweep, retry sweep) never dispatch the same row
    twice and never double count ``retry_count``.
    """

    def __init__(
        self,
        store: "NotificationStore",
        dispatchers: "DispatcherRegistry",
        publisher: EventPublisher | None = None,
        *,
        clock: Callable[[], datetime] = now_utc,
        claim_lease_seconds: float = DEFAULT_CLAIM_LEASE_SECONDS,
        sweep_batch_size: int | None = None,
    ) -> None:
        self.store = store
        self.dispatchers = dispatchers
        self.publisher = publisher
        self.clock = clock
        self.claim_lease_seconds = claim_lease_seconds
        self.sweep_batch_size = sweep_batch_size
        self.templates = TemplateResolver(store)
        self.preferences = PreferenceGate(store)

    # creation

    async def create(self, request: NotificationRequest) -> Notification:
        template_id: str | None = None
        subject = request.subject
        content = request.content
        if request.template_name:
            template = await self.templates.resolve(request.template_name)
            if template is not None:
                template_id = template.id
                rendered_subject, content = self.templates.render(template, request.template_variables)
                subject = rendered_subject if rendered_subject is not None else subject
            else:
                logger.warning(
                    "Template %s unavailable; using raw content for user %s",
                    request.template_name,
                    request.user_id,
                )
        if not content:
            raise ValidationError("content is required when no template is found", field="content")

        now = self.clock()
        notification = await self.store.insert_notification(
            NewNotification(
                user_id=request.user_id,
                type=request.type,
                content=content,
                priority=request.priority,
                max_retries=request.max_retries,
                template_id=template_id,
                subject=subject,
                scheduled_at=request.scheduled_at,
                metadata=dict(request.metadata),
            ),
            now=now,
        )
        if notification.scheduled_at is not None and notification.scheduled_at > now:
            logger.info("Notification %s scheduled for %s", notification.id, notification.scheduled_at.isoformat())
            return notification
        return await self.send(notification)

    async def create_many(self, requests: Sequence[NotificationRequest | Mapping[str, Any]]) -> BulkCreateResult:
        result = BulkCreateResult()
        for index, item in enumerate(requests):
            try:
                request = item if isinstance(item, NotificationRequest) else NotificationRequest.from_payload(item)
                result.created.append(await self.create(request))
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Bulk notification item %s failed", index)
                result.errors.append((index, str(exc)))
        logger.info("Bulk create: %s/%s successful", result.succeeded, len(requests))
        return result

    # dispatch

    async def send(self, notification: Notification) -> Notification:
        token = uuid.uuid4().hex
        claimed = await self.store.claim_notification(
            notification.id,
            token=token,
            now=self.clock(),
            lease_seconds=self.claim_lease_seconds,
        )
        if claimed is None:
            logger.info(
                "Notification %s is not claimable (last seen %s); skipping",
                notification.id,
                notification.status.value,
            )
            current = await self.store.get_notification(notification.id)
            return current or notification
        try:
            return await self._attempt(claimed, token)
        except BaseException:
            await self._release(claimed.id, token)
            raise

    async def _attempt(self, notification: Notification, token: str) -> Notification:
        prefs = await self.preferences.get(notification.user_id)
        if prefs is None:
            await self._complete(
                notification,
                token,
                StatusUpdate(
                    status=NotificationStatus.FAILED,
                    message=MISSING_PREFERENCES_MESSAGE,
                    error_message=MISSING_PREFERENCES_MESSAGE,
                    increment_retry=True,
                ),
            )
            raise PreferencesNotFoundError(notification.user_id)

        if not self.preferences.is_enabled(notification.type, prefs):
            reason = self.preferences.skip_reason(notification.type, prefs)
            return await self._complete(
                notification,
                token,
                StatusUpdate(status=NotificationStatus.SKIPPED, message=reason, error_message=reason),
            )

        destination = self.preferences.destination_for(notification.type, prefs) or ""
        outcome = await self._dispatch(notification, destination)
        if outcome.success:
            update = StatusUpdate(
                status=NotificationStatus.SENT,
                message=outcome.message or "Notification sent",
                sent_at=self.clock(),
                provider_message_id=outcome.provider_message_id,
            )
        else:
            detail = outcome.error_detail or "Delivery failed"
            update = StatusUpdate(
                status=NotificationStatus.FAILED,
                message=detail,
                error_message=detail,
                increment_retry=True,
            )
        updated = await self._complete(notification, token, update, outcome.as_dict())
        if updated.status is NotificationStatus.SENT and update.status is NotificationStatus.SENT:
            await self._publish(
                "sent",
                {
                    "notificationId": updated.id,
                    "userId": updated.user_id,
                    "type": updated.type.value,
                    "timestamp": self.clock().isoformat(),
                },
            )
        return updated

    async def _dispatch(self, notification: Notification, destination: str) -> "DeliveryOutcome":
        from channels.base import DeliveryOutcome

        dispatcher = self.dispatchers.get(notification.type)
        if dispatcher is None:
            return DeliveryOutcome.failure(f"No dispatcher registered for {notification.type.value}")
        return await dispatcher.deliver(
            destination,
            notification.subject,
            notification.content,
            notification.metadata,
        )

    async def _complete(
        self,
        notification: Notification,
        token: str,
        update: StatusUpdate,
        metadata: Mapping[str, Any] | None = None,
    ) -> Notification:
        updated = await self.store.complete_attempt(
            notification.id,
            token=token,
            update=update,
            log=NewLogEntry.for_update(update, metadata),
            now=self.clock(),
        )
        if updated is None:
            logger.warning(
                "Claim on notification %s expired before %s could be recorded",
                notification.id,
                update.status.value,
            )
            current = await self.store.get_notification(notification.id)
            return current or notification
        logger.info("Notification %s -> %s", updated.id, updated.status.value)
        return updated

    async def _release(self, notification_id: str, token: str) -> None:
        try:
            await self.store.release_claim(notification_id, token)
        except PersistenceError:
            logger.warning("Could not release claim on %s; it expires with its lease", notification_id)

    async def _publish(self, routing_key: str, payload: Mapping[str, Any]) -> None:
        if self.publisher is None:
            return
        try:
            await self.publisher.publish(NOTIFICATION_EVENTS_TOPIC, routing_key, payload)
        except PublishError:
            logger.exception("Failed to publish %s event", routing_key)

    # sweeps

    async def retry_failed_notifications(self) -> SweepResult:
        rows = await self.store.fetch_retryable(
            now=self.clock(),
            lease_seconds=self.claim_lease_seconds,
            limit=self.sweep_batch_size,
        )
        return await self._sweep("retry", rows)

    async def process_scheduled_notifications(self) -> SweepResult:
        rows = await self.store.fetch_due_scheduled(
            now=self.clock(),
            lease_seconds=self.claim_lease_seconds,
            limit=self.sweep_batch_size,
        )
        return await self._sweep("scheduled", rows)

    async def _sweep(self, name: str, rows: Sequence[Notification]) -> SweepResult:
        result = SweepResult(name=name, selected=len(rows))
        for row in rows:
            try:
                updated = await self.send(row)
            except asyncio.CancelledError:
                raise
            except Exception:  # noqa: BLE001
                result.errors += 1
                logger.exception("%s sweep failed for notification %s", name, row.id)
                continue
            result.record(updated)
        if rows:
            logger.info(
                "%s sweep: selected=%s sent=%s failed=%s skipped=%s errors=%s",
                name,
                result.selected,
                result.sent,
                result.failed,
                result.skipped,
                result.errors,
            )
        return result

    # provider callbacks

    async def mark_delivered(
        self,
        *,
        notification_id: str | None = None,
        provider_message_id: str | None = None,
        delivered_at: datetime | None = None,
    ) -> Notification:
        if notification_id:
            notification = await self.store.get_notification(notification_id)
        elif provider_message_id:
            notification = await self.store.find_by_provider_message_id(provider_message_id)
        else:
            raise ValidationError("notificationId or providerMessageId is required")
        if notification is None:
            raise NotificationNotFoundError(notification_id or provider_message_id or "")
        if notification.status is NotificationStatus.DELIVERED:
            return notification
        if notification.status is not NotificationStatus.SENT:
            logger.warning(
                "Ignoring delivery receipt for notification %s in status %s",
                notification.id,
                notification.status.value,
            )
            return notification

        update = StatusUpdate(
            status=NotificationStatus.DELIVERED,
            message="Delivery confirmed by provider",
            delivered_at=delivered_at or self.clock(),
        )
        updated = await self.store.transition_status(
            notification.id,
            expected=NotificationStatus.SENT,
            update=update,
            log=NewLogEntry.for_update(update, {"provider_message_id": notification.provider_message_id}),
            now=self.clock(),
        )
        if updated is None:
            current = await self.store.get_notification(notification.id)
            return current or notification
        logger.info("Notification %s delivered", updated.id)
        return updated

    # queries

    async def get_notification(self, notification_id: str) -> Notification:
        notification = await self.store.get_notification(notification_id)
        if notification is None:
            raise NotificationNotFoundError(notification_id)
        return notification

    async def get_user_notifications(
        self,
        user_id: str,
        limit: int = DEFAULT_PAGE_SIZE,
        offset: int = 0,
    ) -> list[Notification]:
        if not 1 <= limit <= MAX_PAGE_SIZE:
            raise ValidationError(f"limit must be between 1 and {MAX_PAGE_SIZE}", field="limit")
        if offset < 0:
            raise ValidationError("offset must not be negative", field="offset")
        return await self.store.list_user_notifications(user_id, limit, offset)

    async def get_notification_logs(self, notification_id: str) -> list[LogEntry]:
        await self.get_notification(notification_id)
        return await self.store.list_log_entries(notification_id)

    # templates and preferences

    async def create_template(self, request: TemplateRequest) -> Template:
        template = await self.store.insert_template(request, now=self.clock())
        logger.info("Template created: %s (%s)", template.name, template.id)
        await self._publish(
            "template.created",
            {
                "templateId": template.id,
                "name": template.name,
                "type": template.type.value,
                "timestamp": self.clock().isoformat(),
            },
        )
        return template

    async def get_template(self, name: str) -> Template:
        template = await self.templates.resolve(name)
        if template is None:
            raise TemplateNotFoundError(name)
        return template

    async def get_user_preferences(self, user_id: str) -> Preferences:
        prefs = await self.preferences.get(user_id)
        if prefs is None:
            raise PreferencesNotFoundError(user_id)
        return prefs

    async def update_user_preferences(self, update: PreferencesUpdate) -> Preferences:
        prefs, created = await self.store.upsert_preferences(update, now=self.clock())
        if created:
            logger.info("Notification preferences created for user %s", update.user_id)
        else:
            await self._publish(
                "preferences.updated",
                {"userId": update.user_id, "timestamp": self.clock().isoformat()},
            )
        return prefs


__all__ = [
    "DEFAULT_CLAIM_LEASE_SECONDS",
    "DeliveryOrchestrator",
    "EventPublisher",
    "MISSING_PREFERENCES_MESSAGE",
    "NOTIFICATION_EVENTS_TOPIC",
]
