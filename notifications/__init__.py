"""Notification engine exports."""

from .errors import (
    NotFoundError,
    NotificationError,
    NotificationNotFoundError,
    PersistenceError,
    PreferencesNotFoundError,
    ProviderError,
    PublishError,
    TemplateNotFoundError,
    ValidationError,
)
from .models import (
    BulkCreateResult,
    LogEntry,
    Notification,
    NotificationPriority,
    NotificationRequest,
    NotificationStatus,
    NotificationType,
    Preferences,
    PreferencesUpdate,
    SweepResult,
    Template,
    TemplateRequest,
)
from .orchestrator import NOTIFICATION_EVENTS_TOPIC, DeliveryOrchestrator, EventPublisher
from .outbox import NotificationStore, ensure_notification_schema
from .preferences import PreferenceGate
from .rules import InboundRule, NotificationRules, load_notification_rules
from .templates import TemplateResolver, render_template
from .worker import SweepWorker, build_sweep_workers
from .webhook import DeliveryWebhookServer, apply_delivery_update, start_delivery_webhook

__all__ = [
    "BulkCreateResult",
    "DeliveryOrchestrator",
    "DeliveryWebhookServer",
    "EventPublisher",
    "InboundRule",
    "LogEntry",
    "NOTIFICATION_EVENTS_TOPIC",
    "NotFoundError",
    "Notification",
    "NotificationError",
    "NotificationNotFoundError",
    "NotificationPriority",
    "NotificationRequest",
    "NotificationRules",
    "NotificationStatus",
    "NotificationStore",
    "NotificationType",
    "PersistenceError",
    "PreferenceGate",
    "Preferences",
    "PreferencesNotFoundError",
    "PreferencesUpdate",
    "ProviderError",
    "PublishError",
    "SweepResult",
    "SweepWorker",
    "Template",
    "TemplateNotFoundError",
    "TemplateRequest",
    "TemplateResolver",
    "ValidationError",
    "apply_delivery_update",
    "build_sweep_workers",
    "ensure_notification_schema",
    "load_notification_rules",
    "render_template",
    "start_delivery_webhook",
]
