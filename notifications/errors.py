"""Error taxonomy for the notification engine."""

from __future__ import annotations

from typing import Any


class NotificationError(Exception):
    """Base class for every error raised by the notification engine."""


class ValidationError(NotificationError):
    """Raised when a caller request is malformed. Nothing is persisted."""

    def __init__(self, message: str, *, field: str | None = None):
        super().__init__(message)
        self.message = message
        self.field = field


class NotFoundError(NotificationError):
    """Raised when a referenced record does not exist."""

    kind = "record"

    def __init__(self, key: str):
        super().__init__(f"{self.kind} '{key}' not found")
        self.key = key


class TemplateNotFoundError(NotFoundError):
    kind = "Template"


class PreferencesNotFoundError(NotFoundError):
    kind = "Notification preferences for user"


class NotificationNotFoundError(NotFoundError):
    kind = "Notification"


class ProviderError(NotificationError):
    """Raised by provider clients; dispatchers turn it into a failed outcome."""

    def __init__(self, status: int, message: str, details: Any | None = None):
        super().__init__(f"Provider error {status}: {message}")
        self.status = status
        self.message = message
        self.details = details


class PersistenceError(NotificationError):
    """Raised when the store is unavailable or rejects a write."""


class PublishError(NotificationError):
    """Raised when an integration event could not be handed to the bus."""


__all__ = [
    "NotificationError",
    "ValidationError",
    "NotFoundError",
    "TemplateNotFoundError",
    "PreferencesNotFoundError",
    "NotificationNotFoundError",
    "ProviderError",
    "PersistenceError",
    "PublishError",
]
