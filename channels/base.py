"""Delivery capability shared by every channel."""

from __future__ import annotations

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass, field
import logging
from typing import Any, Iterable, Iterator, Mapping, Sequence

from notifications.models import NotificationType

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class DeliveryOutcome:
    success: bool
    provider_message_id: str | None = None
    error_detail: str | None = None
    message: str | None = None

    @classmethod
    def ok(cls, provider_message_id: str | None = None, message: str | None = None) -> "DeliveryOutcome":
        return cls(success=True, provider_message_id=provider_message_id, message=message)

    @classmethod
    def failure(cls, error_detail: str) -> "DeliveryOutcome":
        return cls(success=False, error_detail=error_detail, message=error_detail)

    def as_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "provider_message_id": self.provider_message_id,
            "error_detail": self.error_detail,
            "message": self.message,
        }


@dataclass(slots=True, frozen=True)
class DeliveryItem:
    destination: str
    body: str
    subject: str | None = None
    metadata: Mapping[str, Any] | None = None


@dataclass(slots=True, frozen=True)
class BulkDeliveryOutcome:
    outcomes: tuple[DeliveryOutcome, ...] = field(default_factory=tuple)

    @property
    def success(self) -> bool:
        return all(outcome.success for outcome in self.outcomes)

    @property
    def succeeded(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.success)


class ChannelDispatcher(ABC):
    """One external provider behind ``deliver``.

    Subclasses implement ``_send`` and may raise anything; ``deliver`` turns
    every provider failure into a failed ``DeliveryOutcome``.
    """

    channel: NotificationType

    async def deliver(
        self,
        destination: str,
        subject: str | None,
        body: str,
        metadata: Mapping[str, Any] | None = None,
    ) -> DeliveryOutcome:
        try:
            return await self._send(destination, subject, body, metadata or {})
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.warning("%s delivery to %s failed: %s", self.channel.value, destination, exc)
            return DeliveryOutcome.failure(str(exc) or exc.__class__.__name__)

    async def deliver_bulk(self, items: Sequence[DeliveryItem]) -> BulkDeliveryOutcome:
        outcomes: list[DeliveryOutcome] = []
        for item in items:
            outcomes.append(await self.deliver(item.destination, item.subject, item.body, item.metadata))
        result = BulkDeliveryOutcome(outcomes=tuple(outcomes))
        logger.info("Bulk %s sent: %s/%s successful", self.channel.value, result.succeeded, len(items))
        return result

    @abstractmethod
    async def _send(
        self,
        destination: str,
        subject: str | None,
        body: str,
        metadata: Mapping[str, Any],
    ) -> DeliveryOutcome:
        raise NotImplementedError

    async def close(self) -> None:
        return None


class DispatcherRegistry:
    """Dispatchers keyed by channel type."""

    def __init__(self, dispatchers: Iterable[ChannelDispatcher] = ()) -> None:
        self._dispatchers: dict[NotificationType, ChannelDispatcher] = {}
        for dispatcher in dispatchers:
            self.register(dispatcher)

    def register(self, dispatcher: ChannelDispatcher) -> None:
        if dispatcher.channel in self._dispatchers:
            logger.info("Replacing %s dispatcher", dispatcher.channel.value)
        self._dispatchers[dispatcher.channel] = dispatcher

    def get(self, channel: NotificationType) -> ChannelDispatcher | None:
        return self._dispatchers.get(channel)

    def __contains__(self, channel: object) -> bool:
        return channel in self._dispatchers

    def __iter__(self) -> Iterator[ChannelDispatcher]:
        return iter(self._dispatchers.values())

    async def close(self) -> None:
        for dispatcher in self._dispatchers.values():
            try:
                await dispatcher.close()
            except Exception:  # noqa: BLE001
                logger.exception("Failed to close %s dispatcher", dispatcher.channel.value)


__all__ = [
    "BulkDeliveryOutcome",
    "ChannelDispatcher",
    "DeliveryItem",
    "DeliveryOutcome",
    "DispatcherRegistry",
]
