"""In-app delivery: the stored notification row is what the client reads."""

from __future__ import annotations

from typing import Any, Mapping

from notifications.models import NotificationType

from .base import ChannelDispatcher, DeliveryOutcome


class InAppDispatcher(ChannelDispatcher):
    channel = NotificationType.IN_APP

    async def _send(
        self,
        destination: str,
        subject: str | None,
        body: str,
        metadata: Mapping[str, Any],
    ) -> DeliveryOutcome:
        return DeliveryOutcome.ok(message="In-app notification stored")


__all__ = ["InAppDispatcher"]
