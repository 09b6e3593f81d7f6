"""Periodic sweep workers driving scheduled and failed notifications."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable

from .models import SweepResult

if TYPE_CHECKING:
    from .orchestrator import DeliveryOrchestrator

logger = logging.getLogger(__name__)

DEFAULT_SCHEDULED_INTERVAL = 60.0
DEFAULT_RETRY_INTERVAL = 300.0

Sweep = Callable[[], Awaitable[SweepResult]]


class SweepWorker:
    """Runs one sweep on a fixed interval as a cancellable asyncio task."""

    def __init__(self, name: str, sweep: Sweep, *, interval: float) -> None:
        self.name = name
        self.sweep = sweep
        self.interval = interval
        self._task: asyncio.Task | None = None
        self._stopping = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._stopping = False
            self._task = asyncio.create_task(self.run(), name=f"{self.name}-sweep")
        return self._task

    async def stop(self) -> None:
        self._stopping = True
        task, self._task = self._task, None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:  # noqa: PERF203 - expected flow
                pass

    async def run_once(self) -> SweepResult:
        return await self.sweep()

    async def run(self) -> None:
        logger.info("%s sweep worker started (every %ss)", self.name, self.interval)
        try:
            while not self._stopping:
                try:
                    await self.run_once()
                except asyncio.CancelledError:
                    raise
                except Exception:  # noqa: BLE001
                    logger.exception("%s sweep iteration failed", self.name)
                await asyncio.sleep(self.interval)
        except asyncio.CancelledError:
            logger.info("%s sweep worker cancelled", self.name)
            raise
        finally:
            logger.info("%s sweep worker stopped", self.name)


def build_sweep_workers(
    orchestrator: "DeliveryOrchestrator",
    *,
    scheduled_interval: float = DEFAULT_SCHEDULED_INTERVAL,
    retry_interval: float = DEFAULT_RETRY_INTERVAL,
) -> tuple[SweepWorker, SweepWorker]:
    return (
        SweepWorker("scheduled", orchestrator.process_scheduled_notifications, interval=scheduled_interval),
        SweepWorker("retry", orchestrator.retry_failed_notifications, interval=retry_interval),
    )


__all__ = [
    "DEFAULT_RETRY_INTERVAL",
    "DEFAULT_SCHEDULED_INTERVAL",
    "SweepWorker",
    "build_sweep_workers",
]
