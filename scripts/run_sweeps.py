"""Run the scheduled and/or retry sweep once and print the counts."""

from __future__ import annotations

import argparse
import asyncio
import logging

from channels import build_default_registry
from notifications import DeliveryOrchestrator, SweepResult
from services.config import load_settings
from services.db import open_store


def _format(result: SweepResult) -> str:
    return (
        f"{result.name}: selected {result.selected}, sent {result.sent}, failed {result.failed}, "
        f"skipped {result.skipped}, untouched {result.untouched}, errors {result.errors}"
    )


async def run(which: str, limit: int | None) -> None:
    settings = load_settings()
    store = await open_store(settings.db_dsn)
    registry = build_default_registry(smtp=settings.smtp, twilio=settings.twilio, fcm=settings.fcm)
    orchestrator = DeliveryOrchestrator(
        store,
        registry,
        claim_lease_seconds=settings.claim_lease_seconds,
        sweep_batch_size=limit,
    )
    try:
        if which in ("scheduled", "all"):
            print(_format(await orchestrator.process_scheduled_notifications()))
        if which in ("retry", "all"):
            print(_format(await orchestrator.retry_failed_notifications()))
    finally:
        await registry.close()
        await store.pool.close()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run notification sweeps once")
    parser.add_argument("which", choices=("scheduled", "retry", "all"), nargs="?", default="all")
    parser.add_argument("--limit", type=int, default=None, help="Maximum rows per sweep")
    return parser.parse_args()


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    args = parse_args()
    asyncio.run(run(args.which, args.limit))


if __name__ == "__main__":
    main()
