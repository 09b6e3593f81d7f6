"""Load notification templates from a JSON file into the database."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path

from dotenv import load_dotenv

from channels import DispatcherRegistry
from notifications import DeliveryOrchestrator, TemplateRequest, ValidationError
from services.db import open_store

DEFAULT_PATH = Path(__file__).resolve().parent.parent / "docs" / "default_templates.json"


async def seed(dsn: str, path: Path) -> None:
    with path.open("r", encoding="utf-8") as fp:
        entries = json.load(fp)
    store = await open_store(dsn)
    orchestrator = DeliveryOrchestrator(store, DispatcherRegistry())
    try:
        for entry in entries:
            request = TemplateRequest.from_payload(entry)
            try:
                template = await orchestrator.create_template(request)
            except ValidationError as exc:
                print(f"{request.name}: skipped ({exc.message})")
                continue
            print(f"{template.name}: created {template.id}")
    finally:
        await store.pool.close()


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed notification templates")
    parser.add_argument("path", nargs="?", default=str(DEFAULT_PATH), help="JSON file with a list of templates")
    return parser.parse_args()


def main() -> None:
    load_dotenv()
    dsn = os.getenv("DB_DSN")
    if not dsn:
        raise SystemExit("DB_DSN is not set")
    args = parse_args()
    asyncio.run(seed(dsn, Path(args.path)))


if __name__ == "__main__":
    main()
