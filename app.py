import asyncio
import logging
import signal

from redis.asyncio import Redis

from channels import build_default_registry
from handlers.events import EventHandlers
from notifications import (
    DeliveryOrchestrator,
    NotificationRules,
    build_sweep_workers,
    load_notification_rules,
    start_delivery_webhook,
)
from services.config import Settings, load_settings
from services.db import open_store
from services.events import RedisEventConsumer, RedisEventPublisher

logger = logging.getLogger(__name__)


def _load_rules(settings: Settings) -> NotificationRules | None:
    try:
        rules = load_notification_rules(settings.rules_path)
    except FileNotFoundError:
        logger.warning("Notification rules file not found: %s", settings.rules_path)
        return None
    except (ValueError, KeyError) as exc:
        logger.exception("Failed to load notification rules: %s", exc)
        return None
    logger.info("Loaded %s inbound notification rules", len(rules.topics))
    return rules


async def main():
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    store = await open_store(settings.db_dsn, min_size=settings.db_pool_min, max_size=settings.db_pool_max)
    redis = Redis.from_url(settings.redis_url) if settings.redis_url else None
    publisher = RedisEventPublisher(redis, stream_prefix=settings.stream_prefix) if redis else None
    if publisher is None:
        logger.info("Event publishing disabled (REDIS_URL not set)")
    registry = build_default_registry(smtp=settings.smtp, twilio=settings.twilio, fcm=settings.fcm)
    orchestrator = DeliveryOrchestrator(
        store,
        registry,
        publisher,
        claim_lease_seconds=settings.claim_lease_seconds,
    )

    scheduled_worker, retry_worker = build_sweep_workers(
        orchestrator,
        scheduled_interval=settings.scheduled_interval,
        retry_interval=settings.retry_interval,
    )
    scheduled_worker.start()
    retry_worker.start()

    webhook = None
    if settings.webhook_port > 0:
        try:
            webhook = await start_delivery_webhook(
                orchestrator,
                host=settings.webhook_host,
                port=settings.webhook_port,
                token=settings.webhook_token,
            )
        except OSError as exc:
            logger.exception("Failed to start delivery webhook server: %s", exc)
    else:
        logger.info("Delivery webhook server disabled (WEBHOOK_PORT not set)")

    consumer = None
    if redis is not None:
        rules = _load_rules(settings) or NotificationRules.empty()
        handlers = EventHandlers(orchestrator, rules)
        consumer = RedisEventConsumer(
            redis,
            handlers.topics,
            handlers,
            group=settings.consumer_group,
            consumer=settings.consumer_name,
            stream_prefix=settings.stream_prefix,
        )
        consumer.start()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    logger.info("Notification service started")
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down notification service")
        if consumer is not None:
            await consumer.stop()
        if webhook is not None:
            await webhook.stop()
        await retry_worker.stop()
        await scheduled_worker.stop()
        await registry.close()
        if redis is not None:
            await redis.aclose()
        await store.pool.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
