"""PostgreSQL persistence for notifications, templates, preferences and logs."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
import json
import logging
from typing import Any, Iterator, Mapping
import uuid

import asyncpg

from .errors import PersistenceError, ValidationError
from .models import (
    LogEntry,
    NewLogEntry,
    NewNotification,
    Notification,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
    Preferences,
    PreferencesUpdate,
    StatusUpdate,
    Template,
    TemplateRequest,
)

logger = logging.getLogger(__name__)

NOTIFICATION_COLUMNS = """
    id, user_id, template_id, type, subject, content, status, priority,
    scheduled_at, sent_at, delivered_at, metadata, error_message,
    provider_message_id, retry_count, max_retries, created_at, updated_at
"""

TEMPLATE_COLUMNS = "id, name, type, subject, content, variables, is_active, created_at, updated_at"

PREFERENCES_COLUMNS = """
    user_id, email_enabled, sms_enabled, push_enabled, in_app_enabled,
    email_address, phone_number, push_token, preferences, created_at, updated_at
"""

LOG_COLUMNS = "id, notification_id, event, status, message, metadata, timestamp"


def _new_id() -> str:
    return str(uuid.uuid4())


def _dump_json(value: Mapping[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(dict(value), ensure_ascii=False, default=str)


def _load_json(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    if isinstance(value, str):
        value = json.loads(value)
    return dict(value)


def _notification_from_row(row: Mapping[str, Any]) -> Notification:
    return Notification(
        id=row["id"],
        user_id=row["user_id"],
        template_id=row["template_id"],
        type=NotificationType(row["type"]),
        subject=row["subject"],
        content=row["content"],
        status=NotificationStatus(row["status"]),
        priority=NotificationPriority(row["priority"]),
        scheduled_at=row["scheduled_at"],
        sent_at=row["sent_at"],
        delivered_at=row["delivered_at"],
        metadata=_load_json(row["metadata"]) or {},
        error_message=row["error_message"],
        provider_message_id=row["provider_message_id"],
        retry_count=row["retry_count"],
        max_retries=row["max_retries"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _template_from_row(row: Mapping[str, Any]) -> Template:
    return Template(
        id=row["id"],
        name=row["name"],
        type=NotificationType(row["type"]),
        subject=row["subject"],
        content=row["content"],
        variables=_load_json(row["variables"]),
        is_active=row["is_active"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _preferences_from_row(row: Mapping[str, Any]) -> Preferences:
    return Preferences(
        user_id=row["user_id"],
        email_enabled=row["email_enabled"],
        sms_enabled=row["sms_enabled"],
        push_enabled=row["push_enabled"],
        in_app_enabled=row["in_app_enabled"],
        email_address=row["email_address"],
        phone_number=row["phone_number"],
        push_token=row["push_token"],
        preferences=_load_json(row["preferences"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _log_from_row(row: Mapping[str, Any]) -> LogEntry:
    return LogEntry(
        id=row["id"],
        notification_id=row["notification_id"],
        event=row["event"],
        status=NotificationStatus(row["status"]),
        message=row["message"],
        metadata=_load_json(row["metadata"]),
        timestamp=row["timestamp"],
    )


@contextmanager
def _translate_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError) as exc:
        logger.error("Database error during %s: %s", action, exc)
        raise PersistenceError(f"{action} failed: {exc}") from exc


async def ensure_notification_schema(conn: asyncpg.Connection) -> None:
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notification_templates (
            id          text PRIMARY KEY,
            name        text NOT NULL UNIQUE,
            type        text NOT NULL CHECK (type IN ('email','sms','push','in-app')),
            subject     text,
            content     text NOT NULL,
            variables   jsonb,
            is_active   boolean NOT NULL DEFAULT true,
            created_at  timestamptz NOT NULL DEFAULT NOW(),
            updated_at  timestamptz NOT NULL DEFAULT NOW()
        );
        """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
            id                   text PRIMARY KEY,
            user_id              text NOT NULL,
            template_id          text REFERENCES notification_templates(id),
            type                 text NOT NULL CHECK (type IN ('email','sms','push','in-app')),
            subject              text,
            content              text NOT NULL,
            status               text NOT NULL DEFAULT 'pending'
                                 CHECK (status IN ('pending','sent','delivered','failed','skipped')),
            priority             text NOT NULL DEFAULT 'normal'
                                 CHECK (priority IN ('low','normal','high','urgent')),
            scheduled_at         timestamptz,
            sent_at              timestamptz,
            delivered_at         timestamptz,
            metadata             jsonb,
            error_message        text,
            provider_message_id  text,
            retry_count          integer NOT NULL DEFAULT 0,
            max_retries          integer NOT NULL DEFAULT 3,
            claim_token          text,
            claimed_at           timestamptz,
            created_at           timestamptz NOT NULL DEFAULT NOW(),
            updated_at           timestamptz NOT NULL DEFAULT NOW(),
            CHECK (retry_count >= 0 AND retry_count <= max_retries)
        );
        """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS user_notification_preferences (
            user_id         text PRIMARY KEY,
            email_enabled   boolean NOT NULL DEFAULT true,
            sms_enabled     boolean NOT NULL DEFAULT true,
            push_enabled    boolean NOT NULL DEFAULT true,
            in_app_enabled  boolean NOT NULL DEFAULT true,
            email_address   text,
            phone_number    text,
            push_token      text,
            preferences     jsonb,
            created_at      timestamptz NOT NULL DEFAULT NOW(),
            updated_at      timestamptz NOT NULL DEFAULT NOW()
        );
        """
    )
    await conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notification_logs (
            id               text PRIMARY KEY,
            notification_id  text NOT NULL REFERENCES notifications(id),
            event            text NOT NULL,
            status           text NOT NULL,
            message          text,
            metadata         jsonb,
            timestamp        timestamptz NOT NULL DEFAULT NOW()
        );
        """
    )
    await conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_notifications_status
        ON notifications(status, scheduled_at);
        """
    )
    await conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_notifications_user
        ON notifications(user_id, created_at DESC);
        """
    )
    await conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_notifications_provider
        ON notifications(provider_message_id)
        WHERE provider_message_id IS NOT NULL;
        """
    )
    await conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_notification_logs_notification
        ON notification_logs(notification_id, timestamp);
        """
    )


async def _insert_log(
    conn: asyncpg.Connection,
    notification_id: str,
    entry: NewLogEntry,
    now: datetime,
) -> None:
    await conn.execute(
        """
        INSERT INTO notification_logs (id, notification_id, event, status, message, metadata, timestamp)
        VALUES ($1,$2,$3,$4,$5,$6::jsonb,$7)
        """,
        _new_id(),
        notification_id,
        entry.event,
        entry.status.value,
        entry.message,
        _dump_json(entry.metadata),
        now,
    )


class NotificationStore:
    """asyncpg-backed store.

    Every status change goes through a conditional ``UPDATE`` and is committed
    in the same transaction as its log entry.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        self.pool = pool

    async def ensure_schema(self) -> None:
        with _translate_errors("schema setup"):
            async with self.pool.acquire() as conn:
                await ensure_notification_schema(conn)

    # notifications

    async def insert_notification(self, new: NewNotification, *, now: datetime) -> Notification:
        with _translate_errors("insert notification"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    INSERT INTO notifications (
                        id, user_id, template_id, type, subject, content, status, priority,
                        scheduled_at, metadata, max_retries, created_at, updated_at
                    )
                    VALUES ($1,$2,$3,$4,$5,$6,'pending',$7,$8,$9::jsonb,$10,$11,$11)
                    RETURNING {NOTIFICATION_COLUMNS}
                    """,
                    _new_id(),
                    new.user_id,
                    new.template_id,
                    new.type.value,
                    new.subject,
                    new.content,
                    new.priority.value,
                    new.scheduled_at,
                    _dump_json(new.metadata),
                    new.max_retries,
                    now,
                )
        return _notification_from_row(row)

    async def get_notification(self, notification_id: str) -> Notification | None:
        with _translate_errors("load notification"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {NOTIFICATION_COLUMNS} FROM notifications WHERE id=$1",
                    notification_id,
                )
        return _notification_from_row(row) if row else None

    async def find_by_provider_message_id(self, provider_message_id: str) -> Notification | None:
        with _translate_errors("load notification by provider id"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    SELECT {NOTIFICATION_COLUMNS}
                    FROM notifications
                    WHERE provider_message_id=$1
                    ORDER BY created_at DESC
                    LIMIT 1
                    """,
                    provider_message_id,
                )
        return _notification_from_row(row) if row else None

    async def list_user_notifications(self, user_id: str, limit: int, offset: int) -> list[Notification]:
        with _translate_errors("list notifications"):
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {NOTIFICATION_COLUMNS}
                    FROM notifications
                    WHERE user_id=$1
                    ORDER BY created_at DESC, id DESC
                    LIMIT $2 OFFSET $3
                    """,
                    user_id,
                    limit,
                    offset,
                )
        return [_notification_from_row(row) for row in rows]

    async def fetch_due_scheduled(
        self,
        *,
        now: datetime,
        lease_seconds: float,
        limit: int | None = None,
    ) -> list[Notification]:
        """Pending rows that are due, plus immediate rows abandoned longer than a lease."""
        stale_before = now - timedelta(seconds=lease_seconds)
        with _translate_errors("select scheduled notifications"):
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {NOTIFICATION_COLUMNS}
                    FROM notifications
                    WHERE status='pending'
                      AND (claim_token IS NULL OR claimed_at < $2)
                      AND (
                            scheduled_at <= $1
                         OR (scheduled_at IS NULL AND created_at <= $2)
                      )
                    ORDER BY COALESCE(scheduled_at, created_at), id
                    LIMIT $3
                    """,
                    now,
                    stale_before,
                    limit,
                )
        return [_notification_from_row(row) for row in rows]

    async def fetch_retryable(
        self,
        *,
        now: datetime,
        lease_seconds: float,
        limit: int | None = None,
    ) -> list[Notification]:
        stale_before = now - timedelta(seconds=lease_seconds)
        with _translate_errors("select failed notifications"):
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {NOTIFICATION_COLUMNS}
                    FROM notifications
                    WHERE status='failed'
                      AND retry_count < max_retries
                      AND (claim_token IS NULL OR claimed_at < $1)
                    ORDER BY updated_at, id
                    LIMIT $2
                    """,
                    stale_before,
                    limit,
                )
        return [_notification_from_row(row) for row in rows]

    async def claim_notification(
        self,
        notification_id: str,
        *,
        token: str,
        now: datetime,
        lease_seconds: float,
    ) -> Notification | None:
        """Take the dispatch lease on a sendable row; ``None`` if someone else holds it."""
        stale_before = now - timedelta(seconds=lease_seconds)
        with _translate_errors("claim notification"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"""
                    UPDATE notifications
                    SET claim_token=$2,
                        claimed_at=$3
                    WHERE id=$1
                      AND (claim_token IS NULL OR claimed_at < $4)
                      AND (
                            (status='pending' AND (scheduled_at IS NULL OR scheduled_at <= $3))
                         OR (status='failed' AND retry_count < max_retries)
                      )
                    RETURNING {NOTIFICATION_COLUMNS}
                    """,
                    notification_id,
                    token,
                    now,
                    stale_before,
                )
        return _notification_from_row(row) if row else None

    async def release_claim(self, notification_id: str, token: str) -> None:
        with _translate_errors("release claim"):
            async with self.pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE notifications
                    SET claim_token=NULL,
                        claimed_at=NULL
                    WHERE id=$1 AND claim_token=$2
                    """,
                    notification_id,
                    token,
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
        """Record the result of a claimed attempt; ``None`` if the lease was lost."""
        with _translate_errors("record delivery attempt"):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        UPDATE notifications
                        SET status=$3,
                            error_message=$4,
                            retry_count = retry_count + $5,
                            sent_at = COALESCE($6, sent_at),
                            provider_message_id = COALESCE($7, provider_message_id),
                            claim_token=NULL,
                            claimed_at=NULL,
                            updated_at=$8
                        WHERE id=$1 AND claim_token=$2
                        RETURNING {NOTIFICATION_COLUMNS}
                        """,
                        notification_id,
                        token,
                        update.status.value,
                        update.error_message,
                        1 if update.increment_retry else 0,
                        update.sent_at,
                        update.provider_message_id,
                        now,
                    )
                    if row is None:
                        return None
                    await _insert_log(conn, notification_id, log, now)
        return _notification_from_row(row)

    async def transition_status(
        self,
        notification_id: str,
        *,
        expected: NotificationStatus,
        update: StatusUpdate,
        log: NewLogEntry,
        now: datetime,
    ) -> Notification | None:
        """Compare-and-set a status change outside the dispatch path."""
        with _translate_errors("update notification status"):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        UPDATE notifications
                        SET status=$3,
                            delivered_at = COALESCE($4, delivered_at),
                            updated_at=$5
                        WHERE id=$1 AND status=$2
                        RETURNING {NOTIFICATION_COLUMNS}
                        """,
                        notification_id,
                        expected.value,
                        update.status.value,
                        update.delivered_at,
                        now,
                    )
                    if row is None:
                        return None
                    await _insert_log(conn, notification_id, log, now)
        return _notification_from_row(row)

    async def list_log_entries(self, notification_id: str) -> list[LogEntry]:
        with _translate_errors("list notification logs"):
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT {LOG_COLUMNS}
                    FROM notification_logs
                    WHERE notification_id=$1
                    ORDER BY timestamp, id
                    """,
                    notification_id,
                )
        return [_log_from_row(row) for row in rows]

    # templates

    async def get_template_by_name(self, name: str) -> Template | None:
        with _translate_errors("load template"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {TEMPLATE_COLUMNS} FROM notification_templates WHERE name=$1 AND is_active",
                    name,
                )
        return _template_from_row(row) if row else None

    async def insert_template(self, request: TemplateRequest, *, now: datetime) -> Template:
        try:
            with _translate_errors("insert template"):
                async with self.pool.acquire() as conn:
                    row = await conn.fetchrow(
                        f"""
                        INSERT INTO notification_templates (id, name, type, subject, content, variables, created_at, updated_at)
                        VALUES ($1,$2,$3,$4,$5,$6::jsonb,$7,$7)
                        RETURNING {TEMPLATE_COLUMNS}
                        """,
                        _new_id(),
                        request.name,
                        request.type.value,
                        request.subject,
                        request.content,
                        _dump_json(request.variables),
                        now,
                    )
        except PersistenceError as exc:
            if isinstance(exc.__cause__, asyncpg.UniqueViolationError):
                raise ValidationError(f"Template '{request.name}' already exists", field="name") from exc
            raise
        return _template_from_row(row)

    # preferences

    async def get_preferences(self, user_id: str) -> Preferences | None:
        with _translate_errors("load preferences"):
            async with self.pool.acquire() as conn:
                row = await conn.fetchrow(
                    f"SELECT {PREFERENCES_COLUMNS} FROM user_notification_preferences WHERE user_id=$1",
                    user_id,
                )
        return _preferences_from_row(row) if row else None

    async def upsert_preferences(self, update: PreferencesUpdate, *, now: datetime) -> tuple[Preferences, bool]:
        """Create or partially update preferences; the flag tells whether a row was created."""
        changes = update.changes()
        with _translate_errors("save preferences"):
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        "SELECT user_id FROM user_notification_preferences WHERE user_id=$1 FOR UPDATE",
                        update.user_id,
                    )
                    if existing is None:
                        row = await conn.fetchrow(
                            f"""
                            INSERT INTO user_notification_preferences (
                                user_id, email_enabled, sms_enabled, push_enabled, in_app_enabled,
                                email_address, phone_number, push_token, preferences, created_at, updated_at
                            )
                            VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9::jsonb,$10,$10)
                            ON CONFLICT (user_id) DO NOTHING
                            RETURNING {PREFERENCES_COLUMNS}
                            """,
                            update.user_id,
                            changes.get("email_enabled", True),
                            changes.get("sms_enabled", True),
                            changes.get("push_enabled", True),
                            changes.get("in_app_enabled", True),
                            update.email_address,
                            update.phone_number,
                            update.push_token,
                            _dump_json(update.preferences),
                            now,
                        )
                        if row is not None:
                            return _preferences_from_row(row), True

                    updates: list[str] = []
                    params: list[Any] = []
                    param_idx = 1
                    for column, value in changes.items():
                        if column == "preferences":
                            updates.append(f"preferences = ${param_idx}::jsonb")
                            params.append(_dump_json(value))
                        else:
                            updates.append(f"{column} = ${param_idx}")
                            params.append(value)
                        param_idx += 1
                    updates.append(f"updated_at = ${param_idx}")
                    params.append(now)
                    param_idx += 1
                    params.append(update.user_id)
                    sql = (
                        "UPDATE user_notification_preferences SET "
                        + ", ".join(updates)
                        + f" WHERE user_id = ${param_idx} RETURNING {PREFERENCES_COLUMNS}"
                    )
                    row = await conn.fetchrow(sql, *params)
        return _preferences_from_row(row), False


__all__ = [
    "NotificationStore",
    "ensure_notification_schema",
]
