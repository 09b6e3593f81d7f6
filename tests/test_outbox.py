"""NotificationStore against a mocked asyncpg pool: SQL guards, parameters and error mapping."""

from __future__ import annotations

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import asyncpg
import pytest

from conftest import T0
from notifications import (
    NotificationStatus,
    NotificationType,
    PersistenceError,
    PreferencesUpdate,
    TemplateRequest,
    ValidationError,
)
from notifications.models import NewLogEntry, StatusUpdate
from notifications.outbox import NotificationStore

LEASE_SECONDS = 300


class _Context:
    def __init__(self, value=None):
        self.value = value

    async def __aenter__(self):
        return self.value

    async def __aexit__(self, *exc_info):
        return False


def _notification_row(**overrides) -> dict:
    row = {
        "id": "n-1",
        "user_id": "user-1",
        "template_id": None,
        "type": "email",
        "subject": "Hi",
        "content": "<p>Hello</p>",
        "status": "pending",
        "priority": "normal",
        "scheduled_at": None,
        "sent_at": None,
        "delivered_at": None,
        "metadata": "{}",
        "error_message": None,
        "provider_message_id": None,
        "retry_count": 0,
        "max_retries": 3,
        "created_at": T0,
        "updated_at": T0,
    }
    row.update(overrides)
    return row


def _preferences_row(**overrides) -> dict:
    row = {
        "user_id": "user-1",
        "email_enabled": True,
        "sms_enabled": True,
        "push_enabled": True,
        "in_app_enabled": True,
        "email_address": "user@example.com",
        "phone_number": None,
        "push_token": None,
        "preferences": None,
        "created_at": T0,
        "updated_at": T0,
    }
    row.update(overrides)
    return row


def _flatten(sql: str) -> str:
    return " ".join(sql.split())


@pytest.fixture
def conn():
    connection = MagicMock()
    connection.fetchrow = AsyncMock(return_value=None)
    connection.fetch = AsyncMock(return_value=[])
    connection.execute = AsyncMock(return_value="INSERT 0 1")
    connection.transaction = MagicMock(return_value=_Context())
    return connection


@pytest.fixture
def pg_store(conn):
    pool = MagicMock()
    pool.acquire = MagicMock(return_value=_Context(conn))
    return NotificationStore(pool)


@pytest.mark.asyncio
async def test_claim_requires_free_or_stale_lease_and_sendable_status(pg_store, conn):
    conn.fetchrow.return_value = _notification_row()

    claimed = await pg_store.claim_notification("n-1", token="tok-1", now=T0, lease_seconds=LEASE_SECONDS)

    assert claimed is not None and claimed.id == "n-1"
    sql, *args = conn.fetchrow.await_args.args
    sql = _flatten(sql)
    assert "WHERE id=$1 AND (claim_token IS NULL OR claimed_at < $4)" in sql
    assert "(status='pending' AND (scheduled_at IS NULL OR scheduled_at <= $3))" in sql
    assert "(status='failed' AND retry_count < max_retries)" in sql
    assert args == ["n-1", "tok-1", T0, T0 - timedelta(seconds=LEASE_SECONDS)]


@pytest.mark.asyncio
async def test_claim_returns_none_when_row_is_held(pg_store, conn):
    assert await pg_store.claim_notification("n-1", token="tok-1", now=T0, lease_seconds=LEASE_SECONDS) is None


@pytest.mark.asyncio
async def test_complete_attempt_checks_token_and_increments_retry_in_sql(pg_store, conn):
    conn.fetchrow.return_value = _notification_row(status="failed", retry_count=1, error_message="boom")
    update = StatusUpdate(status=NotificationStatus.FAILED, error_message="boom", increment_retry=True)

    result = await pg_store.complete_attempt(
        "n-1", token="tok-1", update=update, log=NewLogEntry.for_update(update), now=T0
    )

    assert result.status is NotificationStatus.FAILED
    assert result.retry_count == 1
    sql, *args = conn.fetchrow.await_args.args
    sql = _flatten(sql)
    assert "WHERE id=$1 AND claim_token=$2" in sql
    assert "retry_count = retry_count + $5" in sql
    assert "claim_token=NULL" in sql
    assert args[:5] == ["n-1", "tok-1", "failed", "boom", 1]
    conn.transaction.assert_called_once()
    log_sql, *log_args = conn.execute.await_args.args
    assert "INSERT INTO notification_logs" in log_sql
    assert log_args[1:4] == ["n-1", "failed", "failed"]


@pytest.mark.asyncio
async def test_complete_attempt_without_retry_passes_zero(pg_store, conn):
    conn.fetchrow.return_value = _notification_row(status="sent", sent_at=T0, provider_message_id="prov-1")
    update = StatusUpdate(status=NotificationStatus.SENT, sent_at=T0, provider_message_id="prov-1")

    await pg_store.complete_attempt("n-1", token="tok-1", update=update, log=NewLogEntry.for_update(update), now=T0)

    args = conn.fetchrow.await_args.args[1:]
    assert args[4] == 0
    assert args[5] == T0
    assert args[6] == "prov-1"


@pytest.mark.asyncio
async def test_complete_attempt_with_lost_lease_writes_no_log(pg_store, conn):
    update = StatusUpdate(status=NotificationStatus.SENT, sent_at=T0)

    result = await pg_store.complete_attempt(
        "n-1", token="stale", update=update, log=NewLogEntry.for_update(update), now=T0
    )

    assert result is None
    conn.execute.assert_not_awaited()


@pytest.mark.asyncio
async def test_due_scheduled_selects_due_and_abandoned_pending_rows(pg_store, conn):
    conn.fetch.return_value = [_notification_row(scheduled_at=T0 - timedelta(minutes=1))]

    due = await pg_store.fetch_due_scheduled(now=T0, lease_seconds=LEASE_SECONDS, limit=50)

    assert [n.id for n in due] == ["n-1"]
    assert due[0].type is NotificationType.EMAIL
    sql, *args = conn.fetch.await_args.args
    sql = _flatten(sql)
    assert "WHERE status='pending'" in sql
    assert "scheduled_at <= $1 OR (scheduled_at IS NULL AND created_at <= $2)" in sql
    assert "LIMIT $3" in sql
    assert args == [T0, T0 - timedelta(seconds=LEASE_SECONDS), 50]


@pytest.mark.asyncio
async def test_retryable_selects_failed_rows_under_budget(pg_store, conn):
    await pg_store.fetch_retryable(now=T0, lease_seconds=LEASE_SECONDS, limit=10)

    sql, *args = conn.fetch.await_args.args
    sql = _flatten(sql)
    assert "WHERE status='failed' AND retry_count < max_retries" in sql
    assert args == [T0 - timedelta(seconds=LEASE_SECONDS), 10]


@pytest.mark.parametrize(
    "error",
    [
        asyncpg.DataError("invalid input syntax"),
        asyncpg.InterfaceError("connection is closed"),
        ConnectionResetError("reset by peer"),
    ],
)
@pytest.mark.asyncio
async def test_driver_errors_become_persistence_errors(pg_store, conn, error):
    conn.fetchrow.side_effect = error

    with pytest.raises(PersistenceError) as exc_info:
        await pg_store.get_notification("n-1")

    assert exc_info.value.__cause__ is error


@pytest.mark.asyncio
async def test_duplicate_template_name_is_a_validation_error(pg_store, conn):
    conn.fetchrow.side_effect = asyncpg.UniqueViolationError("duplicate key value")
    request = TemplateRequest(name="welcome_email", type=NotificationType.EMAIL, content="Hi {{name}}")

    with pytest.raises(ValidationError):
        await pg_store.insert_template(request, now=T0)


@pytest.mark.asyncio
async def test_preferences_update_writes_only_changed_and_cleared_columns(pg_store, conn):
    conn.fetchrow.side_effect = [{"user_id": "user-1"}, _preferences_row(sms_enabled=False)]
    update = PreferencesUpdate.from_payload({"userId": "user-1", "smsEnabled": False, "phoneNumber": None})

    prefs, created = await pg_store.upsert_preferences(update, now=T0)

    assert created is False
    assert prefs.sms_enabled is False
    sql, *args = conn.fetchrow.await_args.args
    assert sql.startswith("UPDATE user_notification_preferences SET sms_enabled = $1, phone_number = $2, updated_at = $3")
    assert "WHERE user_id = $4" in sql
    assert args == [False, None, T0, "user-1"]
