"""Unit tests for the database layer, watchdog state record and event log."""

from unittest.mock import patch

import pytest

from upkeep.observability.models import IssueCode
from upkeep.persistence.db import DatabaseManager
from upkeep.persistence.events import format_event
from upkeep.persistence.migrate import MIGRATIONS_DIR, apply_migrations, discover_migrations
from upkeep.persistence.state import RecoveryAction, ServiceStatus, WatchdogState


# Database

@pytest.mark.asyncio
async def test_connection_uses_wal(db):
    conn = await db.get_connection()
    cursor = await conn.execute("PRAGMA journal_mode")
    mode = await cursor.fetchone()
    await cursor.close()
    assert mode[0].lower() == "wal"


@pytest.mark.asyncio
async def test_connection_reused(db):
    assert await db.get_connection() is await db.get_connection()


def test_migrations_discovered_in_order():
    names = [name for name, _ in discover_migrations(MIGRATIONS_DIR)]
    assert names == sorted(names)
    assert names[0] == "0001_watchdog_state.sql"


def test_migrations_idempotent(tmp_path):
    db_path = tmp_path / "m.db"
    first = apply_migrations(db_path, MIGRATIONS_DIR)
    second = apply_migrations(db_path, MIGRATIONS_DIR)
    assert first == len(discover_migrations(MIGRATIONS_DIR))
    assert second == 0


def test_tampered_migration_detected(tmp_path):
    migrations = tmp_path / "migrations"
    migrations.mkdir()
    sql = migrations / "0001_t.sql"
    sql.write_text("CREATE TABLE t (id INTEGER) STRICT;")
    db_path = tmp_path / "m.db"
    apply_migrations(db_path, migrations)

    sql.write_text("CREATE TABLE t (id INTEGER, x TEXT) STRICT;")
    with pytest.raises(RuntimeError, match="tampered"):
        apply_migrations(db_path, migrations)


@pytest.mark.asyncio
async def test_init_db_creates_tables(tmp_path):
    manager = DatabaseManager(tmp_path / "fresh" / "upkeep.db")
    await manager.init_db()
    conn = await manager.get_connection()
    cursor = await conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    tables = {row[0] for row in await cursor.fetchall()}
    await cursor.close()
    await manager.close()
    assert {"watchdog_state", "metric_samples", "event_log"} <= tables


# Watchdog state

class TestStateStore:
    """Per-field persistence of the watchdog record."""

    @pytest.mark.asyncio
    async def test_load_defaults_when_empty(self, state):
        record = await state.load()
        assert record == WatchdogState()
        assert await state.exists() is False

    @pytest.mark.asyncio
    async def test_round_trip_fields(self, state):
        await state.update(
            status=ServiceStatus.UNHEALTHY,
            consecutive_failures=2,
            last_issues={IssueCode.HTTP_DOWN, IssueCode.PROCESS_DOWN},
            last_action=RecoveryAction.RESTART,
            last_action_at=1700000000,
        )
        record = await state.load()
        assert record.status is ServiceStatus.UNHEALTHY
        assert record.consecutive_failures == 2
        assert record.last_issues == ["http_down", "process_down"]
        assert record.last_action is RecoveryAction.RESTART
        assert record.last_action_at == 1700000000
        assert await state.exists() is True

    @pytest.mark.asyncio
    async def test_last_write_wins(self, state):
        await state.set("consecutive_failures", 4)
        await state.set("consecutive_failures", 0)
        assert await state.get("consecutive_failures") == 0

    @pytest.mark.asyncio
    async def test_unknown_field_rejected(self, state):
        with pytest.raises(KeyError):
            await state.set("favourite_colour", "blue")

    @pytest.mark.asyncio
    async def test_update_is_all_or_nothing(self, state):
        await state.update(last_action=RecoveryAction.RESTART, last_action_at=1700000000)
        with pytest.raises(KeyError):
            await state.update(last_action=RecoveryAction.ROLLBACK, last_action_at=1700000500, bogus=1)
        record = await state.load()
        assert record.last_action is RecoveryAction.RESTART
        assert record.last_action_at == 1700000000

    @pytest.mark.asyncio
    async def test_update_shares_one_commit(self, state, db):
        conn = await db.get_connection()
        with patch.object(conn, "commit", wraps=conn.commit) as commit:
            await state.update(last_action=RecoveryAction.RESTART, last_action_at=1700000000)
        assert commit.await_count == 1
        assert await state.get("last_action") == "restart"

    @pytest.mark.asyncio
    async def test_get_default(self, state):
        assert await state.get("last_alert_at", 0) == 0

    def test_from_mapping_tolerates_garbage(self):
        record = WatchdogState.from_mapping(
            {
                "status": "on-fire",
                "consecutive_failures": "-3",
                "last_action": "reboot",
                "last_check_at": "soon",
            }
        )
        assert record.status is None
        assert record.consecutive_failures == 0
        assert record.last_action is RecoveryAction.NONE
        assert record.last_check_at is None

    def test_to_dict_uses_enum_values(self):
        data = WatchdogState(status=ServiceStatus.HEALTHY).to_dict()
        assert data["status"] == "healthy"
        assert data["last_action"] == "none"


# Event log

@pytest.mark.asyncio
async def test_event_tail_oldest_first(events):
    for i in range(12):
        await events.record("RESTART_FAILED", f"attempt {i}")
    tail = await events.tail(10)
    assert len(tail) == 10
    assert tail[0]["message"] == "attempt 2"
    assert tail[-1]["message"] == "attempt 11"


@pytest.mark.asyncio
async def test_event_record_logs_and_persists(events):
    await events.record("RESTART_SUCCESS", "service back after restart")
    tail = await events.tail(1)
    assert tail == [{"timestamp": tail[0]["timestamp"], "event": "RESTART_SUCCESS",
                     "message": "service back after restart"}]


def test_format_event():
    line = format_event({"timestamp": 0, "event": "ROLLBACK_SUCCESS", "message": "back to 1.0.0"})
    assert line == "1970-01-01T00:00:00Z [ROLLBACK_SUCCESS] back to 1.0.0"
