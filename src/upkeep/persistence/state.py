"""Durable watchdog state record.

The record is stored one row per field in the watchdog_state table so each
field update is persisted on its own (last write wins). Values are JSON
encoded; readers tolerate missing or unparseable rows by falling back to the
field default.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, Optional

import structlog

from .db import DatabaseManager

logger = structlog.get_logger(__name__)


class ServiceStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    RECOVERED = "recovered"
    ROLLED_BACK = "rolled_back"


class RecoveryAction(str, Enum):
    NONE = "none"
    RESTART = "restart"
    ROLLBACK = "rollback"


@dataclass
class WatchdogState:
    """Snapshot of the persisted watchdog record.

    Timestamps are Unix epoch seconds; None means "never".
    """

    status: Optional[ServiceStatus] = None
    consecutive_failures: int = 0
    last_healthy_at: Optional[int] = None
    last_check_at: Optional[int] = None
    last_issues: list[str] = field(default_factory=list)
    last_action: RecoveryAction = RecoveryAction.NONE
    last_action_at: Optional[int] = None
    last_alert_at: Optional[int] = None
    last_warn_alert_at: Optional[int] = None
    last_resource_cleanup_at: Optional[int] = None

    @classmethod
    def from_mapping(cls, data: dict[str, Any]) -> "WatchdogState":
        state = cls()
        if data.get("status") is not None:
            try:
                state.status = ServiceStatus(data["status"])
            except ValueError:
                logger.warning("state_status_unknown", value=data["status"])
        try:
            state.consecutive_failures = max(0, int(data.get("consecutive_failures") or 0))
        except (TypeError, ValueError):
            state.consecutive_failures = 0
        try:
            state.last_action = RecoveryAction(data.get("last_action") or "none")
        except ValueError:
            state.last_action = RecoveryAction.NONE
        issues = data.get("last_issues") or []
        state.last_issues = sorted(str(i) for i in issues)
        for name in (
            "last_healthy_at",
            "last_check_at",
            "last_action_at",
            "last_alert_at",
            "last_warn_alert_at",
            "last_resource_cleanup_at",
        ):
            value = data.get(name)
            if value is not None:
                try:
                    setattr(state, name, int(value))
                except (TypeError, ValueError):
                    pass
        return state

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, Enum):
                value = value.value
            result[f.name] = value
        return result


STATE_FIELDS = frozenset(f.name for f in fields(WatchdogState))


def _encode(value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    elif isinstance(value, (set, frozenset)):
        value = sorted(str(v.value if isinstance(v, Enum) else v) for v in value)
    return json.dumps(value)


class StateStore:
    """Key-value persistence for the watchdog record.

    Call ``load()`` at the start of a cycle and ``set``/``update`` as fields
    change; there is no in-memory cache shared between calls.
    """

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, key: str, default: Any = None) -> Any:
        conn = await self.db.get_connection()
        cursor = await conn.execute(
            "SELECT value FROM watchdog_state WHERE key = ?", (key,)
        )
        row = await cursor.fetchone()
        await cursor.close()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            logger.warning("state_value_unparseable", key=key)
            return default

    async def _write(self, conn, key: str, value: Any, now: int) -> None:
        await conn.execute(
            """
            INSERT INTO watchdog_state (key, value, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
            """,
            (key, _encode(value), now),
        )

    async def set(self, key: str, value: Any) -> None:
        await self.update(**{key: value})

    async def update(self, **values: Any) -> None:
        """Persist several fields in one transaction; unknown fields write nothing."""
        unknown = sorted(k for k in values if k not in STATE_FIELDS)
        if unknown:
            raise KeyError(f"Unknown watchdog state field '{unknown[0]}'")
        conn = await self.db.get_connection()
        now = int(time.time())
        try:
            for key, value in values.items():
                await self._write(conn, key, value, now)
        except BaseException:
            await conn.rollback()
            raise
        await conn.commit()
        logger.debug("state_updated", fields=sorted(values))

    async def load(self) -> WatchdogState:
        conn = await self.db.get_connection()
        cursor = await conn.execute("SELECT key, value FROM watchdog_state")
        rows = await cursor.fetchall()
        await cursor.close()
        data: dict[str, Any] = {}
        for key, raw in rows:
            try:
                data[key] = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning("state_value_unparseable", key=key)
        return WatchdogState.from_mapping(data)

    async def exists(self) -> bool:
        conn = await self.db.get_connection()
        cursor = await conn.execute("SELECT COUNT(*) FROM watchdog_state")
        row = await cursor.fetchone()
        await cursor.close()
        return bool(row and row[0])
