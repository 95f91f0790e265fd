"""Append-only recovery event log."""

from __future__ import annotations

from datetime import datetime, timezone
import time

import structlog

from .db import DatabaseManager

logger = structlog.get_logger(__name__)


class EventLog:
    """Durable record of recovery actions and their results."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def record(self, event: str, message: str) -> None:
        """
        Append an event.

        Args:
            event: Upper-case event code, e.g. RESTART_SUCCESS
            message: Human readable detail
        """
        conn = await self.db.get_connection()
        await conn.execute(
            "INSERT INTO event_log (timestamp, event, message) VALUES (?, ?, ?)",
            (int(time.time()), event, message),
        )
        await conn.commit()
        logger.info("event_recorded", event_code=event, message=message)

    async def tail(self, limit: int = 10) -> list[dict]:
        """Return the most recent events, oldest first."""
        conn = await self.db.get_connection()
        cursor = await conn.execute(
            """
            SELECT timestamp, event, message FROM (
                SELECT id, timestamp, event, message FROM event_log
                ORDER BY id DESC LIMIT ?
            ) ORDER BY id ASC
            """,
            (limit,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [
            {"timestamp": row[0], "event": row[1], "message": row[2]}
            for row in rows
        ]


def format_event(entry: dict) -> str:
    ts = datetime.fromtimestamp(entry["timestamp"], tz=timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    return f"{ts} [{entry['event']}] {entry['message']}"
