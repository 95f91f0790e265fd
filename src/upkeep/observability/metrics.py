"""Bounded resource sample log with a short-window growth heuristic."""

from __future__ import annotations

from typing import Optional

import structlog

from ..persistence.db import DatabaseManager
from .models import MetricSample

logger = structlog.get_logger(__name__)

GROWTH_WINDOW = 30

_COLUMNS = "timestamp, mem_used_pct, mem_avail_mb, disk_used_pct, service_rss_mb, aux_proc_mb"


def _row_to_sample(row) -> MetricSample:
    return MetricSample(
        timestamp=int(row[0]),
        mem_used_pct=float(row[1]),
        mem_avail_mb=int(row[2]),
        disk_used_pct=float(row[3]),
        service_rss_mb=int(row[4]),
        aux_proc_mb=int(row[5]),
    )


def _growth(history: list[MetricSample], current_rss_mb: int) -> Optional[float]:
    if len(history) < GROWTH_WINDOW:
        return None
    old = history[-GROWTH_WINDOW].service_rss_mb
    if old <= 0:
        return None
    growth = (current_rss_mb - old) / old * 100
    logger.debug("rss_growth_computed", old_rss_mb=old, current_rss_mb=current_rss_mb, growth_pct=round(growth, 1))
    return growth


class MetricsTrend:
    """Ring log of MetricSample rows capped at ``max_samples``."""

    def __init__(self, db: DatabaseManager, max_samples: int = 1440):
        self.db = db
        self.max_samples = max_samples

    async def record(self, sample: MetricSample) -> None:
        """Append ``sample`` and evict the oldest rows beyond the cap."""
        conn = await self.db.get_connection()
        await conn.execute(
            f"INSERT INTO metric_samples ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
            (
                sample.timestamp,
                sample.mem_used_pct,
                sample.mem_avail_mb,
                sample.disk_used_pct,
                sample.service_rss_mb,
                sample.aux_proc_mb,
            ),
        )
        await conn.execute(
            """
            DELETE FROM metric_samples
            WHERE id NOT IN (
                SELECT id FROM metric_samples ORDER BY id DESC LIMIT ?
            )
            """,
            (self.max_samples,),
        )
        await conn.commit()

    async def count(self) -> int:
        conn = await self.db.get_connection()
        cursor = await conn.execute("SELECT COUNT(*) FROM metric_samples")
        row = await cursor.fetchone()
        await cursor.close()
        return int(row[0]) if row else 0

    async def recent(self, limit: int = GROWTH_WINDOW) -> list[MetricSample]:
        """Most recent ``limit`` samples, oldest first."""
        conn = await self.db.get_connection()
        cursor = await conn.execute(
            f"""
            SELECT {_COLUMNS} FROM (
                SELECT id, {_COLUMNS} FROM metric_samples ORDER BY id DESC LIMIT ?
            ) ORDER BY id ASC
            """,
            (limit,),
        )
        rows = await cursor.fetchall()
        await cursor.close()
        return [_row_to_sample(row) for row in rows]

    async def detect_growth(self, current_rss_mb: int) -> Optional[float]:
        """
        Percent change of service RSS against the sample recorded 30 samples ago.

        Returns None with fewer than 30 retained samples or when the reference
        RSS is zero. This is a leak heuristic: load spikes can trip it.
        """
        return _growth(await self.recent(GROWTH_WINDOW), current_rss_mb)

    async def summary(self) -> Optional[dict]:
        """Latest sample plus its growth against the window before it, for status output."""
        window = await self.recent(GROWTH_WINDOW + 1)
        if not window:
            return None
        latest = window[-1]
        return {
            "samples": await self.count(),
            "latest": latest,
            "service_rss_min_mb": min(s.service_rss_mb for s in window[-GROWTH_WINDOW:]),
            "service_rss_max_mb": max(s.service_rss_mb for s in window[-GROWTH_WINDOW:]),
            "growth_pct": _growth(window[:-1], latest.service_rss_mb),
        }
