"""SQLite connection for the state directory (WAL journal, one cached connection)."""

from pathlib import Path
from typing import Optional

import aiosqlite
import structlog

from .migrate import MIGRATIONS_DIR, apply_migrations

logger = structlog.get_logger(__name__)

PRAGMAS = (
    "PRAGMA journal_mode=WAL",
    "PRAGMA synchronous=NORMAL",
    "PRAGMA busy_timeout=5000",
    "PRAGMA temp_store=MEMORY",
)


class DatabaseManager:
    """Owns the connection to ``upkeep.db``.

    ``init_db`` must run before first use so the schema exists; ``close`` is
    called once by the command that opened it.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None

    async def _open(self) -> aiosqlite.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = await aiosqlite.connect(str(self.db_path))
        try:
            for pragma in PRAGMAS:
                await conn.execute(pragma)
            cursor = await conn.execute("PRAGMA journal_mode")
            (mode,) = await cursor.fetchone()
            await cursor.close()
            if mode.lower() != "wal":
                raise RuntimeError(f"Could not switch {self.db_path} to WAL (journal_mode={mode})")
        except BaseException:
            await conn.close()
            raise
        logger.debug("database_connection_established", db_path=str(self.db_path), journal_mode=mode)
        return conn

    async def get_connection(self) -> aiosqlite.Connection:
        """The cached connection, opened on first call."""
        if self._connection is None:
            self._connection = await self._open()
        return self._connection

    async def init_db(self) -> None:
        """Apply pending migrations, then open the connection."""
        applied = apply_migrations(self.db_path, MIGRATIONS_DIR)
        await self.get_connection()
        if applied:
            logger.info("database_initialized", db_path=str(self.db_path), migrations_applied=applied)

    async def close(self) -> None:
        if self._connection is None:
            return
        await self._connection.close()
        self._connection = None
        logger.debug("database_connection_closed", db_path=str(self.db_path))
