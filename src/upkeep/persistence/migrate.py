"""
Schema migrations for the watchdog database.

Migration files are applied once each, in file-name order. The SHA-256 of
every applied file is kept in ``schema_migrations``; a later mismatch means
the file was edited after it ran and is refused.
"""

import hashlib
import sqlite3
import time
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"


def file_checksum(path: Path) -> str:
    return hashlib.sha256(path.read_bytes()).hexdigest()


def discover_migrations(migrations_dir: Path) -> list[tuple[str, Path]]:
    """(name, path) for each ``*.sql`` file, sorted by name."""
    return [(path.name, path) for path in sorted(migrations_dir.glob("*.sql"))]


def _applied_checksums(conn: sqlite3.Connection) -> dict[str, str]:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            migration_name TEXT PRIMARY KEY,
            checksum TEXT NOT NULL,
            applied_at INTEGER NOT NULL
        ) STRICT
        """
    )
    conn.commit()
    rows = conn.execute("SELECT migration_name, checksum FROM schema_migrations")
    return {name: checksum for name, checksum in rows}


def apply_migrations(db_path: Path, migrations_dir: Path = MIGRATIONS_DIR) -> int:
    """
    Bring ``db_path`` up to date.

    Returns:
        How many migrations this call applied (0 when already current)

    Raises:
        RuntimeError: an applied migration file no longer matches its checksum
    """
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    applied_now = 0
    try:
        applied = _applied_checksums(conn)
        for name, path in discover_migrations(migrations_dir):
            checksum = file_checksum(path)
            recorded = applied.get(name)
            if recorded is not None:
                if recorded != checksum:
                    raise RuntimeError(
                        f"Migration {name} was tampered with after being applied "
                        f"(recorded {recorded[:12]}, found {checksum[:12]})"
                    )
                continue

            with conn:
                conn.executescript(path.read_text(encoding="utf-8"))
                conn.execute(
                    "INSERT INTO schema_migrations (migration_name, checksum, applied_at) VALUES (?, ?, ?)",
                    (name, checksum, int(time.time())),
                )
            applied_now += 1
            logger.info("migration_applied", migration=name, db_path=str(db_path))
    finally:
        conn.close()
    return applied_now
