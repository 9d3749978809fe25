"""
SQLite connection management and schema initialization for the local
document store. Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path
from typing import Optional

from pinchat.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level shared connection (WAL mode)
_db: aiosqlite.Connection | None = None
_db_path: str | None = None
_lock = asyncio.Lock()


async def get_db(path: Optional[str] = None) -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db, _db_path
    path = path or DB_PATH
    if _db is not None and _db_path != path:
        await close_db()
    if _db is None:
        async with _lock:
            if _db is None:
                if path != ":memory:":
                    Path(path).parent.mkdir(parents=True, exist_ok=True)
                _db = await aiosqlite.connect(path)
                _db.row_factory = aiosqlite.Row
                # WAL mode: readers never block the snapshot writer
                await _db.execute("PRAGMA journal_mode=WAL")
                await init_schema(_db)
                _db_path = path
                logger.info(f"Database initialized at {path}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db, _db_path
    if _db is not None:
        await _db.close()
        _db = None
        _db_path = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Documents: opaque JSON blobs addressed by key.
        -- The relay keeps a single snapshot document; no merge semantics.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS documents (
            key         TEXT PRIMARY KEY,
            value       TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );
    """)
    await db.commit()
    logger.info("Schema initialized.")
