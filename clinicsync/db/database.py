"""
SQLite connection management and schema for the persisted credential blob.
Uses aiosqlite for fully async, non-blocking access.
"""
import aiosqlite
import asyncio
import logging
from pathlib import Path

from clinicsync.config import DB_PATH

logger = logging.getLogger(__name__)

# Module-level connection (single shared connection with WAL mode)
_db: aiosqlite.Connection | None = None
_lock = asyncio.Lock()


async def get_db() -> aiosqlite.Connection:
    """Return the shared async database connection, initializing it if needed."""
    global _db
    if _db is None:
        async with _lock:
            if _db is None:
                Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
                _db = await aiosqlite.connect(DB_PATH)
                _db.row_factory = aiosqlite.Row
                # WAL mode: the presentation adapter reads while the session writes
                await _db.execute("PRAGMA journal_mode=WAL")
                await init_schema(_db)
                logger.info(f"Database initialized at {DB_PATH}")
    return _db


async def close_db() -> None:
    """Gracefully close the database connection."""
    global _db
    if _db is not None:
        await _db.close()
        _db = None
        logger.info("Database connection closed.")


async def init_schema(db: aiosqlite.Connection) -> None:
    """Create all tables if they do not already exist (idempotent)."""
    await db.executescript("""
        -- ----------------------------------------------------------------
        -- Credentials: the login blob (token + denormalized user profile).
        -- One row per key; the active login lives under key 'user'.
        -- ----------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS credentials (
            key         TEXT PRIMARY KEY,
            blob        TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );
    """)
    await db.commit()
    logger.info("Schema initialized.")
