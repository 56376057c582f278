"""Database connection factory.

Provides a singleton async SQLite connection with WAL mode.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from pathlib import Path

import aiosqlite

from cctrack import config

logger = logging.getLogger("cctrack.db")

_connection: aiosqlite.Connection | None = None


async def open_connection(db_path: Path | str) -> aiosqlite.Connection:
    """Open a configured connection without registering it as the singleton."""
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(db_path))
    conn.row_factory = aiosqlite.Row
    # WAL lets the API read while an ingestion task is writing
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA busy_timeout=5000")
    logger.info("Database connection established: %s", db_path)
    return conn


async def get_connection() -> aiosqlite.Connection:
    """Return the singleton database connection, creating it if needed."""
    global _connection
    if _connection is not None:
        return _connection
    _connection = await open_connection(config.DB_PATH)
    return _connection


def is_connected() -> bool:
    return _connection is not None


async def close_connection() -> None:
    """Close the database connection."""
    global _connection
    if _connection is not None:
        await _connection.close()
        _connection = None
        logger.info("Database connection closed")


_write_locks: weakref.WeakKeyDictionary = weakref.WeakKeyDictionary()


def write_lock_for(db: aiosqlite.Connection) -> asyncio.Lock:
    """Lock serializing write transactions; shared by every repository on `db`."""
    lock = _write_locks.get(db)
    if lock is None:
        lock = asyncio.Lock()
        _write_locks[db] = lock
    return lock
