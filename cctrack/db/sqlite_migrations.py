"""Database schema creation and versioning.

All CREATE TABLE statements for the aggregate store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("cctrack.db")

SCHEMA_VERSION = 1

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Sessions (upsert-by-key, merged JSON document) ─────────────
CREATE TABLE IF NOT EXISTS sessions (
    session_id   TEXT PRIMARY KEY,
    fields_json  TEXT NOT NULL DEFAULT '{}',
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

-- ── 2. Append-only event collections ──────────────────────────────
CREATE TABLE IF NOT EXISTS messages (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id     TEXT NOT NULL,
    role           TEXT DEFAULT '',
    content_length INTEGER DEFAULT 0,
    timestamp      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_session ON messages(session_id);

CREATE TABLE IF NOT EXISTS tool_usage (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id  TEXT NOT NULL,
    tool_name   TEXT DEFAULT '',
    description TEXT DEFAULT '',
    success     INTEGER DEFAULT 1,
    timestamp   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tool_usage_session ON tool_usage(session_id);
CREATE INDEX IF NOT EXISTS idx_tool_usage_name ON tool_usage(tool_name);

CREATE TABLE IF NOT EXISTS file_edits (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id    TEXT NOT NULL,
    file_path     TEXT NOT NULL,
    operation     TEXT NOT NULL,
    lines_changed INTEGER DEFAULT 0,
    timestamp     TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_file_edits_session ON file_edits(session_id);
CREATE INDEX IF NOT EXISTS idx_file_edits_path ON file_edits(file_path);

CREATE TABLE IF NOT EXISTS token_usage (
    id                          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id                  TEXT NOT NULL,
    input_tokens                INTEGER DEFAULT 0,
    output_tokens               INTEGER DEFAULT 0,
    cache_creation_input_tokens INTEGER DEFAULT 0,
    cache_read_input_tokens     INTEGER DEFAULT 0,
    timestamp                   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_token_usage_session ON token_usage(session_id);

CREATE TABLE IF NOT EXISTS vscode_data (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    workspace_id TEXT DEFAULT '',
    data_type    TEXT DEFAULT '',
    data_json    TEXT DEFAULT 'null',
    timestamp    TEXT NOT NULL
);

-- ── 3. Ingestion cursors (per-file checkpoint) ─────────────────────
CREATE TABLE IF NOT EXISTS ingest_cursors (
    file_path    TEXT PRIMARY KEY,
    session_id   TEXT NOT NULL,
    status       TEXT NOT NULL DEFAULT 'unprocessed',
    byte_offset  INTEGER NOT NULL DEFAULT 0,
    scan         INTEGER NOT NULL DEFAULT 0,
    stats_json   TEXT NOT NULL DEFAULT '{}',
    updated_at   TEXT NOT NULL
);
"""


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info("Schema is up to date (version %s)", current_version)
        return

    logger.info("Running migrations: %s → %s", current_version, SCHEMA_VERSION)
    await db.executescript(_TABLES)
    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info("Migrations complete, schema version %s", SCHEMA_VERSION)
