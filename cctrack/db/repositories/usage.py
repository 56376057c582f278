"""SQLite implementation of the aggregate usage store.

Five append-only event collections plus the session collection, which is
upserted by key with a shallow merge. Every mutating call is one
transaction: it commits as a whole or rolls back, so readers only ever see
the state before or after a call.
"""
from __future__ import annotations

import json
from typing import Any

import aiosqlite
from pydantic import BaseModel

from cctrack.date_utils import normalize_iso_date, utc_now_iso
from cctrack.db.connection import write_lock_for
from cctrack.models import (
    EVENT_COLLECTIONS,
    EVENT_MODELS,
    FILE_EDITS,
    MESSAGES,
    TOKEN_USAGE,
    TOOL_USAGE,
    VSCODE_DATA,
)

TIMELINE_MAX_BUCKETS = 30
TOP_FILES_LIMIT = 20
OVERVIEW_TOP_TOOLS = 5

# Collections whose rows carry a session_id and feed the per-session rollup.
_ROLLUP_COLLECTIONS = {
    MESSAGES: "message_count",
    TOOL_USAGE: "tool_count",
    FILE_EDITS: "file_count",
}


def _insert_statement(collection: str, record: Any) -> tuple[str, tuple]:
    if collection == MESSAGES:
        return (
            "INSERT INTO messages (session_id, role, content_length, timestamp) VALUES (?, ?, ?, ?)",
            (record.session_id, record.role, record.content_length, record.timestamp),
        )
    if collection == TOOL_USAGE:
        return (
            """INSERT INTO tool_usage (session_id, tool_name, description, success, timestamp)
               VALUES (?, ?, ?, ?, ?)""",
            (record.session_id, record.tool_name, record.description, int(record.success), record.timestamp),
        )
    if collection == FILE_EDITS:
        return (
            """INSERT INTO file_edits (session_id, file_path, operation, lines_changed, timestamp)
               VALUES (?, ?, ?, ?, ?)""",
            (record.session_id, record.file_path, record.operation, record.lines_changed, record.timestamp),
        )
    if collection == TOKEN_USAGE:
        return (
            """INSERT INTO token_usage (
                session_id, input_tokens, output_tokens,
                cache_creation_input_tokens, cache_read_input_tokens, timestamp
            ) VALUES (?, ?, ?, ?, ?, ?)""",
            (
                record.session_id, record.input_tokens, record.output_tokens,
                record.cache_creation_input_tokens, record.cache_read_input_tokens,
                record.timestamp,
            ),
        )
    return (
        "INSERT INTO vscode_data (workspace_id, data_type, data_json, timestamp) VALUES (?, ?, ?, ?)",
        (record.workspace_id, record.data_type, json.dumps(record.data), record.timestamp),
    )


def _event_row(collection: str, row: aiosqlite.Row) -> dict:
    data = dict(row)
    data.pop("id", None)
    if collection == TOOL_USAGE:
        data["success"] = bool(data.get("success"))
    elif collection == VSCODE_DATA:
        data["data"] = json.loads(data.pop("data_json") or "null")
    return data


class SqliteUsageRepository:
    """Aggregate store for sessions and usage events."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._write_lock = write_lock_for(db)

    async def _write(self, *statements: tuple[str, tuple]) -> None:
        try:
            for sql, params in statements:
                await self.db.execute(sql, params)
            await self.db.commit()
        except aiosqlite.Error:
            await self.db.rollback()
            raise

    # ── Mutations ───────────────────────────────────────────────────

    async def append(self, collection: str, event: BaseModel | dict) -> None:
        """Add one record to an event collection."""
        model = EVENT_MODELS.get(collection)
        if model is None:
            raise ValueError(f"Unknown collection: {collection}")
        payload = event.model_dump() if isinstance(event, BaseModel) else dict(event)
        payload["timestamp"] = normalize_iso_date(payload.get("timestamp")) or utc_now_iso()
        record = model.model_validate(payload)

        async with self._write_lock:
            await self._write(_insert_statement(collection, record))

    async def upsert_session(self, session_id: str, fields: BaseModel | dict) -> dict:
        """Merge fields over the stored session (new fields win), inserting if absent."""
        incoming = fields.model_dump() if isinstance(fields, BaseModel) else dict(fields)
        async with self._write_lock:
            existing = await self.get_session(session_id) or {}
            merged = {**existing, **incoming, "session_id": session_id}
            now = utc_now_iso()
            await self._write(
                (
                    """INSERT INTO sessions (session_id, fields_json, created_at, updated_at)
                       VALUES (?, ?, ?, ?)
                       ON CONFLICT(session_id) DO UPDATE SET
                           fields_json=excluded.fields_json, updated_at=excluded.updated_at""",
                    (session_id, json.dumps(merged), now, now),
                )
            )
        return merged

    # ── Sessions ────────────────────────────────────────────────────

    async def has_session(self, session_id: str) -> bool:
        async with self.db.execute(
            "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
        ) as cur:
            return await cur.fetchone() is not None

    async def get_session(self, session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT fields_json FROM sessions WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        if not row:
            return None
        return json.loads(row["fields_json"] or "{}")

    async def list_session_metadata(self) -> list[dict]:
        async with self.db.execute("SELECT fields_json FROM sessions ORDER BY rowid") as cur:
            rows = await cur.fetchall()
        return [json.loads(r["fields_json"] or "{}") for r in rows]

    # ── Read-side aggregations ──────────────────────────────────────

    async def count(self, collection: str) -> int:
        if collection not in EVENT_COLLECTIONS and collection != "sessions":
            raise ValueError(f"Unknown collection: {collection}")
        async with self.db.execute(f"SELECT COUNT(*) FROM {collection}") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    async def collection_counts(self) -> dict[str, int]:
        counts = {"sessions": await self.count("sessions")}
        for collection in EVENT_COLLECTIONS:
            counts[collection] = await self.count(collection)
        return counts

    async def list_events(self, collection: str, session_id: str | None = None) -> list[dict]:
        if collection not in EVENT_COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection}")
        if session_id is not None and collection != VSCODE_DATA:
            query = f"SELECT * FROM {collection} WHERE session_id = ? ORDER BY id"
            params: tuple = (session_id,)
        else:
            query = f"SELECT * FROM {collection} ORDER BY id"
            params = ()
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        return [_event_row(collection, r) for r in rows]

    async def token_totals(self) -> dict[str, int]:
        async with self.db.execute(
            """SELECT
                SUM(input_tokens), SUM(output_tokens),
                SUM(cache_read_input_tokens), SUM(cache_creation_input_tokens)
               FROM token_usage"""
        ) as cur:
            row = await cur.fetchone()
        input_tokens = (row[0] if row else 0) or 0
        output_tokens = (row[1] if row else 0) or 0
        return {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cache_read_tokens": (row[2] if row else 0) or 0,
            "cache_write_tokens": (row[3] if row else 0) or 0,
            "total_tokens": input_tokens + output_tokens,
        }

    async def tool_histogram(self, limit: int | None = None) -> list[dict]:
        """Tool usage grouped by name, most used first; ties keep first-seen order."""
        query = """
            SELECT tool_name AS name, COUNT(*) AS count
            FROM tool_usage
            GROUP BY tool_name
            ORDER BY count DESC, MIN(id) ASC
        """
        params: tuple = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        async with self.db.execute(query, params) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def timeline(self, collection: str = TOOL_USAGE, limit: int = TIMELINE_MAX_BUCKETS) -> list[dict]:
        """Event counts per calendar date, most recent date first."""
        if collection not in EVENT_COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection}")
        query = f"""
            SELECT substr(timestamp, 1, 10) AS date, COUNT(*) AS count
            FROM {collection}
            WHERE timestamp != ''
            GROUP BY date
            ORDER BY date DESC
            LIMIT ?
        """
        async with self.db.execute(query, (limit,)) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def file_histogram(self, limit: int = TOP_FILES_LIMIT) -> list[dict]:
        """Most edited files with summed lines changed."""
        async with self.db.execute(
            """SELECT file_path AS path, COUNT(*) AS edits, SUM(lines_changed) AS lines
               FROM file_edits
               GROUP BY file_path
               ORDER BY edits DESC, MIN(id) ASC
               LIMIT ?""",
            (limit,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def overview(self) -> dict:
        return {
            "total_tools": await self.count(TOOL_USAGE),
            "total_edits": await self.count(FILE_EDITS),
            "total_messages": await self.count(MESSAGES),
            "tokens": await self.token_totals(),
            "top_tools": await self.tool_histogram(limit=OVERVIEW_TOP_TOOLS),
        }

    async def session_rollups(self) -> list[dict]:
        """Per-session counts and time span with persisted metadata overlaid.

        Sorted by latest event timestamp, most recent first.
        """
        rollups: dict[str, dict] = {}
        for collection, count_key in _ROLLUP_COLLECTIONS.items():
            async with self.db.execute(
                f"""SELECT session_id, COUNT(*) AS n, MIN(timestamp) AS first_ts, MAX(timestamp) AS last_ts
                    FROM {collection}
                    GROUP BY session_id
                    ORDER BY MIN(id)"""
            ) as cur:
                rows = await cur.fetchall()
            for row in rows:
                rollup = rollups.setdefault(
                    row["session_id"],
                    {
                        "session_id": row["session_id"],
                        "message_count": 0,
                        "tool_count": 0,
                        "file_count": 0,
                        "first_timestamp": row["first_ts"],
                        "last_timestamp": row["last_ts"],
                    },
                )
                rollup[count_key] = row["n"]
                rollup["first_timestamp"] = min(rollup["first_timestamp"], row["first_ts"])
                rollup["last_timestamp"] = max(rollup["last_timestamp"], row["last_ts"])

        for metadata in await self.list_session_metadata():
            session_id = metadata.get("session_id")
            if session_id in rollups:
                rollups[session_id] = {**rollups[session_id], **metadata}

        return sorted(rollups.values(), key=lambda r: r.get("last_timestamp") or "", reverse=True)

    async def session_detail(self, session_id: str) -> dict | None:
        metadata = await self.get_session(session_id) or {}
        messages = await self.list_events(MESSAGES, session_id)
        tools = await self.list_events(TOOL_USAGE, session_id)
        files = await self.list_events(FILE_EDITS, session_id)
        if not metadata and not messages and not tools and not files:
            return None
        return {
            "session_id": session_id,
            **metadata,
            "messages": messages,
            "tools": tools,
            "files": files,
            "stats": {
                "total_messages": len(messages),
                "total_tools": len(tools),
                "total_files": len(files),
            },
        }
