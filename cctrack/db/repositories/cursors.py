"""SQLite persistence for per-file ingestion cursors."""
from __future__ import annotations

import json

import aiosqlite

from cctrack.db.connection import write_lock_for
from cctrack.models import IngestCounters, ProcessingCursor


class SqliteCursorRepository:
    """Track how far each session log has been ingested."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self._write_lock = write_lock_for(db)

    async def get_cursor(self, file_path: str) -> ProcessingCursor | None:
        async with self.db.execute(
            "SELECT * FROM ingest_cursors WHERE file_path = ?", (file_path,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_cursor(row) if row else None

    async def upsert_cursor(self, cursor: ProcessingCursor) -> None:
        async with self._write_lock:
            try:
                await self._execute_upsert(cursor)
                await self.db.commit()
            except aiosqlite.Error:
                await self.db.rollback()
                raise

    async def _execute_upsert(self, cursor: ProcessingCursor) -> None:
        await self.db.execute(
            """INSERT INTO ingest_cursors (file_path, session_id, status, byte_offset, scan, stats_json, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(file_path) DO UPDATE SET
                 session_id=excluded.session_id, status=excluded.status,
                 byte_offset=excluded.byte_offset, scan=excluded.scan,
                 stats_json=excluded.stats_json, updated_at=excluded.updated_at""",
            (
                cursor.file_path, cursor.session_id, cursor.status,
                cursor.offset, cursor.scan,
                cursor.stats.model_dump_json(), cursor.updated_at,
            ),
        )

    async def list_all(self) -> list[ProcessingCursor]:
        async with self.db.execute("SELECT * FROM ingest_cursors") as cur:
            return [self._row_to_cursor(r) for r in await cur.fetchall()]

    def _row_to_cursor(self, row) -> ProcessingCursor:
        return ProcessingCursor(
            file_path=row["file_path"],
            session_id=row["session_id"],
            status=row["status"],
            offset=row["byte_offset"],
            scan=row["scan"],
            stats=IngestCounters.model_validate(json.loads(row["stats_json"] or "{}")),
            updated_at=row["updated_at"],
        )
