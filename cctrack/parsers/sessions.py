"""Session identity and per-file processing cursors."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from cctrack.date_utils import utc_now_iso
from cctrack.models import IngestCounters, ProcessingCursor

if TYPE_CHECKING:
    from cctrack.db.repositories.cursors import SqliteCursorRepository
    from cctrack.db.sinks import EventSink

logger = logging.getLogger("cctrack.ingest")

PROJECT_DISPLAY_SEPARATOR = "/"


def project_display_name(dir_name: str) -> str:
    """`-Users-me-code-app` -> `/Users/me/code/app`."""
    return dir_name.replace("-", PROJECT_DISPLAY_SEPARATOR)


def session_identity(path: Path) -> tuple[str, str]:
    """Return (session_id, project) for a session log file."""
    return path.stem, project_display_name(path.parent.name)


class SessionTracker:
    """Holds one ProcessingCursor per log file.

    Cursors live in memory and, when a repository is given, are written
    through to SQLite so a restarted process resumes where it stopped.
    """

    def __init__(self, cursor_repo: Optional["SqliteCursorRepository"] = None):
        self.cursor_repo = cursor_repo
        self._cursors: dict[str, ProcessingCursor] = {}
        self.scan = 0

    async def load(self) -> int:
        """Load persisted cursors; returns how many were found."""
        if self.cursor_repo is None:
            return 0
        cursors = await self.cursor_repo.list_all()
        for cursor in cursors:
            self._cursors[cursor.file_path] = cursor
        self.scan = max((c.scan for c in cursors), default=0)
        logger.info("Loaded %d ingestion cursors (last scan %d)", len(cursors), self.scan)
        return len(cursors)

    def begin_scan(self) -> int:
        self.scan += 1
        return self.scan

    def cursor_for(self, path: Path) -> ProcessingCursor | None:
        return self._cursors.get(str(path))

    def cursors(self) -> list[ProcessingCursor]:
        return list(self._cursors.values())

    async def should_import(self, path: Path, session_id: str, sink: "EventSink") -> bool:
        """Import mode runs only for files never processed whose session the store does not know."""
        cursor = self.cursor_for(path)
        if cursor is not None and cursor.status != "unprocessed":
            return False
        return not await sink.has_session(session_id)

    def start_offset_for_tail(self, path: Path, file_size: int) -> int:
        cursor = self.cursor_for(path)
        if cursor is None:
            return 0
        if file_size < cursor.offset:
            logger.warning(
                "%s shrank from %d to %d bytes; re-reading from the start",
                path, cursor.offset, file_size,
            )
            return 0
        return cursor.offset

    async def mark_processed(
        self,
        path: Path,
        session_id: str,
        offset: int,
        counters: IngestCounters | None = None,
    ) -> ProcessingCursor:
        """Record that `path` is fully represented in the store up to `offset`."""
        previous = self.cursor_for(path)
        stats = counters if counters is not None else (previous.stats if previous else IngestCounters())
        cursor = ProcessingCursor(
            file_path=str(path),
            session_id=session_id,
            status="processed",
            offset=offset,
            scan=self.scan,
            stats=stats,
            updated_at=utc_now_iso(),
        )
        await self._store(cursor)
        return cursor

    async def advance(
        self,
        path: Path,
        session_id: str,
        start_offset: int,
        end_offset: int,
        delta: IngestCounters,
    ) -> ProcessingCursor:
        """Move the tail cursor to `end_offset`, folding `delta` into its stats.

        A pass that started at offset 0 read the whole file, so its counters
        replace the previous stats instead of adding to them.
        """
        previous = self.cursor_for(path)
        if start_offset == 0 or previous is None:
            stats = delta
        else:
            stats = previous.stats.merged(delta)
        cursor = ProcessingCursor(
            file_path=str(path),
            session_id=session_id,
            status="tailing",
            offset=end_offset,
            scan=self.scan,
            stats=stats,
            updated_at=utc_now_iso(),
        )
        await self._store(cursor)
        return cursor

    async def _store(self, cursor: ProcessingCursor) -> None:
        self._cursors[cursor.file_path] = cursor
        if self.cursor_repo is not None:
            await self.cursor_repo.upsert_cursor(cursor)
