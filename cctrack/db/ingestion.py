"""Ingestion engine: drives session log files through the parser into a sink.

Import mode reads a whole file once and is guarded by the session tracker;
tail mode reads whatever was appended since the file's cursor. Events are
emitted one at a time as lines are parsed, so a failure part-way through a
file keeps everything emitted before it.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Iterator

from cctrack import config
from cctrack.date_utils import file_metadata, utc_now_iso
from cctrack.db.sinks import EventSink
from cctrack.models import (
    FILE_EDITS,
    MESSAGES,
    TOKEN_USAGE,
    TOOL_USAGE,
    IngestCounters,
    IngestResult,
    SessionRecord,
    ToolUsageEvent,
    UsageEvent,
)
from cctrack.observability import record_decode_errors, record_events, record_ingestion, start_span
from cctrack.parsers.entries import EntryDecodeError, derive_events, parse_entry_line
from cctrack.parsers.line_reader import LineReader, LogFileAccessError
from cctrack.parsers.sessions import SessionTracker, session_identity

logger = logging.getLogger("cctrack.ingest")

MAX_RESULT_HISTORY = 40


def discover_session_files(root: Path, extension: str | None = None) -> Iterator[Path]:
    """Yield `<root>/<project>/<session><ext>` files, skipping hidden entries."""
    extension = extension or config.LOG_EXTENSION
    if not root.is_dir():
        return
    for project_dir in sorted(root.iterdir()):
        if not project_dir.is_dir() or project_dir.name.startswith("."):
            continue
        for path in sorted(project_dir.iterdir()):
            if path.name.startswith(".") or path.suffix != extension:
                continue
            if path.is_file():
                yield path


def _count_event(counters: IngestCounters, event: UsageEvent) -> None:
    if event.collection == MESSAGES:
        counters.messages += 1
    elif event.collection == TOOL_USAGE:
        counters.tool_uses += 1
        if isinstance(event, ToolUsageEvent):
            counters.tool_counts[event.tool_name] = counters.tool_counts.get(event.tool_name, 0) + 1
    elif event.collection == FILE_EDITS:
        counters.file_edits += 1
    elif event.collection == TOKEN_USAGE:
        counters.token_events += 1


class IngestionEngine:
    """One engine per process, shared by the import entry point and the watcher."""

    def __init__(
        self,
        sink: EventSink,
        tracker: SessionTracker | None = None,
        max_history: int = MAX_RESULT_HISTORY,
    ):
        self.sink = sink
        self.tracker = tracker or SessionTracker()
        self._status_lock = asyncio.Lock()
        self._recent: list[IngestResult] = []
        self._max_history = max_history
        self._totals: dict[str, int] = {
            "ingested": 0,
            "skipped": 0,
            "empty": 0,
            "unchanged": 0,
            "failed": 0,
            "events": 0,
            "decode_errors": 0,
        }

    # ── Public operations ───────────────────────────────────────────

    async def import_file(self, path: Path) -> IngestResult:
        """Ingest a whole file unless its session is already known."""
        path = Path(path)
        session_id, project = session_identity(path)
        result = IngestResult(path=str(path), session_id=session_id, project=project, mode="import", started_at=utc_now_iso())
        t0 = time.monotonic()

        with start_span("cctrack.ingest.import", {"session_id": session_id, "project": project}):
            try:
                metadata = file_metadata(path)
            except OSError as exc:
                return await self._finish(result, t0, status="failed", error=str(exc))

            if metadata["file_size"] == 0:
                return await self._finish(result, t0, status="empty")

            if not await self.tracker.should_import(path, session_id, self.sink):
                if self.tracker.cursor_for(path) is None:
                    await self.tracker.mark_processed(path, session_id, metadata["file_size"])
                return await self._finish(result, t0, status="skipped")

            reader = LineReader(path, start_offset=0, include_partial=True)
            try:
                counters = await self._ingest_lines(reader, session_id)
            except LogFileAccessError as exc:
                return await self._finish(result, t0, status="failed", error=str(exc))

            await self.sink.upsert_session(
                session_id,
                SessionRecord.from_counters(session_id, project, counters, last_ingested=utc_now_iso(), **metadata),
            )
            await self.tracker.mark_processed(path, session_id, reader.end_offset, counters)

        result.end_offset = reader.end_offset
        result.counters = counters
        return await self._finish(result, t0, status="ingested")

    async def tail_file(self, path: Path) -> IngestResult:
        """Ingest complete lines appended since the file's cursor."""
        path = Path(path)
        session_id, project = session_identity(path)
        result = IngestResult(path=str(path), session_id=session_id, project=project, mode="tail", started_at=utc_now_iso())
        t0 = time.monotonic()

        with start_span("cctrack.ingest.tail", {"session_id": session_id, "project": project}):
            try:
                metadata = file_metadata(path)
            except OSError as exc:
                return await self._finish(result, t0, status="failed", error=str(exc))

            file_size = metadata["file_size"]
            if file_size == 0:
                return await self._finish(result, t0, status="empty")

            start = self.tracker.start_offset_for_tail(path, file_size)
            result.start_offset = start
            result.end_offset = start
            if start == file_size:
                return await self._finish(result, t0, status="unchanged")

            reader = LineReader(path, start_offset=start, include_partial=False)
            try:
                counters = await self._ingest_lines(reader, session_id)
            except LogFileAccessError as exc:
                return await self._finish(result, t0, status="failed", error=str(exc))

            if reader.end_offset == start:
                # only a partial line so far
                return await self._finish(result, t0, status="unchanged")

            cursor = await self.tracker.advance(path, session_id, start, reader.end_offset, counters)
            await self.sink.upsert_session(
                session_id,
                SessionRecord.from_counters(session_id, project, cursor.stats, last_ingested=utc_now_iso(), **metadata),
            )

        result.end_offset = reader.end_offset
        result.counters = counters
        return await self._finish(result, t0, status="ingested")

    async def import_directory(self, root: Path | None = None) -> list[IngestResult]:
        """Run import mode over every session file below `root`."""
        root = Path(root or config.PROJECTS_DIR)
        if not root.is_dir():
            logger.warning("Projects directory not found: %s", root)
            return []

        scan = self.tracker.begin_scan()
        results = [await self.import_file(path) for path in discover_session_files(root)]
        by_status: dict[str, int] = {}
        for result in results:
            by_status[result.status] = by_status.get(result.status, 0) + 1
        logger.info("Import scan %d of %s finished: %s", scan, root, by_status or "no session files")
        return results

    async def get_status(self) -> dict[str, Any]:
        async with self._status_lock:
            return {
                "totals": dict(self._totals),
                "scan": self.tracker.scan,
                "tracked_files": len(self.tracker.cursors()),
                "recent": [r.model_dump() for r in self._recent],
            }

    # ── Internals ───────────────────────────────────────────────────

    async def _ingest_lines(self, reader: LineReader, session_id: str) -> IngestCounters:
        counters = IngestCounters()
        emitted: dict[str, int] = {}
        async for line in reader:
            try:
                entry = parse_entry_line(line.text)
            except EntryDecodeError as exc:
                if not line.complete:
                    # still being written; the next tail pass reads it whole
                    reader.hold_back(line)
                    logger.debug("Holding back unterminated line at byte %d of %s", line.start_offset, reader.path)
                    continue
                counters.lines += 1
                counters.decode_errors += 1
                logger.debug("Skipping line at byte %d of %s: %s", line.start_offset, reader.path, exc)
                continue
            counters.lines += 1
            for event in derive_events(entry, session_id, utc_now_iso()):
                await self.sink.emit(event)
                _count_event(counters, event)
                emitted[event.collection] = emitted.get(event.collection, 0) + 1

        for collection, count in emitted.items():
            record_events(collection, count)
        record_decode_errors(counters.decode_errors)
        return counters

    async def _finish(self, result: IngestResult, t0: float, *, status: str, error: str = "") -> IngestResult:
        result.status = status
        result.error = error
        result.duration_ms = max(0, int((time.monotonic() - t0) * 1000))

        async with self._status_lock:
            self._totals[status] = self._totals.get(status, 0) + 1
            self._totals["events"] += result.counters.events
            self._totals["decode_errors"] += result.counters.decode_errors
            self._recent.insert(0, result)
            del self._recent[self._max_history:]

        record_ingestion(result.mode, status, result.duration_ms)
        if status == "failed":
            logger.warning("Could not ingest %s: %s", result.path, error)
        elif status == "ingested":
            c = result.counters
            logger.info(
                "%s %s: %d messages, %d tool uses, %d file edits, %d decode errors (%d ms)",
                result.mode.capitalize(), result.session_id,
                c.messages, c.tool_uses, c.file_edits, c.decode_errors, result.duration_ms,
            )
        else:
            logger.debug("%s %s: %s", result.mode.capitalize(), result.session_id, status)
        return result
