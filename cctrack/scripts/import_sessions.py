#!/usr/bin/env python3
"""Import existing session logs into the local store (one-shot).

Usage:
  python -m cctrack.scripts.import_sessions
  python -m cctrack.scripts.import_sessions --root ~/.claude/projects --db data/cctrack.db
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from itertools import groupby
from pathlib import Path

from cctrack import config
from cctrack.db import connection
from cctrack.db.ingestion import IngestionEngine
from cctrack.db.repositories import SqliteCursorRepository, SqliteUsageRepository
from cctrack.db.sinks import StoreEventSink
from cctrack.db.sqlite_migrations import run_migrations
from cctrack.models import IngestResult
from cctrack.parsers.sessions import SessionTracker


def summarize(results: list[IngestResult]) -> dict[str, int]:
    totals = {
        "projects": len({r.project for r in results}),
        "sessions": len(results),
        "imported": 0,
        "skipped": 0,
        "empty": 0,
        "failed": 0,
        "messages": 0,
        "tool_uses": 0,
        "file_edits": 0,
        "decode_errors": 0,
    }
    for result in results:
        if result.status == "ingested":
            totals["imported"] += 1
        elif result.status in totals:
            totals[result.status] += 1
        totals["messages"] += result.counters.messages
        totals["tool_uses"] += result.counters.tool_uses
        totals["file_edits"] += result.counters.file_edits
        totals["decode_errors"] += result.counters.decode_errors
    return totals


def _print_results(results: list[IngestResult]) -> None:
    for project, project_results in groupby(results, key=lambda r: r.project):
        print(f"Project: {project}")
        for result in project_results:
            if result.status == "skipped":
                print(f"  {result.session_id}: already imported")
                continue
            if result.status == "empty":
                print(f"  {result.session_id}: empty")
                continue
            if result.status == "failed":
                print(f"  {result.session_id}: failed ({result.error})")
                continue
            counters = result.counters
            print(f"  {result.session_id}: {result.end_offset / 1024:.1f} KB")
            print(f"    Messages: {counters.messages}")
            print(f"    Tool uses: {counters.tool_uses}")
            for tool, count in sorted(counters.tool_counts.items(), key=lambda kv: (-kv[1], kv[0])):
                print(f"      {tool}: {count}")
            if counters.decode_errors:
                print(f"    Skipped lines: {counters.decode_errors}")
        print()


async def _run(root: Path, db_path: Path) -> int:
    if not root.is_dir():
        print(f"Projects directory not found: {root}")
        return 1

    db = await connection.open_connection(db_path)
    try:
        await run_migrations(db)
        tracker = SessionTracker(SqliteCursorRepository(db))
        await tracker.load()
        engine = IngestionEngine(StoreEventSink(SqliteUsageRepository(db)), tracker)
        results = await engine.import_directory(root)
    finally:
        await db.close()

    _print_results(results)
    totals = summarize(results)
    print("Total statistics:")
    print(f"  Projects: {totals['projects']}")
    print(f"  Sessions: {totals['sessions']}")
    print(f"  New sessions imported: {totals['imported']}")
    print(f"  Messages: {totals['messages']}")
    print(f"  Tool uses: {totals['tool_uses']}")
    print(f"  File edits: {totals['file_edits']}")
    print(f"  Skipped lines: {totals['decode_errors']}")
    if totals["imported"]:
        print(f"Imported {totals['imported']} new session(s) into {db_path}")
    else:
        print("All sessions already imported.")
    return 1 if totals["failed"] else 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Import session logs into the cctrack store")
    parser.add_argument("--root", type=Path, default=config.PROJECTS_DIR, help="Projects directory to scan")
    parser.add_argument("--db", type=Path, default=config.DB_PATH, help="SQLite database path")
    parser.add_argument("--verbose", action="store_true", help="Log per-file progress")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    return asyncio.run(_run(args.root.expanduser(), args.db.expanduser()))


if __name__ == "__main__":
    raise SystemExit(main())
