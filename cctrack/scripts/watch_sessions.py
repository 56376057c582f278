#!/usr/bin/env python3
"""Watch the projects tree and tail session logs as they grow.

Events go straight into the local SQLite store, or with --api-url to a
running cctrack server, one POST /api/log per event.

Usage:
  python -m cctrack.scripts.watch_sessions
  python -m cctrack.scripts.watch_sessions --api-url http://localhost:5000
"""
from __future__ import annotations

import argparse
import asyncio
import logging
from pathlib import Path

from cctrack import config
from cctrack.db import connection
from cctrack.db.file_watcher import ChangeWatcher
from cctrack.db.ingestion import IngestionEngine
from cctrack.db.repositories import SqliteCursorRepository, SqliteUsageRepository
from cctrack.db.sinks import HttpEventSink, StoreEventSink
from cctrack.db.sqlite_migrations import run_migrations
from cctrack.parsers.sessions import SessionTracker

logger = logging.getLogger("cctrack.watcher")

DEFAULT_STATE_DB = config.PROJECT_ROOT / "data" / "watcher_state.db"


async def _run(root: Path, db_path: Path, api_url: str | None) -> int:
    if not root.is_dir():
        print(f"Projects directory not found: {root}")
        return 1

    # Cursors always live locally; in HTTP mode the store is remote.
    db = await connection.open_connection(db_path)
    http_sink: HttpEventSink | None = None
    try:
        await run_migrations(db)
        tracker = SessionTracker(SqliteCursorRepository(db))
        await tracker.load()
        if api_url:
            http_sink = HttpEventSink(api_url)
            sink = http_sink
            print(f"Sending events to {http_sink.base_url}/api/log")
        else:
            sink = StoreEventSink(SqliteUsageRepository(db))
            print(f"Writing events to {db_path}")

        watcher = ChangeWatcher(IngestionEngine(sink, tracker), root, initial_scan=True)
        await watcher.start()
        print(f"Watching {root} (Ctrl+C to stop)")
        try:
            while watcher.is_running:
                await asyncio.sleep(1)
        finally:
            await watcher.stop()
    finally:
        if http_sink is not None:
            await http_sink.aclose()
            logger.info("Delivered %d events, dropped %d", http_sink.delivered, http_sink.dropped)
        await db.close()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Tail session logs into cctrack")
    parser.add_argument("--root", type=Path, default=config.PROJECTS_DIR, help="Projects directory to watch")
    parser.add_argument("--api-url", default="", help="Deliver events to this cctrack server instead of the local store")
    parser.add_argument("--db", type=Path, default=None, help="SQLite database (store, or cursor state with --api-url)")
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)

    db_path = args.db or (DEFAULT_STATE_DB if args.api_url else config.DB_PATH)
    try:
        return asyncio.run(_run(args.root.expanduser(), Path(db_path).expanduser(), args.api_url or None))
    except KeyboardInterrupt:
        print("Stopping watcher...")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
