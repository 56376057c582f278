"""Change watcher using watchfiles.

Monitors the projects tree for new or growing session logs and hands each
stable file to the ingestion engine in tail mode.
"""
from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from watchfiles import Change, awatch

from cctrack import config
from cctrack.db.ingestion import IngestionEngine, discover_session_files

logger = logging.getLogger("cctrack.watcher")


def is_watched_log_file(
    path: Path,
    root: Path,
    max_depth: int | None = None,
    extension: str | None = None,
) -> bool:
    """True for non-hidden log files at most `max_depth` directories below `root`."""
    max_depth = config.WATCH_DEPTH if max_depth is None else max_depth
    extension = extension or config.LOG_EXTENSION
    try:
        parts = path.relative_to(root).parts
    except ValueError:
        return False
    if not parts or len(parts) - 1 > max_depth:
        return False
    if any(part.startswith(".") for part in parts):
        return False
    return path.suffix == extension


async def wait_for_stable_write(
    path: Path,
    threshold_ms: int | None = None,
    poll_interval_ms: int | None = None,
) -> bool:
    """Poll size and mtime until they hold still for `threshold_ms`.

    Returns False if the file disappears while waiting.
    """
    threshold = (config.STABILITY_THRESHOLD_MS if threshold_ms is None else threshold_ms) / 1000
    interval = (config.POLL_INTERVAL_MS if poll_interval_ms is None else poll_interval_ms) / 1000
    last_signature: tuple[int, int] | None = None
    quiet_since = time.monotonic()
    while True:
        try:
            stats = path.stat()
        except OSError:
            return False
        signature = (stats.st_size, stats.st_mtime_ns)
        now = time.monotonic()
        if signature != last_signature:
            last_signature = signature
            quiet_since = now
        elif now - quiet_since >= threshold:
            return True
        await asyncio.sleep(interval)


class InFlightGuard:
    """Maps each path to the task currently ingesting it.

    A path stays claimed for `cooldown_seconds` after its task finishes so
    that a burst of notifications for one write triggers one ingestion.
    """

    def __init__(self, cooldown_seconds: float | None = None):
        self.cooldown_seconds = (
            config.PROCESSING_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        )
        self._tasks: dict[str, asyncio.Task] = {}

    def is_active(self, path: Path | str) -> bool:
        return str(path) in self._tasks

    @property
    def active_paths(self) -> list[str]:
        return list(self._tasks)

    def submit(self, path: Path | str, work: Callable[[], Awaitable[Any]]) -> Optional[asyncio.Task]:
        """Start `work` for `path` unless that path is already claimed."""
        key = str(path)
        if key in self._tasks:
            logger.debug("Already processing %s, ignoring trigger", key)
            return None
        task = asyncio.create_task(self._run(key, work), name=f"ingest:{key}")
        self._tasks[key] = task
        return task

    async def _run(self, key: str, work: Callable[[], Awaitable[Any]]) -> Any:
        try:
            result = await work()
        except asyncio.CancelledError:
            self._tasks.pop(key, None)
            raise
        except Exception:
            logger.exception("Ingestion of %s failed", key)
            result = None
        try:
            await asyncio.sleep(self.cooldown_seconds)
        finally:
            self._tasks.pop(key, None)
        return result

    async def wait_idle(self) -> None:
        """Wait for every claimed path to be released."""
        while self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()


class ChangeWatcher:
    """Background watcher that tails session logs as they change."""

    def __init__(
        self,
        engine: IngestionEngine,
        root: Path | None = None,
        guard: InFlightGuard | None = None,
        *,
        max_depth: int | None = None,
        stability_threshold_ms: int | None = None,
        poll_interval_ms: int | None = None,
        initial_scan: bool = False,
    ):
        self.engine = engine
        self.root = Path(root or config.PROJECTS_DIR)
        self.guard = guard or InFlightGuard()
        self.max_depth = config.WATCH_DEPTH if max_depth is None else max_depth
        self.stability_threshold_ms = stability_threshold_ms
        self.poll_interval_ms = poll_interval_ms
        self.initial_scan = initial_scan
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._running = False

    async def start(self) -> None:
        """Start watching in a background task."""
        if self._running:
            logger.warning("Change watcher already running")
            return
        if not self.root.is_dir():
            logger.warning("Projects directory not found, watcher has nothing to monitor: %s", self.root)
            return

        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(), name="cctrack-watcher")
        logger.info("Change watcher started for %s", self.root)

    async def stop(self) -> None:
        """Stop watching and cancel in-flight ingestions."""
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.guard.cancel_all()
        logger.info("Change watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def trigger(self, path: Path) -> Optional[asyncio.Task]:
        """Schedule a tail pass for `path` once its writes settle."""
        return self.guard.submit(path, lambda: self._process(path))

    def handle_changes(self, changes: set[tuple[Change, str]]) -> list[asyncio.Task]:
        tasks = []
        for path in self._classify_changes(changes):
            task = self.trigger(path)
            if task is not None:
                tasks.append(task)
        return tasks

    async def _process(self, path: Path):
        if not await wait_for_stable_write(path, self.stability_threshold_ms, self.poll_interval_ms):
            logger.debug("%s disappeared before it settled", path)
            return None
        return await self.engine.tail_file(path)

    async def _watch_loop(self) -> None:
        if self.initial_scan:
            initial = [self.trigger(path) for path in discover_session_files(self.root)]
            logger.info("Queued %d existing session files", sum(1 for t in initial if t is not None))

        try:
            async for changes in awatch(self.root, stop_event=self._stop_event, recursive=True):
                if not self._running:
                    break
                tasks = self.handle_changes(changes)
                if tasks:
                    logger.info("Detected changes in %d session files", len(tasks))
        except asyncio.CancelledError:
            logger.info("Change watcher task cancelled")
            raise
        except Exception:
            logger.exception("Change watcher error")
        finally:
            self._running = False

    def _classify_changes(self, changes: set[tuple[Change, str]]) -> list[Path]:
        """Paths of added or modified log files, deduplicated, in sorted order."""
        paths: set[Path] = set()
        for change_type, path_str in changes:
            if change_type not in (Change.added, Change.modified):
                continue
            path = Path(path_str)
            if is_watched_log_file(path, self.root, self.max_depth):
                paths.add(path)
        return sorted(paths)
