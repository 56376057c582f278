import asyncio
import tempfile
import time
import unittest
from pathlib import Path

from watchfiles import Change

from cctrack.db.file_watcher import ChangeWatcher, InFlightGuard, is_watched_log_file, wait_for_stable_write


class _BlockingEngine:
    def __init__(self) -> None:
        self.calls: list[Path] = []
        self.release = asyncio.Event()

    async def tail_file(self, path):
        self.calls.append(path)
        await self.release.wait()
        return "done"


class WatchedFileFilterTests(unittest.TestCase):
    def test_filters_by_extension_depth_and_hidden_parts(self) -> None:
        root = Path("/logs")
        cases = {
            "/logs/-proj/S-1.jsonl": True,
            "/logs/-proj/sub/S-1.jsonl": True,
            "/logs/-proj/sub/deeper/S-1.jsonl": False,
            "/logs/-proj/S-1.json": False,
            "/logs/-proj/.S-1.jsonl": False,
            "/logs/.git/S-1.jsonl": False,
            "/elsewhere/-proj/S-1.jsonl": False,
        }
        for raw, expected in cases.items():
            with self.subTest(path=raw):
                self.assertEqual(is_watched_log_file(Path(raw), root, max_depth=2), expected)


class InFlightGuardTests(unittest.IsolatedAsyncioTestCase):
    async def test_duplicate_trigger_is_suppressed_while_in_flight(self) -> None:
        guard = InFlightGuard(cooldown_seconds=0.05)
        started: list[int] = []
        release = asyncio.Event()

        async def work():
            started.append(1)
            await release.wait()
            return "ok"

        first = guard.submit("/logs/a.jsonl", work)
        second = guard.submit("/logs/a.jsonl", work)
        other = guard.submit("/logs/b.jsonl", work)
        await asyncio.sleep(0.01)

        self.assertIsNotNone(first)
        self.assertIsNone(second)
        self.assertIsNotNone(other)
        self.assertEqual(len(started), 2)

        release.set()
        self.assertEqual(await first, "ok")
        await other
        self.assertFalse(guard.is_active("/logs/a.jsonl"))

    async def test_path_stays_claimed_during_cooldown(self) -> None:
        guard = InFlightGuard(cooldown_seconds=0.2)

        async def work():
            return 1

        task = guard.submit("/logs/a.jsonl", work)
        await asyncio.sleep(0.05)

        self.assertTrue(guard.is_active("/logs/a.jsonl"))
        self.assertIsNone(guard.submit("/logs/a.jsonl", work))
        await task
        self.assertIsNotNone(guard.submit("/logs/a.jsonl", work))
        await guard.wait_idle()

    async def test_failed_work_is_logged_and_released(self) -> None:
        guard = InFlightGuard(cooldown_seconds=0)

        async def work():
            raise RuntimeError("boom")

        with self.assertLogs("cctrack.watcher", level="ERROR"):
            result = await guard.submit("/logs/a.jsonl", work)

        self.assertIsNone(result)
        self.assertEqual(guard.active_paths, [])

    async def test_cancel_all_stops_in_flight_work(self) -> None:
        guard = InFlightGuard(cooldown_seconds=5)
        never = asyncio.Event()

        async def work():
            await never.wait()

        task = guard.submit("/logs/a.jsonl", work)
        await asyncio.sleep(0.01)
        await guard.cancel_all()

        self.assertTrue(task.cancelled())
        self.assertEqual(guard.active_paths, [])


class ChangeWatcherTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.log = self.root / "-proj" / "S-1.jsonl"
        self.log.parent.mkdir()
        self.log.write_text('{"type": "user"}\n', encoding="utf-8")
        self.engine = _BlockingEngine()
        self.watcher = ChangeWatcher(
            self.engine,
            self.root,
            InFlightGuard(cooldown_seconds=0.05),
            stability_threshold_ms=0,
            poll_interval_ms=10,
        )

    async def asyncTearDown(self) -> None:
        await self.watcher.guard.cancel_all()

    async def test_classify_keeps_added_and_modified_log_files(self) -> None:
        changes = {
            (Change.modified, str(self.log)),
            (Change.added, str(self.log)),
            (Change.deleted, str(self.root / "-proj" / "S-2.jsonl")),
            (Change.modified, str(self.root / "-proj" / "notes.md")),
        }

        self.assertEqual(self.watcher._classify_changes(changes), [self.log])

    async def test_repeated_notifications_start_one_ingestion(self) -> None:
        tasks = self.watcher.handle_changes({(Change.modified, str(self.log))})
        tasks += self.watcher.handle_changes({(Change.modified, str(self.log))})
        await asyncio.sleep(0.1)
        tasks += self.watcher.handle_changes({(Change.added, str(self.log))})

        self.assertEqual(len(tasks), 1)
        self.assertEqual(self.engine.calls, [self.log])

        self.engine.release.set()
        self.assertEqual(await tasks[0], "done")

    async def test_stop_cancels_in_flight_ingestion(self) -> None:
        tasks = self.watcher.handle_changes({(Change.modified, str(self.log))})
        await asyncio.sleep(0.05)

        await self.watcher.stop()

        self.assertTrue(tasks[0].cancelled())
        self.assertFalse(self.watcher.is_running)

    async def test_stable_write_wait_handles_missing_file(self) -> None:
        self.assertTrue(await wait_for_stable_write(self.log, threshold_ms=0, poll_interval_ms=1))
        self.assertFalse(await wait_for_stable_write(self.root / "gone.jsonl", threshold_ms=0, poll_interval_ms=1))

    async def test_stable_write_wait_holds_until_writes_go_quiet(self) -> None:
        last_append = 0.0

        async def keep_writing() -> None:
            nonlocal last_append
            for i in range(15):
                with self.log.open("a", encoding="utf-8") as handle:
                    handle.write(f'{{"n":{i}}}\n')
                last_append = time.monotonic()
                await asyncio.sleep(0.02)

        writer = asyncio.create_task(keep_writing())
        await asyncio.sleep(0.005)
        stable = await wait_for_stable_write(self.log, threshold_ms=100, poll_interval_ms=5)
        returned_at = time.monotonic()
        await writer

        self.assertTrue(stable)
        self.assertGreaterEqual(returned_at - last_append, 0.1)


if __name__ == "__main__":
    unittest.main()
