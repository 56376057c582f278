import unittest
from datetime import date, timedelta

import aiosqlite

from cctrack.db.repositories.usage import SqliteUsageRepository
from cctrack.db.sqlite_migrations import run_migrations
from cctrack.models import (
    FILE_EDITS,
    MESSAGES,
    TOKEN_USAGE,
    TOOL_USAGE,
    VSCODE_DATA,
    FileEditEvent,
    MessageEvent,
    ToolUsageEvent,
)


class UsageRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteUsageRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _tools(self, names: list[str], session_id: str = "S-1", timestamp: str = "2026-02-16T10:00:00Z") -> None:
        for name in names:
            await self.repo.append(TOOL_USAGE, ToolUsageEvent(session_id=session_id, tool_name=name, timestamp=timestamp))

    async def test_append_rejects_unknown_collection(self) -> None:
        with self.assertRaises(ValueError):
            await self.repo.append("bogus", {"session_id": "S-1"})

    async def test_append_normalizes_or_stamps_timestamp(self) -> None:
        await self.repo.append(MESSAGES, {"session_id": "S-1", "role": "user", "timestamp": "2026-02-16T12:00:00+02:00"})
        await self.repo.append(MESSAGES, {"session_id": "S-1", "role": "assistant"})

        rows = await self.repo.list_events(MESSAGES)

        self.assertEqual(rows[0]["timestamp"], "2026-02-16T10:00:00Z")
        self.assertTrue(rows[1]["timestamp"].endswith("Z"))
        self.assertEqual(rows[1]["content_length"], 0)

    async def test_upsert_session_merges_new_fields_over_old(self) -> None:
        await self.repo.upsert_session("S-1", {"project": "/a", "file_size": 10, "note": "keep"})
        merged = await self.repo.upsert_session("S-1", {"file_size": 25, "modified": "2026-02-16T10:00:00Z"})

        stored = await self.repo.get_session("S-1")

        self.assertEqual(merged, stored)
        self.assertEqual(stored["project"], "/a")
        self.assertEqual(stored["note"], "keep")
        self.assertEqual(stored["file_size"], 25)
        self.assertEqual(await self.repo.count("sessions"), 1)
        self.assertTrue(await self.repo.has_session("S-1"))
        self.assertFalse(await self.repo.has_session("S-2"))

    async def test_tool_histogram_orders_by_count_then_first_seen(self) -> None:
        await self._tools(["A", "B", "A", "A", "C"])

        histogram = await self.repo.tool_histogram()

        self.assertEqual(
            histogram,
            [{"name": "A", "count": 3}, {"name": "B", "count": 1}, {"name": "C", "count": 1}],
        )

    async def test_tool_histogram_tie_break_is_first_seen(self) -> None:
        await self._tools(["C", "B"])

        self.assertEqual([row["name"] for row in await self.repo.tool_histogram()], ["C", "B"])

    async def test_timeline_keeps_thirty_most_recent_days(self) -> None:
        start = date(2026, 1, 1)
        for offset in range(35):
            day = (start + timedelta(days=offset)).isoformat()
            await self._tools(["Read"] * (1 + offset % 2), timestamp=f"{day}T09:00:00Z")

        timeline = await self.repo.timeline()

        self.assertEqual(len(timeline), 30)
        self.assertEqual(timeline[0]["date"], (start + timedelta(days=34)).isoformat())
        self.assertEqual(timeline[-1]["date"], (start + timedelta(days=5)).isoformat())
        dates = [row["date"] for row in timeline]
        self.assertEqual(dates, sorted(dates, reverse=True))
        self.assertEqual(timeline[0]["count"], 1)
        self.assertEqual(timeline[1]["count"], 2)

    async def test_file_histogram_sums_lines_and_caps_results(self) -> None:
        for _ in range(3):
            await self.repo.append(FILE_EDITS, FileEditEvent(session_id="S-1", file_path="/a.py", operation="edit", lines_changed=10))
        await self.repo.append(FILE_EDITS, FileEditEvent(session_id="S-1", file_path="/a.py", operation="write", lines_changed=0))
        for index in range(25):
            await self.repo.append(FILE_EDITS, FileEditEvent(session_id="S-1", file_path=f"/f{index}.py", operation="write"))

        histogram = await self.repo.file_histogram()

        self.assertEqual(len(histogram), 20)
        self.assertEqual(histogram[0], {"path": "/a.py", "edits": 4, "lines": 30})
        self.assertEqual(histogram[1]["path"], "/f0.py")

    async def test_overview_includes_token_totals_and_top_tools(self) -> None:
        await self._tools(["Read", "Read", "Edit", "Bash", "Grep", "Glob", "Write"])
        await self.repo.append(TOKEN_USAGE, {"session_id": "S-1", "input_tokens": 10, "output_tokens": 5, "cache_read_input_tokens": 7})
        await self.repo.append(TOKEN_USAGE, {"session_id": "S-1", "input_tokens": 3, "cache_creation_input_tokens": 2})

        overview = await self.repo.overview()

        self.assertEqual(overview["total_tools"], 7)
        self.assertEqual(overview["total_messages"], 0)
        self.assertEqual(
            overview["tokens"],
            {
                "input_tokens": 13,
                "output_tokens": 5,
                "cache_read_tokens": 7,
                "cache_write_tokens": 2,
                "total_tokens": 18,
            },
        )
        self.assertEqual(len(overview["top_tools"]), 5)
        self.assertEqual(overview["top_tools"][0], {"name": "Read", "count": 2})

    async def test_session_rollups_overlay_metadata_and_sort_by_latest(self) -> None:
        await self.repo.append(MESSAGES, MessageEvent(session_id="old", role="user", timestamp="2026-01-01T10:00:00Z"))
        await self.repo.append(MESSAGES, MessageEvent(session_id="new", role="user", timestamp="2026-02-01T10:00:00Z"))
        await self.repo.append(TOOL_USAGE, ToolUsageEvent(session_id="new", tool_name="Read", timestamp="2026-02-03T10:00:00Z"))
        await self.repo.append(FILE_EDITS, FileEditEvent(session_id="new", file_path="/a", operation="edit", timestamp="2026-01-30T10:00:00Z"))
        await self.repo.upsert_session("new", {"project": "/p", "ingested_messages": 1})
        await self.repo.upsert_session("metadata-only", {"project": "/q"})

        rollups = await self.repo.session_rollups()

        self.assertEqual([r["session_id"] for r in rollups], ["new", "old"])
        newest = rollups[0]
        self.assertEqual((newest["message_count"], newest["tool_count"], newest["file_count"]), (1, 1, 1))
        self.assertEqual(newest["first_timestamp"], "2026-01-30T10:00:00Z")
        self.assertEqual(newest["last_timestamp"], "2026-02-03T10:00:00Z")
        self.assertEqual(newest["project"], "/p")

    async def test_session_detail(self) -> None:
        await self.repo.append(MESSAGES, MessageEvent(session_id="S-1", role="user", content_length=4))
        await self.repo.append(TOOL_USAGE, ToolUsageEvent(session_id="S-1", tool_name="Read"))
        await self.repo.append(TOOL_USAGE, ToolUsageEvent(session_id="S-2", tool_name="Read"))

        detail = await self.repo.session_detail("S-1")

        self.assertEqual(detail["stats"], {"total_messages": 1, "total_tools": 1, "total_files": 0})
        self.assertIs(detail["tools"][0]["success"], True)
        self.assertIsNone(await self.repo.session_detail("missing"))

    async def test_vscode_data_round_trips_structured_payload(self) -> None:
        await self.repo.append(VSCODE_DATA, {"workspace_id": "w1", "data_type": "state", "data": {"open": ["a.py"]}})

        rows = await self.repo.list_events(VSCODE_DATA)

        self.assertEqual(rows[0]["data"], {"open": ["a.py"]})
        self.assertNotIn("data_json", rows[0])

    async def test_collection_counts(self) -> None:
        await self._tools(["Read"])

        counts = await self.repo.collection_counts()

        self.assertEqual(counts[TOOL_USAGE], 1)
        self.assertEqual(counts["sessions"], 0)
        with self.assertRaises(ValueError):
            await self.repo.count("sqlite_master")


if __name__ == "__main__":
    unittest.main()
