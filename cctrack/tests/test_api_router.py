import types
import unittest

import aiosqlite
from fastapi import HTTPException

from cctrack.db.repositories.usage import SqliteUsageRepository
from cctrack.db.sqlite_migrations import run_migrations
from cctrack.models import FILE_EDITS, LogEventIn
from cctrack.routers import api as api_router
from cctrack.routers import stats as stats_router


class _FakeEngine:
    async def get_status(self):
        return {"totals": {"ingested": 2, "failed": 0}, "scan": 1, "tracked_files": 2, "recent": []}


class _RouterTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteUsageRepository(self.db)
        self.request = types.SimpleNamespace(
            app=types.SimpleNamespace(
                state=types.SimpleNamespace(usage_repo=self.repo, ingestion_engine=_FakeEngine())
            )
        )

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def _log(self, **payload):
        return await api_router.log_event(self.request, LogEventIn(**payload))


class ApiRouterTests(_RouterTestCase):
    async def test_log_event_appends_to_matching_collection(self) -> None:
        response = await self._log(type="file_edit", session_id="S-1", file_path="/a.py", operation="edit", lines_changed=10)

        self.assertEqual(response, {"status": "success"})
        rows = await self.repo.list_events(FILE_EDITS)
        self.assertEqual(rows[0]["file_path"], "/a.py")
        self.assertTrue(rows[0]["timestamp"].endswith("Z"))

    async def test_log_event_defaults_session_id(self) -> None:
        await self._log(type="tool_usage", tool_name="Read")

        detail = await api_router.get_session(self.request, "default")

        self.assertEqual(detail["stats"]["total_tools"], 1)

    async def test_unknown_event_type_is_rejected(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await self._log(type="telemetry", session_id="S-1")

        self.assertEqual(ctx.exception.status_code, 400)

    async def test_invalid_event_fields_are_rejected(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await self._log(type="file_edit", session_id="S-1", file_path="/a.py", operation="delete")

        self.assertEqual(ctx.exception.status_code, 422)

    async def test_session_events_merge_metadata(self) -> None:
        await self._log(type="session", session_id="S-1", project="/p", file_size=10)
        await self._log(type="session", session_id="S-1", file_size=20)
        await self._log(type="message", session_id="S-1", role="user", content_length=3)

        sessions = await api_router.list_sessions(self.request)

        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0]["project"], "/p")
        self.assertEqual(sessions[0]["file_size"], 20)
        self.assertEqual(sessions[0]["message_count"], 1)

    async def test_unknown_session_is_404(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await api_router.get_session(self.request, "missing")

        self.assertEqual(ctx.exception.status_code, 404)

    async def test_vscode_workspaces(self) -> None:
        await self._log(type="vscode_data", workspace_id="w1", data_type="recent", data=["a", "b"])

        rows = await api_router.list_vscode_workspaces(self.request)

        self.assertEqual(rows[0]["workspace_id"], "w1")
        self.assertEqual(rows[0]["data"], ["a", "b"])

    async def test_missing_store_is_503(self) -> None:
        request = types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace()))

        with self.assertRaises(HTTPException) as ctx:
            await api_router.list_sessions(request)

        self.assertEqual(ctx.exception.status_code, 503)


class StatsRouterTests(_RouterTestCase):
    async def test_overview_and_histograms(self) -> None:
        for name in ["A", "B", "A", "A", "C"]:
            await self._log(type="tool_usage", session_id="S-1", tool_name=name)
        await self._log(type="token_usage", session_id="S-1", input_tokens=10, output_tokens=5)
        await self._log(type="file_edit", session_id="S-1", file_path="/a.py", operation="write")

        overview = await stats_router.get_overview(self.request)
        tools = await stats_router.get_tool_stats(self.request)
        timeline = await stats_router.get_timeline(self.request)
        files = await stats_router.get_file_stats(self.request)

        self.assertEqual(overview["total_tools"], 5)
        self.assertEqual(overview["tokens"]["total_tokens"], 15)
        self.assertEqual([(t["name"], t["count"]) for t in tools], [("A", 3), ("B", 1), ("C", 1)])
        self.assertEqual(sum(row["count"] for row in timeline), 5)
        self.assertEqual(files, [{"path": "/a.py", "edits": 1, "lines": 0}])

    async def test_ingest_status_includes_collection_counts(self) -> None:
        await self._log(type="message", session_id="S-1", role="user")

        status = await stats_router.get_ingest_status(self.request)

        self.assertEqual(status["totals"]["ingested"], 2)
        self.assertEqual(status["collections"]["messages"], 1)


if __name__ == "__main__":
    unittest.main()
