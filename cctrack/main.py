"""cctrack FastAPI backend: main application entry point."""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cctrack import config
from cctrack.db import connection
from cctrack.db.file_watcher import ChangeWatcher
from cctrack.db.ingestion import IngestionEngine
from cctrack.db.repositories import SqliteCursorRepository, SqliteUsageRepository
from cctrack.db.sinks import StoreEventSink
from cctrack.db.sqlite_migrations import run_migrations
from cctrack.observability import initialize as initialize_observability, shutdown as shutdown_observability
from cctrack.parsers.sessions import SessionTracker
from cctrack.routers.api import log_router, sessions_router, vscode_router
from cctrack.routers.stats import ingest_router, stats_router

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("cctrack")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("cctrack backend starting up")
    initialize_observability(app)

    # 1. Store
    db = await connection.get_connection()
    await run_migrations(db)
    usage_repo = SqliteUsageRepository(db)
    app.state.usage_repo = usage_repo

    # 2. Engine with persisted cursors
    tracker = SessionTracker(SqliteCursorRepository(db))
    await tracker.load()
    engine = IngestionEngine(StoreEventSink(usage_repo), tracker)
    app.state.ingestion_engine = engine

    watcher = ChangeWatcher(engine, config.PROJECTS_DIR)
    app.state.watcher = watcher

    # 3. First-run import, then live tailing; runs in the background so startup is not blocked
    async def _run_startup_pipeline() -> None:
        if config.STARTUP_IMPORT:
            results = await engine.import_directory(config.PROJECTS_DIR)
            ingested = sum(1 for r in results if r.status == "ingested")
            logger.info("Startup import ingested %d of %d session files", ingested, len(results))
        if config.WATCHER_ENABLED:
            await watcher.start()

    app.state.startup_task = asyncio.create_task(_run_startup_pipeline())

    yield

    logger.info("cctrack backend shutting down")

    startup_task = app.state.startup_task
    if not startup_task.done():
        startup_task.cancel()
    try:
        await startup_task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Startup import failed")

    await watcher.stop()
    shutdown_observability(app)
    await connection.close_connection()


app = FastAPI(
    title="cctrack API",
    description="Usage statistics collected from coding-assistant session logs",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(log_router)
app.include_router(sessions_router)
app.include_router(vscode_router)
app.include_router(stats_router)
app.include_router(ingest_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    watcher = getattr(app.state, "watcher", None)
    return {
        "status": "ok",
        "db": "connected" if connection.is_connected() else "disconnected",
        "watcher": "running" if watcher is not None and watcher.is_running else "stopped",
    }


def run() -> None:
    import uvicorn

    uvicorn.run("cctrack.main:app", host=config.HOST, port=config.PORT)


if __name__ == "__main__":
    run()
