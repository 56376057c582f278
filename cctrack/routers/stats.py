"""Read-side statistics and ingestion status."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from cctrack.routers.api import get_usage_repo

stats_router = APIRouter(prefix="/api/stats", tags=["stats"])
ingest_router = APIRouter(prefix="/api/ingest", tags=["ingest"])


@stats_router.get("/overview")
async def get_overview(request: Request):
    """Totals, token sums and the five most used tools."""
    return await get_usage_repo(request).overview()


@stats_router.get("/tools")
async def get_tool_stats(request: Request):
    return await get_usage_repo(request).tool_histogram()


@stats_router.get("/timeline")
async def get_timeline(request: Request):
    """Tool uses per day for the 30 most recent days with activity."""
    return await get_usage_repo(request).timeline()


@stats_router.get("/files")
async def get_file_stats(request: Request):
    return await get_usage_repo(request).file_histogram()


@ingest_router.get("/status")
async def get_ingest_status(request: Request):
    engine = getattr(request.app.state, "ingestion_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Ingestion engine not initialized")
    status = await engine.get_status()
    status["collections"] = await get_usage_repo(request).collection_counts()
    return status
