"""API routers for event intake, sessions and VS Code workspace data."""
from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, Request
from pydantic import ValidationError

from cctrack.db.repositories.usage import SqliteUsageRepository
from cctrack.models import EVENT_TYPE_TO_COLLECTION, SESSION_EVENT_TYPE, VSCODE_DATA, LogEventIn

logger = logging.getLogger("cctrack")

log_router = APIRouter(prefix="/api/log", tags=["log"])
sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
vscode_router = APIRouter(prefix="/api/vscode", tags=["vscode"])


def get_usage_repo(request: Request) -> SqliteUsageRepository:
    repo = getattr(request.app.state, "usage_repo", None)
    if repo is None:
        raise HTTPException(status_code=503, detail="Store not initialized")
    return repo


# ── Event intake ────────────────────────────────────────────────────

@log_router.post("")
async def log_event(request: Request, event: LogEventIn):
    """Append one usage event, or merge session fields when type is `session`."""
    repo = get_usage_repo(request)
    fields = event.model_dump(exclude={"type"})

    if event.type == SESSION_EVENT_TYPE:
        session_id = fields.pop("session_id")
        await repo.upsert_session(session_id, fields)
        return {"status": "success"}

    collection = EVENT_TYPE_TO_COLLECTION.get(event.type)
    if collection is None:
        logger.warning("Rejected event with unknown type %r", event.type)
        raise HTTPException(status_code=400, detail=f"Unknown event type: {event.type}")
    if collection == VSCODE_DATA:
        fields.pop("session_id", None)

    try:
        await repo.append(collection, fields)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))
    return {"status": "success"}


# ── Sessions ────────────────────────────────────────────────────────

@sessions_router.get("")
async def list_sessions(request: Request):
    """Per-session rollups, most recently active first."""
    return await get_usage_repo(request).session_rollups()


@sessions_router.get("/{session_id}")
async def get_session(request: Request, session_id: str):
    detail = await get_usage_repo(request).session_detail(session_id)
    if detail is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return detail


# ── VS Code ─────────────────────────────────────────────────────────

@vscode_router.get("/workspaces")
async def list_vscode_workspaces(request: Request):
    return await get_usage_repo(request).list_events(VSCODE_DATA)
