"""Destinations for events produced by the ingestion engine.

`StoreEventSink` writes straight into the in-process aggregate store.
`HttpEventSink` ships each event to a running server's POST /api/log, one
request per event; delivery is best-effort and failures are logged and
dropped because the log file can always be re-scanned later.
"""
from __future__ import annotations

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from pydantic import BaseModel

from cctrack import config
from cctrack.db.repositories.usage import SqliteUsageRepository
from cctrack.models import COLLECTION_TO_EVENT_TYPE, SESSION_EVENT_TYPE, UsageEvent

logger = logging.getLogger("cctrack.sink")


class EventSink(Protocol):
    async def emit(self, event: UsageEvent) -> None: ...

    async def upsert_session(self, session_id: str, fields: BaseModel | dict) -> None: ...

    async def has_session(self, session_id: str) -> bool: ...


class StoreEventSink:
    """In-process sink; store write failures propagate to the caller."""

    def __init__(self, repo: SqliteUsageRepository):
        self.repo = repo

    async def emit(self, event: UsageEvent) -> None:
        await self.repo.append(event.collection, event)

    async def upsert_session(self, session_id: str, fields: BaseModel | dict) -> None:
        await self.repo.upsert_session(session_id, fields)

    async def has_session(self, session_id: str) -> bool:
        return await self.repo.has_session(session_id)


class HttpEventSink:
    """Deliver events to a remote cctrack server over HTTP."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = (base_url or config.API_URL).rstrip("/")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout if timeout is not None else config.HTTP_TIMEOUT_SECONDS,
        )
        self.delivered = 0
        self.dropped = 0

    async def _post(self, payload: dict[str, Any]) -> bool:
        try:
            response = await self._client.post("/api/log", json=payload)
        except httpx.HTTPError as exc:
            self.dropped += 1
            logger.warning("Dropped %s event for %s: %s", payload.get("type"), payload.get("session_id"), exc)
            return False
        if response.status_code >= 400:
            self.dropped += 1
            logger.warning(
                "Dropped %s event for %s: HTTP %s",
                payload.get("type"), payload.get("session_id"), response.status_code,
            )
            return False
        self.delivered += 1
        return True

    async def emit(self, event: UsageEvent) -> None:
        await self._post({"type": COLLECTION_TO_EVENT_TYPE[event.collection], **event.model_dump()})

    async def upsert_session(self, session_id: str, fields: BaseModel | dict) -> None:
        payload = fields.model_dump() if isinstance(fields, BaseModel) else dict(fields)
        await self._post({**payload, "type": SESSION_EVENT_TYPE, "session_id": session_id})

    async def has_session(self, session_id: str) -> bool:
        try:
            response = await self._client.get(f"/api/sessions/{quote(session_id, safe='')}")
        except httpx.HTTPError as exc:
            logger.warning("Could not check session %s: %s", session_id, exc)
            return False
        return response.status_code == 200

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
