"""Pydantic models for parsed log entries, usage events and ingestion state."""
from __future__ import annotations

from typing import Any, ClassVar, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

# ── Collection names ────────────────────────────────────────────────

MESSAGES = "messages"
TOOL_USAGE = "tool_usage"
FILE_EDITS = "file_edits"
TOKEN_USAGE = "token_usage"
VSCODE_DATA = "vscode_data"

EVENT_COLLECTIONS = (MESSAGES, TOOL_USAGE, FILE_EDITS, TOKEN_USAGE, VSCODE_DATA)

# `type` values of POST /api/log and the collection each one lands in
EVENT_TYPE_TO_COLLECTION = {
    "message": MESSAGES,
    "tool_usage": TOOL_USAGE,
    "file_edit": FILE_EDITS,
    "token_usage": TOKEN_USAGE,
    "vscode_data": VSCODE_DATA,
}
COLLECTION_TO_EVENT_TYPE = {collection: kind for kind, collection in EVENT_TYPE_TO_COLLECTION.items()}
SESSION_EVENT_TYPE = "session"


# ── Parsed log lines ────────────────────────────────────────────────

class TokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class ToolInvocation(BaseModel):
    name: str = ""
    input: Any = None
    description: str = ""
    file_path: str = ""


class LogEntry(BaseModel):
    kind: Literal["user_message", "assistant_message", "other"] = "other"
    entry_type: str = ""
    content: Any = None
    content_length: int = 0
    timestamp: str = ""
    usage: Optional[TokenUsage] = None
    tool_invocations: list[ToolInvocation] = Field(default_factory=list)

    @property
    def is_message(self) -> bool:
        return self.kind != "other"

    @property
    def role(self) -> str:
        return self.entry_type if self.is_message else ""


# ── Usage events (append-only) ──────────────────────────────────────

class UsageEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    collection: ClassVar[str] = ""

    session_id: str = "default"
    timestamp: str = ""


class MessageEvent(UsageEvent):
    collection: ClassVar[str] = MESSAGES

    role: str = ""
    content_length: int = 0


class ToolUsageEvent(UsageEvent):
    collection: ClassVar[str] = TOOL_USAGE

    tool_name: str = ""
    description: str = ""
    success: bool = True


class FileEditEvent(UsageEvent):
    collection: ClassVar[str] = FILE_EDITS

    file_path: str
    operation: Literal["write", "edit"]
    lines_changed: int = 0


class TokenUsageEvent(UsageEvent):
    collection: ClassVar[str] = TOKEN_USAGE

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0


class VscodeDataEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    collection: ClassVar[str] = VSCODE_DATA

    workspace_id: str = ""
    data_type: str = ""
    data: Any = None
    timestamp: str = ""


EVENT_MODELS: dict[str, type[BaseModel]] = {
    MESSAGES: MessageEvent,
    TOOL_USAGE: ToolUsageEvent,
    FILE_EDITS: FileEditEvent,
    TOKEN_USAGE: TokenUsageEvent,
    VSCODE_DATA: VscodeDataEvent,
}


# ── Ingestion state ─────────────────────────────────────────────────

class IngestCounters(BaseModel):
    lines: int = 0
    messages: int = 0
    tool_uses: int = 0
    tool_counts: dict[str, int] = Field(default_factory=dict)
    file_edits: int = 0
    token_events: int = 0
    decode_errors: int = 0

    @property
    def events(self) -> int:
        return self.messages + self.tool_uses + self.file_edits + self.token_events

    def merged(self, other: IngestCounters) -> IngestCounters:
        tool_counts = dict(self.tool_counts)
        for name, count in other.tool_counts.items():
            tool_counts[name] = tool_counts.get(name, 0) + count
        return IngestCounters(
            lines=self.lines + other.lines,
            messages=self.messages + other.messages,
            tool_uses=self.tool_uses + other.tool_uses,
            tool_counts=tool_counts,
            file_edits=self.file_edits + other.file_edits,
            token_events=self.token_events + other.token_events,
            decode_errors=self.decode_errors + other.decode_errors,
        )


class ProcessingCursor(BaseModel):
    file_path: str
    session_id: str = ""
    status: Literal["unprocessed", "processed", "tailing"] = "unprocessed"
    offset: int = 0
    scan: int = 0
    stats: IngestCounters = Field(default_factory=IngestCounters)
    updated_at: str = ""


class IngestResult(BaseModel):
    path: str
    session_id: str = ""
    project: str = ""
    mode: Literal["import", "tail"] = "import"
    status: Literal["ingested", "skipped", "empty", "unchanged", "failed"] = "ingested"
    start_offset: int = 0
    end_offset: int = 0
    counters: IngestCounters = Field(default_factory=IngestCounters)
    error: str = ""
    started_at: str = ""
    duration_ms: int = 0


class SessionRecord(BaseModel):
    """Session metadata written on every completed ingestion pass.

    The ``ingested_*`` counters are cumulative over every pass of the file
    and are kept apart from the rollup counts computed from stored events.
    """

    model_config = ConfigDict(extra="allow")

    session_id: str
    project: str = ""
    file_size: int = 0
    created: str = ""
    modified: str = ""
    lines: int = 0
    ingested_messages: int = 0
    ingested_tool_uses: int = 0
    ingested_file_edits: int = 0
    ingested_token_events: int = 0
    tool_counts: dict[str, int] = Field(default_factory=dict)
    decode_errors: int = 0
    last_ingested: str = ""

    @classmethod
    def from_counters(
        cls, session_id: str, project: str, counters: IngestCounters, **metadata: Any
    ) -> SessionRecord:
        return cls(
            session_id=session_id,
            project=project,
            lines=counters.lines,
            ingested_messages=counters.messages,
            ingested_tool_uses=counters.tool_uses,
            ingested_file_edits=counters.file_edits,
            ingested_token_events=counters.token_events,
            tool_counts=dict(counters.tool_counts),
            decode_errors=counters.decode_errors,
            **metadata,
        )


# ── API payloads ────────────────────────────────────────────────────

class LogEventIn(BaseModel):
    """Body of POST /api/log; fields beyond type/session_id depend on the type."""

    model_config = ConfigDict(extra="allow")

    type: str
    session_id: str = "default"
