"""Decode one session-log line into a LogEntry and its usage events."""
from __future__ import annotations

import json
from typing import Any

from cctrack.date_utils import normalize_iso_date
from cctrack.models import (
    FileEditEvent,
    LogEntry,
    MessageEvent,
    TokenUsage,
    TokenUsageEvent,
    ToolInvocation,
    ToolUsageEvent,
    UsageEvent,
)

# The log format records which file a Write/Edit touched but not the size of
# the change, so lines_changed is a fixed estimate rather than a measured diff.
EDIT_LINES_PLACEHOLDER = 10
WRITE_LINES_PLACEHOLDER = 0

DESCRIPTION_MAX_CHARS = 100

_MESSAGE_KINDS = {
    "user": "user_message",
    "assistant": "assistant_message",
}

_FILE_EDIT_TOOLS: dict[str, tuple[str, int]] = {
    "Write": ("write", WRITE_LINES_PLACEHOLDER),
    "Edit": ("edit", EDIT_LINES_PLACEHOLDER),
}


class EntryDecodeError(ValueError):
    """A line that is not a JSON object."""


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return max(0, int(float(value)))
    except (TypeError, ValueError):
        return 0


def _compact_json(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"), default=str)


def _content_length(content: Any) -> int:
    if content is None:
        return 0
    return len(_compact_json(content))


def _parse_usage(raw: Any) -> TokenUsage | None:
    if not isinstance(raw, dict):
        return None
    return TokenUsage(
        input_tokens=_coerce_int(raw.get("input_tokens")),
        output_tokens=_coerce_int(raw.get("output_tokens")),
        cache_creation_input_tokens=_coerce_int(raw.get("cache_creation_input_tokens")),
        cache_read_input_tokens=_coerce_int(raw.get("cache_read_input_tokens")),
    )


def _parse_tool_block(block: dict[str, Any]) -> ToolInvocation:
    name = block.get("name")
    tool_input = block.get("input")
    description = ""
    if tool_input is not None:
        description = _compact_json(tool_input)[:DESCRIPTION_MAX_CHARS]

    file_path = ""
    if isinstance(tool_input, dict):
        raw_path = tool_input.get("file_path")
        if isinstance(raw_path, str) and raw_path.strip():
            file_path = raw_path

    return ToolInvocation(
        name=name if isinstance(name, str) else "",
        input=tool_input,
        description=description,
        file_path=file_path,
    )


def parse_entry_line(raw: str) -> LogEntry:
    """Decode a raw line into a LogEntry.

    Raises EntryDecodeError when the line is not a JSON object; callers count
    the failure and move on to the next line.
    """
    try:
        payload = json.loads(raw)
    except (json.JSONDecodeError, RecursionError) as exc:
        raise EntryDecodeError(f"Invalid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise EntryDecodeError(f"Expected a JSON object, got {type(payload).__name__}")

    entry_type = payload.get("type")
    entry_type = entry_type if isinstance(entry_type, str) else ""
    message = payload.get("message")
    message = message if isinstance(message, dict) else {}
    content = message.get("content")

    usage = None
    if entry_type == "assistant":
        usage = _parse_usage(message.get("usage"))

    tools: list[ToolInvocation] = []
    if isinstance(content, list):
        for block in content:
            if isinstance(block, dict) and block.get("type") == "tool_use":
                tools.append(_parse_tool_block(block))

    return LogEntry(
        kind=_MESSAGE_KINDS.get(entry_type, "other"),
        entry_type=entry_type,
        content=content,
        content_length=_content_length(content),
        timestamp=normalize_iso_date(payload.get("timestamp")),
        usage=usage,
        tool_invocations=tools,
    )


def file_edit_for(tool: ToolInvocation, session_id: str, timestamp: str) -> FileEditEvent | None:
    """Return the file edit implied by a Write/Edit invocation, if any."""
    edit_kind = _FILE_EDIT_TOOLS.get(tool.name)
    if edit_kind is None or not tool.file_path:
        return None
    operation, lines_changed = edit_kind
    return FileEditEvent(
        session_id=session_id,
        file_path=tool.file_path,
        operation=operation,
        lines_changed=lines_changed,
        timestamp=timestamp,
    )


def derive_events(entry: LogEntry, session_id: str, ingested_at: str) -> list[UsageEvent]:
    """Expand a LogEntry into events in emission order.

    Order: message, token usage, then each tool use followed by its file edit.
    """
    timestamp = entry.timestamp or ingested_at
    events: list[UsageEvent] = []

    if entry.is_message:
        events.append(
            MessageEvent(
                session_id=session_id,
                role=entry.role,
                content_length=entry.content_length,
                timestamp=timestamp,
            )
        )
        if entry.usage is not None:
            events.append(
                TokenUsageEvent(
                    session_id=session_id,
                    timestamp=timestamp,
                    **entry.usage.model_dump(),
                )
            )

    for tool in entry.tool_invocations:
        events.append(
            ToolUsageEvent(
                session_id=session_id,
                tool_name=tool.name,
                description=tool.description,
                success=True,
                timestamp=timestamp,
            )
        )
        edit = file_edit_for(tool, session_id, timestamp)
        if edit is not None:
            events.append(edit)

    return events
