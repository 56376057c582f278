"""Shared timestamp normalization helpers."""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def _format_datetime_utc(value: datetime) -> str:
    dt = value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt.isoformat().replace("+00:00", "Z")


def _parse_datetime_token(token: str) -> datetime | None:
    cleaned = token.strip()
    if not cleaned:
        return None
    try:
        return datetime.fromisoformat(cleaned.replace("Z", "+00:00"))
    except ValueError:
        pass
    for fmt in ("%Y/%m/%d", "%m/%d/%Y", "%Y-%m-%d %H:%M:%S"):
        try:
            return datetime.strptime(cleaned, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue
    return None


def utc_now_iso() -> str:
    return _format_datetime_utc(datetime.now(timezone.utc))


def normalize_iso_date(value: Any) -> str:
    """Convert mixed date inputs into comparable ISO strings."""
    if value is None:
        return ""
    if isinstance(value, datetime):
        return _format_datetime_utc(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        token = value.strip()
        if not token:
            return ""
        if _DATE_ONLY_RE.match(token):
            try:
                return date.fromisoformat(token).isoformat()
            except ValueError:
                return ""
        parsed_dt = _parse_datetime_token(token)
        if parsed_dt:
            return _format_datetime_utc(parsed_dt)
        return ""
    return ""


def _file_created_datetime(stats: Any) -> datetime | None:
    value = getattr(stats, "st_birthtime", None)
    if isinstance(value, (int, float)) and value > 0:
        return datetime.fromtimestamp(float(value), timezone.utc)
    ctime = getattr(stats, "st_ctime", None)
    if isinstance(ctime, (int, float)) and ctime > 0:
        return datetime.fromtimestamp(float(ctime), timezone.utc)
    return None


def file_metadata(path: Path) -> dict[str, Any]:
    """Return size plus normalized creation/modified timestamps of a file.

    Raises OSError when the file cannot be stat'ed.
    """
    stats = path.stat()
    created_dt = _file_created_datetime(stats)
    modified_dt = datetime.fromtimestamp(float(stats.st_mtime), timezone.utc)
    return {
        "file_size": int(stats.st_size),
        "created": _format_datetime_utc(created_dt) if created_dt else "",
        "modified": _format_datetime_utc(modified_dt),
    }
