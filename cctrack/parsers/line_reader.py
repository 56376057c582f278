"""Streaming line reader for append-only session log files.

Reads in binary so that offsets are exact byte positions, which lets tail
passes resume where the previous pass stopped.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from typing import AsyncIterator, Iterator

READ_BATCH_LINES = 500


class LogFileAccessError(OSError):
    """The log file is missing, unreadable, or failed mid-read."""


@dataclass(frozen=True)
class LogLine:
    text: str
    start_offset: int
    end_offset: int
    complete: bool


def _split_chunk(raw: bytes) -> list[tuple[bytes, int, bool]]:
    """Split one `\\n`-delimited chunk on `\\r\\n`, `\\n` and lone `\\r`.

    Returns (content, length including terminator, terminated) per part.
    Other Unicode line separators belong to the line's content.
    """
    parts = []
    start = 0
    while start < len(raw):
        cr = raw.find(b"\r", start)
        lf = raw.find(b"\n", start)
        if cr == -1 and lf == -1:
            parts.append((raw[start:], len(raw) - start, False))
            break
        if lf != -1 and (cr == -1 or lf < cr):
            stop, width = lf, 1
        elif raw[cr + 1:cr + 2] == b"\n":
            stop, width = cr, 2
        else:
            stop, width = cr, 1
        parts.append((raw[start:stop], stop + width - start, True))
        start = stop + width
    return parts


class LineReader:
    """Iterate the non-blank lines of a file starting at a byte offset.

    A final line without a terminating newline is only yielded when
    `include_partial` is set; otherwise it is left for the next pass.
    `end_offset` is the position just past the last consumed line and is
    only meaningful once iteration has finished.
    """

    def __init__(self, path: Path, start_offset: int = 0, include_partial: bool = False):
        self.path = path
        self.start_offset = max(0, int(start_offset))
        self.include_partial = include_partial
        self.end_offset = self.start_offset

    def __iter__(self) -> Iterator[LogLine]:
        try:
            handle = self.path.open("rb")
        except OSError as exc:
            raise LogFileAccessError(f"Cannot open {self.path}: {exc}") from exc

        with handle:
            try:
                handle.seek(self.start_offset)
                offset = self.start_offset
                for raw in handle:
                    end = offset + len(raw)
                    if not raw.endswith(b"\n") and not self.include_partial:
                        break
                    self.end_offset = end
                    for content, width, terminated in _split_chunk(raw):
                        text = content.decode("utf-8", errors="replace")
                        if text.strip():
                            yield LogLine(text, offset, offset + width, terminated)
                        offset += width
            except OSError as exc:
                raise LogFileAccessError(f"Failed reading {self.path}: {exc}") from exc

    async def __aiter__(self) -> AsyncIterator[LogLine]:
        """Same lines as `__iter__`, with file reads done off the event loop."""
        lines = iter(self)
        while True:
            batch = await asyncio.to_thread(lambda: list(islice(lines, READ_BATCH_LINES)))
            if not batch:
                return
            for line in batch:
                yield line

    def hold_back(self, line: LogLine) -> None:
        """Leave the last yielded `line` unconsumed so the next pass re-reads it."""
        self.end_offset = min(self.end_offset, line.start_offset)
