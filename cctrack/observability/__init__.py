"""Observability helpers."""

from cctrack.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_ingestion,
    record_decode_errors,
    record_events,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_ingestion",
    "record_decode_errors",
    "record_events",
]
