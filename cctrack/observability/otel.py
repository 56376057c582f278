"""OpenTelemetry + Prometheus wiring for the ingestion pipeline.

Everything here is a no-op until `initialize()` runs with
CCTRACK_OTEL_ENABLED set, so the recorders can be called unconditionally.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from cctrack import config

logger = logging.getLogger("cctrack.observability")


_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_ingestion_counter: Any | None = None
_ingestion_latency_hist: Any | None = None
_decode_error_counter: Any | None = None
_events_counter: Any | None = None

_prom_enabled = False
_prom_ingestion_counter: Any | None = None
_prom_ingestion_latency_hist: Any | None = None
_prom_decode_error_counter: Any | None = None
_prom_events_counter: Any | None = None


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip()
    if not endpoint:
        return ""
    if endpoint.endswith(signal_path):
        return endpoint
    endpoint = endpoint.rstrip("/")
    if endpoint.endswith("/v1"):
        return f"{endpoint}{signal_path[3:]}"
    return f"{endpoint}{signal_path}"


def _label(value: str) -> str:
    return (value or "").strip() or "unknown"


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled, _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor
    global _ingestion_counter, _ingestion_latency_hist, _decode_error_counter, _events_counter
    global _prom_enabled, _prom_ingestion_counter, _prom_ingestion_latency_hist
    global _prom_decode_error_counter, _prom_events_counter

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return

    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (CCTRACK_OTEL_ENABLED=false)")
        return

    try:
        from opentelemetry import metrics, trace
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
        from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
        from opentelemetry.sdk.trace import TracerProvider
        from opentelemetry.sdk.trace.export import BatchSpanProcessor
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    traces_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces")
    metrics_endpoint = _normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics")
    service_name = config.OTEL_SERVICE_NAME or "cctrack-backend"

    resource = Resource.create({"service.name": service_name, "service.namespace": "cctrack"})

    trace_provider = TracerProvider(resource=resource)
    trace_provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=traces_endpoint or None)))
    trace.set_tracer_provider(trace_provider)

    metric_reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=metrics_endpoint or None))
    meter_provider = MeterProvider(resource=resource, metric_readers=[metric_reader])
    metrics.set_meter_provider(meter_provider)
    meter = metrics.get_meter("cctrack.backend")

    _ingestion_counter = meter.create_counter(
        "cctrack_ingested_files_total",
        unit="1",
        description="Per-file ingestion passes by mode and outcome",
    )
    _ingestion_latency_hist = meter.create_histogram(
        "cctrack_ingestion_latency_ms",
        unit="ms",
        description="Duration of one file ingestion pass",
    )
    _decode_error_counter = meter.create_counter(
        "cctrack_decode_errors_total",
        unit="1",
        description="Log lines that could not be decoded",
    )
    _events_counter = meter.create_counter(
        "cctrack_events_total",
        unit="1",
        description="Usage events emitted by collection",
    )

    _trace_provider = trace_provider
    _meter_provider = meter_provider
    _tracer = trace.get_tracer("cctrack.backend")
    _fastapi_instrumentor = FastAPIInstrumentor()
    _enabled = True

    if app:
        _fastapi_instrumentor.instrument_app(app)

    if config.PROM_PORT > 0:
        try:
            from prometheus_client import Counter, Histogram, start_http_server

            start_http_server(config.PROM_PORT)
            _prom_ingestion_counter = Counter(
                "cctrack_ingested_files_total",
                "Per-file ingestion passes by mode and outcome",
                ["mode", "result"],
            )
            _prom_ingestion_latency_hist = Histogram(
                "cctrack_ingestion_latency_ms",
                "Duration of one file ingestion pass",
                ["mode", "result"],
            )
            _prom_decode_error_counter = Counter(
                "cctrack_decode_errors_total",
                "Log lines that could not be decoded",
            )
            _prom_events_counter = Counter(
                "cctrack_events_total",
                "Usage events emitted by collection",
                ["collection"],
            )
            _prom_enabled = True
            logger.info("Prometheus metrics server listening on port %s", config.PROM_PORT)
        except (OSError, ValueError) as exc:
            logger.warning("Prometheus metrics not started: %s", exc)
            _prom_enabled = False

    logger.info("OpenTelemetry initialized (service=%s endpoint=%s)", service_name, config.OTEL_ENDPOINT)


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    if app and _fastapi_instrumentor:
        try:
            _fastapi_instrumentor.uninstrument_app(app)
        except Exception as exc:  # noqa: BLE001
            logger.debug("FastAPI uninstrument failed: %s", exc)
    for provider in (_meter_provider, _trace_provider):
        if provider is None:
            continue
        try:
            provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Telemetry provider shutdown failed: %s", exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        if attributes:
            for key, value in attributes.items():
                if value is not None:
                    span.set_attribute(key, value)
        yield span


def record_ingestion(mode: str, result: str, duration_ms: float) -> None:
    labels = {"mode": _label(mode), "result": _label(result)}
    latency = max(0.0, float(duration_ms))
    if _enabled and _ingestion_counter is not None:
        _ingestion_counter.add(1, labels)
    if _enabled and _ingestion_latency_hist is not None:
        _ingestion_latency_hist.record(latency, labels)
    if _prom_enabled and _prom_ingestion_counter is not None:
        _prom_ingestion_counter.labels(**labels).inc()
    if _prom_enabled and _prom_ingestion_latency_hist is not None:
        _prom_ingestion_latency_hist.labels(**labels).observe(latency)


def record_decode_errors(count: int) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    if _enabled and _decode_error_counter is not None:
        _decode_error_counter.add(safe_count)
    if _prom_enabled and _prom_decode_error_counter is not None:
        _prom_decode_error_counter.inc(safe_count)


def record_events(collection: str, count: int = 1) -> None:
    safe_count = max(0, int(count))
    if safe_count == 0:
        return
    labels = {"collection": _label(collection)}
    if _enabled and _events_counter is not None:
        _events_counter.add(safe_count, labels)
    if _prom_enabled and _prom_events_counter is not None:
        _prom_events_counter.labels(**labels).inc(safe_count)
