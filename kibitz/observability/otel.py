"""OpenTelemetry + Prometheus fallback wiring for kibitz.

Both backends are optional. Every ``record_*`` helper is a no-op until
``initialize`` has enabled at least one of them, so callers never check.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any

from fastapi import FastAPI

from kibitz import config

logger = logging.getLogger("kibitz.observability")

# name -> (kind, unit, description, label names)
_INSTRUMENTS: dict[str, tuple[str, str, str, tuple[str, ...]]] = {
    "kibitz_activity_events_total": ("counter", "1", "Activity events decoded from agent logs", ("agent",)),
    "kibitz_decode_failures_total": ("counter", "1", "Log lines that a decoder could not handle", ("agent",)),
    "kibitz_generations_total": ("counter", "1", "Commentary generations by outcome", ("result", "model")),
    "kibitz_generation_latency_ms": ("histogram", "ms", "Latency of commentary generations", ("result", "model")),
    "kibitz_dispatch_status_total": ("counter", "1", "Dispatch status transitions", ("state", "target")),
}

_initialized = False
_enabled = False
_tracer: Any | None = None
_trace_provider: Any | None = None
_meter_provider: Any | None = None
_fastapi_instrumentor: Any | None = None

_otel_instruments: dict[str, Any] = {}
_prom_instruments: dict[str, Any] = {}


def _normalize_otlp_endpoint(base_endpoint: str, signal_path: str) -> str:
    endpoint = (base_endpoint or "").strip().rstrip("/")
    if not endpoint or endpoint.endswith(signal_path):
        return endpoint
    if endpoint.endswith("/v1"):
        endpoint = endpoint[: -len("/v1")]
    return f"{endpoint}{signal_path}"


def _labels(**values: Any) -> dict[str, str]:
    return {key: (str(value or "")).strip() or "unknown" for key, value in values.items()}


def _init_otel(app: FastAPI | None) -> bool:
    global _tracer, _trace_provider, _meter_provider, _fastapi_instrumentor

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
        return False

    resource = Resource.create({
        "service.name": config.OTEL_SERVICE_NAME or "kibitz",
        "service.namespace": "kibitz",
    })

    _trace_provider = TracerProvider(resource=resource)
    _trace_provider.add_span_processor(
        BatchSpanProcessor(OTLPSpanExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/traces") or None))
    )
    trace.set_tracer_provider(_trace_provider)
    _tracer = trace.get_tracer("kibitz")

    reader = PeriodicExportingMetricReader(
        OTLPMetricExporter(endpoint=_normalize_otlp_endpoint(config.OTEL_ENDPOINT, "/v1/metrics") or None)
    )
    _meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(_meter_provider)
    meter = metrics.get_meter("kibitz")

    for name, (kind, unit, description, _label_names) in _INSTRUMENTS.items():
        create = meter.create_histogram if kind == "histogram" else meter.create_counter
        _otel_instruments[name] = create(name, unit=unit, description=description)

    _fastapi_instrumentor = FastAPIInstrumentor()
    if app:
        _fastapi_instrumentor.instrument_app(app)
    return True


def _init_prometheus() -> None:
    if config.PROM_PORT <= 0:
        return
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
        for name, (kind, _unit, description, label_names) in _INSTRUMENTS.items():
            factory = Histogram if kind == "histogram" else Counter
            _prom_instruments[name] = factory(name, description, list(label_names))
        logger.info("Prometheus fallback metrics server listening on port %s", config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus fallback not started: %s", exc)
        _prom_instruments.clear()


def initialize(app: FastAPI | None = None) -> None:
    global _initialized, _enabled

    if _initialized:
        if _enabled and app and _fastapi_instrumentor:
            _fastapi_instrumentor.instrument_app(app)
        return
    _initialized = True

    if not config.OTEL_ENABLED:
        logger.info("OpenTelemetry disabled (KIBITZ_OTEL_ENABLED=false)")
        return

    _enabled = _init_otel(app)
    _init_prometheus()
    if _enabled:
        logger.info("OpenTelemetry initialized (endpoint=%s)", config.OTEL_ENDPOINT or "default")


def shutdown(app: FastAPI | None = None) -> None:
    global _enabled
    if not _initialized:
        return
    steps = []
    if app and _fastapi_instrumentor:
        steps.append(("instrumentor", lambda: _fastapi_instrumentor.uninstrument_app(app)))
    if _meter_provider is not None:
        steps.append(("meter provider", _meter_provider.shutdown))
    if _trace_provider is not None:
        steps.append(("trace provider", _trace_provider.shutdown))
    for label, step in steps:
        try:
            step()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Observability %s shutdown failed: %s", label, exc)
    _enabled = False


@contextmanager
def start_span(name: str, attributes: dict[str, Any] | None = None):
    if not _enabled or _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(name) as span:
        for key, value in (attributes or {}).items():
            if value is not None:
                span.set_attribute(key, value)
        yield span


def _emit(name: str, amount: float, labels: dict[str, str]) -> None:
    if _enabled and name in _otel_instruments:
        instrument = _otel_instruments[name]
        if _INSTRUMENTS[name][0] == "histogram":
            instrument.record(amount, labels)
        else:
            instrument.add(amount, labels)
    if name in _prom_instruments:
        child = _prom_instruments[name].labels(**labels)
        if _INSTRUMENTS[name][0] == "histogram":
            child.observe(amount)
        else:
            child.inc(amount)


def record_events_decoded(agent: str, count: int) -> None:
    if int(count) > 0:
        _emit("kibitz_activity_events_total", int(count), _labels(agent=agent))


def record_decode_failure(agent: str) -> None:
    _emit("kibitz_decode_failures_total", 1, _labels(agent=agent))


def record_generation(result: str, duration_ms: float, *, model: str) -> None:
    labels = _labels(result=result, model=model)
    _emit("kibitz_generations_total", 1, labels)
    _emit("kibitz_generation_latency_ms", max(0.0, float(duration_ms)), labels)


def record_dispatch(state: str, target_kind: str) -> None:
    _emit("kibitz_dispatch_status_total", 1, _labels(state=state, target=target_kind))
