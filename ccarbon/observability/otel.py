"""Ingestion metrics exported over OTLP, with a Prometheus scrape endpoint."""
from __future__ import annotations

import logging
from typing import Any

from ccarbon import config
from ccarbon.model_identity import canonical_model_name

logger = logging.getLogger("ccarbon.observability")

# name -> (kind, description, labels)
_METRICS: dict[str, tuple[str, str, tuple[str, ...]]] = {
    "ccarbon_lines_total": ("counter", "Log lines read by the tail readers, by stream and outcome", ("stream", "result")),
    "ccarbon_tail_read_ms": ("histogram", "Latency of one tail reader trigger", ("stream",)),
    "ccarbon_decode_failures_total": ("counter", "Read slices that were not valid UTF-8", ("stream",)),
    "ccarbon_tokens_total": ("counter", "Tokens applied to session totals by model and direction", ("model", "direction")),
}

_initialized = False
_meter_provider: Any | None = None
_otel_instruments: dict[str, Any] = {}
_prom_instruments: dict[str, Any] = {}


def _metrics_endpoint() -> str | None:
    endpoint = (config.OTEL_ENDPOINT or "").strip().rstrip("/")
    if not endpoint:
        return None
    return endpoint if endpoint.endswith("/v1/metrics") else f"{endpoint}/v1/metrics"


def _init_otel() -> None:
    global _meter_provider
    try:
        from opentelemetry import metrics
        from opentelemetry.exporter.otlp.proto.http.metric_exporter import OTLPMetricExporter
        from opentelemetry.sdk.metrics import MeterProvider
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.resources import Resource
    except ImportError as exc:
        logger.warning("OpenTelemetry dependencies unavailable: %s", exc)
        return

    resource = Resource.create({"service.name": config.OTEL_SERVICE_NAME or "ccarbon"})
    reader = PeriodicExportingMetricReader(OTLPMetricExporter(endpoint=_metrics_endpoint()))
    _meter_provider = MeterProvider(resource=resource, metric_readers=[reader])
    metrics.set_meter_provider(_meter_provider)
    meter = metrics.get_meter("ccarbon.ingest")
    for name, (kind, description, _labels) in _METRICS.items():
        if kind == "counter":
            _otel_instruments[name] = meter.create_counter(name, unit="1", description=description)
        else:
            _otel_instruments[name] = meter.create_histogram(name, unit="ms", description=description)
    logger.info("OpenTelemetry metrics initialized (endpoint=%s)", config.OTEL_ENDPOINT)


def _init_prometheus() -> None:
    if config.PROM_PORT <= 0:
        return
    try:
        from prometheus_client import Counter, Histogram, start_http_server

        start_http_server(config.PROM_PORT)
    except Exception as exc:  # noqa: BLE001
        logger.warning("Prometheus metrics server not started: %s", exc)
        return
    for name, (kind, description, labels) in _METRICS.items():
        factory = Counter if kind == "counter" else Histogram
        _prom_instruments[name] = factory(name, description, list(labels))
    logger.info("Prometheus metrics server listening on port %s", config.PROM_PORT)


def initialize() -> None:
    global _initialized
    if _initialized:
        return
    _initialized = True
    if not config.OTEL_ENABLED:
        logger.info("Metrics disabled (CCARBON_OTEL_ENABLED=false)")
        return
    _init_otel()
    _init_prometheus()


def shutdown() -> None:
    global _meter_provider
    if _meter_provider is not None:
        try:
            _meter_provider.shutdown()
        except Exception as exc:  # noqa: BLE001
            logger.debug("Meter provider shutdown failed: %s", exc)
        _meter_provider = None
    _otel_instruments.clear()


def _record(name: str, amount: float, **labels: str) -> None:
    if amount <= 0 and _METRICS[name][0] == "counter":
        return
    instrument = _otel_instruments.get(name)
    if instrument is not None:
        if _METRICS[name][0] == "counter":
            instrument.add(amount, labels)
        else:
            instrument.record(amount, labels)
    prom = _prom_instruments.get(name)
    if prom is not None:
        if _METRICS[name][0] == "counter":
            prom.labels(**labels).inc(amount)
        else:
            prom.labels(**labels).observe(amount)


def _label(value: str | None) -> str:
    return (value or "").strip() or "unknown"


def record_lines(stream: str, forwarded: int, events: int, duration_ms: float) -> None:
    """Count lines forwarded by one tail trigger and how many produced events."""
    stream_label = _label(stream)
    _record("ccarbon_lines_total", int(events), stream=stream_label, result="event")
    _record("ccarbon_lines_total", max(0, int(forwarded) - int(events)), stream=stream_label, result="discarded")
    _record("ccarbon_tail_read_ms", max(0.0, float(duration_ms)), stream=stream_label)


def record_decode_failure(stream: str) -> None:
    _record("ccarbon_decode_failures_total", 1, stream=_label(stream))


def record_tokens(*, model: str, token_input: int, token_output: int) -> None:
    model_label = canonical_model_name(model)
    _record("ccarbon_tokens_total", int(token_input), model=model_label, direction="input")
    _record("ccarbon_tokens_total", int(token_output), model=model_label, direction="output")
