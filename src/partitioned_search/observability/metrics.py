"""Prometheus metrics for engine calls and ingestion, bridged to OpenTelemetry."""

from __future__ import annotations

from contextlib import contextmanager
import time
from typing import TYPE_CHECKING, Any

from opentelemetry import metrics as otel_metrics
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
    OTLPMetricExporter as GrpcOTLPMetricExporter,
)
from opentelemetry.exporter.otlp.proto.http.metric_exporter import (
    OTLPMetricExporter as HttpOTLPMetricExporter,
)
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.resources import Resource
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

from partitioned_search.config import ObservabilityCollectorConfig


if TYPE_CHECKING:
    from collections.abc import Generator


_meter_holder: dict[str, Any] = {"meter": None, "provider": None}


def init_metrics(
    service_name: str = "partitioned-search",
    resource_attributes: dict[str, str] | None = None,
    metric_readers: list[PeriodicExportingMetricReader] | None = None,
) -> MeterProvider:
    """Install a meter provider. Only applications should call this."""
    provider = _meter_holder.get("provider")
    if isinstance(provider, MeterProvider):
        return provider

    attributes = {"service.name": service_name}
    if resource_attributes:
        attributes.update(resource_attributes)
    provider = MeterProvider(resource=Resource.create(attributes), metric_readers=metric_readers or [])
    otel_metrics.set_meter_provider(provider)
    _meter_holder["provider"] = provider
    _meter_holder["meter"] = otel_metrics.get_meter(__name__)
    return provider


def configure_metrics_exporter(
    config: ObservabilityCollectorConfig | None,
    *,
    service_name: str = "partitioned-search",
) -> bool:
    """Export metrics over OTLP. Returns True when export is enabled."""
    if not config or not config.enabled:
        return False

    endpoint = config.collector_endpoint
    if config.otlp_protocol == "http" and endpoint.endswith("/v1/traces"):
        endpoint = endpoint.removesuffix("/v1/traces") + "/v1/metrics"

    if config.otlp_protocol == "grpc":
        exporter = GrpcOTLPMetricExporter(
            endpoint=endpoint,
            headers=config.headers,
            timeout=config.timeout_seconds,
            insecure=config.grpc_insecure,
        )
    else:
        exporter = HttpOTLPMetricExporter(
            endpoint=endpoint,
            headers=config.headers,
            timeout=config.timeout_seconds,
        )

    init_metrics(
        service_name=service_name,
        resource_attributes=dict(config.resource_attributes),
        metric_readers=[PeriodicExportingMetricReader(exporter)],
    )
    return True


def _get_meter():
    meter = _meter_holder.get("meter")
    if meter is None:
        # Global provider: a no-op until the application installs one
        meter = otel_metrics.get_meter(__name__)
        _meter_holder["meter"] = meter
    return meter


class _BoundMetric:
    def __init__(self, wrapper: MetricBridge, labels: dict[str, str]) -> None:
        self._wrapper = wrapper
        self._labels = labels

    def inc(self, amount: float = 1.0) -> None:
        self._wrapper.inc(self._labels, amount)

    def observe(self, value: float) -> None:
        self._wrapper.observe(self._labels, value)


class MetricBridge:
    """Bridge Prometheus metrics to OTel instruments."""

    def __init__(
        self,
        prom_metric: Counter | Histogram,
        *,
        otel_name: str,
        otel_description: str,
        otel_kind: str,
    ) -> None:
        self._prom_metric = prom_metric
        self._otel_name = otel_name
        self._otel_description = otel_description
        self._otel_kind = otel_kind
        self._otel_instrument = None

    def labels(self, **labels: str) -> _BoundMetric:
        return _BoundMetric(self, labels)

    def _ensure_otel_instrument(self):
        if self._otel_instrument is not None:
            return self._otel_instrument
        meter = _get_meter()
        if self._otel_kind == "counter":
            self._otel_instrument = meter.create_counter(self._otel_name, description=self._otel_description)
        elif self._otel_kind == "histogram":
            self._otel_instrument = meter.create_histogram(self._otel_name, description=self._otel_description)
        else:
            raise ValueError(f"Unknown metric kind: {self._otel_kind}")
        return self._otel_instrument

    def inc(self, labels: dict[str, str], amount: float) -> None:
        self._prom_metric.labels(**labels).inc(amount)
        self._ensure_otel_instrument().add(amount, labels)

    def observe(self, labels: dict[str, str], value: float) -> None:
        self._prom_metric.labels(**labels).observe(value)
        self._ensure_otel_instrument().record(value, labels)


_ENGINE_LATENCY_PROM = Histogram(
    "search_engine_call_latency_seconds",
    "Latency of individual search engine calls",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

_ENGINE_ERRORS_PROM = Counter(
    "search_engine_errors_total",
    "Search engine calls that failed",
    ["operation", "error_type"],
)

_DOCUMENTS_INDEXED_PROM = Counter(
    "search_documents_indexed_total",
    "Documents accepted by the engine",
    ["dataset"],
)

_DOCUMENTS_FAILED_PROM = Counter(
    "search_documents_failed_total",
    "Documents rejected before or during a write",
    ["dataset"],
)

_TEMPLATE_CACHE_PROM = Counter(
    "search_template_cache_total",
    "Template cache lookups",
    ["result"],
)

ENGINE_LATENCY = MetricBridge(
    _ENGINE_LATENCY_PROM,
    otel_name="search_engine_call_latency_seconds",
    otel_description="Latency of individual search engine calls",
    otel_kind="histogram",
)

ENGINE_ERRORS = MetricBridge(
    _ENGINE_ERRORS_PROM,
    otel_name="search_engine_errors_total",
    otel_description="Search engine calls that failed",
    otel_kind="counter",
)

DOCUMENTS_INDEXED = MetricBridge(
    _DOCUMENTS_INDEXED_PROM,
    otel_name="search_documents_indexed_total",
    otel_description="Documents accepted by the engine",
    otel_kind="counter",
)

DOCUMENTS_FAILED = MetricBridge(
    _DOCUMENTS_FAILED_PROM,
    otel_name="search_documents_failed_total",
    otel_description="Documents rejected before or during a write",
    otel_kind="counter",
)

TEMPLATE_CACHE = MetricBridge(
    _TEMPLATE_CACHE_PROM,
    otel_name="search_template_cache_total",
    otel_description="Template cache lookups",
    otel_kind="counter",
)


@contextmanager
def track_latency(histogram: MetricBridge, **labels: str) -> Generator[None, None, None]:
    """Context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
