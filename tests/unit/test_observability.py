"""Unit tests for observability module."""

from concurrent.futures import ThreadPoolExecutor
import json
import logging
from unittest.mock import Mock

from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import SpanKind, StatusCode
from prometheus_client import REGISTRY
import pytest

from partitioned_search.config import ObservabilityCollectorConfig
from partitioned_search.observability import (
    DOCUMENTS_INDEXED,
    ENGINE_LATENCY,
    JsonFormatter,
    configure_logging,
    configure_metrics_exporter,
    configure_trace_exporter,
    create_span,
    dataset_context,
    get_metrics,
    get_metrics_content_type,
    get_trace_context,
    init_tracing,
    metrics as metrics_module,
    run_in_context,
    set_trace_context,
    tracing as tracing_module,
    track_latency,
)
from partitioned_search.observability.context import update_span_id


def _record(msg: str = "test message", level: int = logging.INFO, name: str = "test") -> logging.LogRecord:
    return logging.LogRecord(name=name, level=level, pathname="test.py", lineno=1, msg=msg, args=(), exc_info=None)


@pytest.mark.unit
class TestJsonFormatter:
    """Tests for structured JSON logging."""

    def test_format_includes_trace_context(self):
        data = json.loads(JsonFormatter().format(_record()))

        assert data["message"] == "test message"
        assert data["level"] == "INFO"
        assert "timestamp" in data
        assert "trace_id" in data
        assert "span_id" in data

    def test_format_includes_extra_fields(self):
        record = _record("bulk done", logging.ERROR)
        record.indexed = 9
        data = json.loads(JsonFormatter().format(record))

        assert data["indexed"] == 9

    def test_format_includes_component(self):
        data = json.loads(JsonFormatter().format(_record(name="partitioned_search.ingest")))

        assert data["component"] == "ingest"

    def test_format_includes_dataset_from_context(self):
        with dataset_context("treatments"):
            data = json.loads(JsonFormatter().format(_record()))

        assert data["dataset"] == "treatments"

    def test_format_truncates_and_redacts(self):
        record = _record("x" * 5000)
        record.http_auth = ("app", "secret")
        record.password = "secret"
        data = json.loads(JsonFormatter().format(record))

        assert data["message"].endswith("...")
        assert data["http_auth"] == "[REDACTED]"
        assert data["password"] == "[REDACTED]"

    def test_json_default_handles_set_and_bytes(self):
        formatter = JsonFormatter()
        assert formatter._json_default({3, 1, 2}) == [1, 2, 3]
        assert formatter._json_default(b"ok") == "ok"
        assert formatter._json_default(ValueError("bad")) == "bad"

    def test_json_default_handles_unorderable_set(self):
        value = JsonFormatter()._json_default({1, "a"})
        assert isinstance(value, list)
        assert len(value) == 2


@pytest.mark.unit
class TestConfigureLogging:
    @pytest.fixture(autouse=True)
    def restore_root_logger(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers[:] = handlers
        root.setLevel(level)

    def test_json_handler_installed(self):
        configure_logging("debug", json_output=True)

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("opensearch").level == logging.WARNING

    def test_plain_handler_and_overrides(self):
        configure_logging("info", json_output=False, logger_levels={"partitioned_search.ingest": "debug"})

        assert not isinstance(logging.getLogger().handlers[0].formatter, JsonFormatter)
        assert logging.getLogger("partitioned_search.ingest").level == logging.DEBUG


@pytest.mark.unit
class TestTraceContext:
    """Tests for trace context propagation."""

    def test_get_trace_context_generates_ids(self):
        ctx = get_trace_context()
        assert len(ctx["trace_id"]) == 32
        assert len(ctx["span_id"]) == 16

    def test_set_trace_context_preserves_values(self):
        set_trace_context("ab" * 16, "de" * 8, dataset="treatments")
        ctx = get_trace_context()
        assert ctx["trace_id"] == "ab" * 16
        assert ctx["span_id"] == "de" * 8
        assert ctx.get("dataset") == "treatments"

    def test_update_span_id_preserves_trace_id(self):
        set_trace_context("aa" * 16, "bb" * 8, dataset="alpha")
        update_span_id("cc" * 8)
        ctx = get_trace_context()
        assert ctx["trace_id"] == "aa" * 16
        assert ctx["span_id"] == "cc" * 8
        assert ctx["dataset"] == "alpha"

    def test_dataset_context_is_restored(self):
        set_trace_context("aa" * 16, "bb" * 8)
        with dataset_context("treatments") as ctx:
            assert ctx["dataset"] == "treatments"
            assert ctx["trace_id"] == "aa" * 16
        assert "dataset" not in get_trace_context()

    def test_run_in_context_carries_dataset_to_workers(self):
        with dataset_context("treatments"), ThreadPoolExecutor(max_workers=2) as pool:
            futures = [pool.submit(run_in_context(lambda: get_trace_context().get("dataset"))) for _ in range(4)]
            seen = [future.result() for future in futures]

        assert seen == ["treatments"] * 4


@pytest.mark.unit
class TestTracing:
    """Tests for OpenTelemetry tracing."""

    @pytest.fixture
    def exporter(self, monkeypatch):
        provider = TracerProvider()
        exporter = InMemorySpanExporter()
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        monkeypatch.setitem(tracing_module._tracer_holder, "tracer", provider.get_tracer(__name__))
        return exporter

    def test_create_span_records_attributes(self, exporter):
        with create_span("opensearch.search", kind=SpanKind.CLIENT, attributes={"db.system": "opensearch", "x": None}):
            pass

        (span,) = exporter.get_finished_spans()
        assert span.name == "opensearch.search"
        assert span.kind == SpanKind.CLIENT
        assert span.attributes["db.system"] == "opensearch"
        assert "x" not in span.attributes

    def test_create_span_records_errors(self, exporter):
        with pytest.raises(RuntimeError), create_span("failing"):
            raise RuntimeError("boom")

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert span.events[0].name == "exception"

    def test_create_span_updates_log_context(self, exporter):
        with create_span("op") as span:
            expected = format(span.get_span_context().span_id, "016x")
            assert get_trace_context()["span_id"] == expected

    def test_engine_calls_are_traced(self, exporter):
        from partitioned_search.engine import OpenSearchEngine

        client = Mock()
        client.indices.refresh.return_value = {}
        OpenSearchEngine(client).refresh(["a-2024.08.24"])

        (span,) = exporter.get_finished_spans()
        assert span.name == "opensearch.refresh"
        assert span.attributes["db.opensearch.target"] == "a-2024.08.24"

    def test_init_tracing_applies_resource_attributes(self):
        provider = init_tracing("test-service", resource_attributes={"service.version": "2.0.0"})
        assert provider.resource.attributes["service.version"] == "2.0.0"

    def test_get_tracer_initializes_when_missing(self, monkeypatch):
        monkeypatch.setitem(tracing_module._tracer_holder, "tracer", None)
        assert tracing_module.get_tracer() is not None

    def test_configure_trace_exporter_disabled(self):
        assert configure_trace_exporter(None) is False
        assert configure_trace_exporter(ObservabilityCollectorConfig(enabled=False)) is False

    def test_configure_trace_exporter_adds_span_processor(self, monkeypatch):
        provider = TracerProvider()
        config = ObservabilityCollectorConfig(
            enabled=True,
            otlp_protocol="http",
            collector_endpoint="http://collector/v1/traces",
        )
        monkeypatch.setattr(tracing_module, "HttpOTLPSpanExporter", Mock(return_value=InMemorySpanExporter()))
        add_processor = Mock()
        provider.add_span_processor = add_processor  # type: ignore[method-assign]

        assert configure_trace_exporter(config, provider=provider) is True
        add_processor.assert_called_once()

    def test_configure_trace_exporter_grpc(self, monkeypatch):
        provider = TracerProvider()
        grpc_exporter = Mock(return_value=InMemorySpanExporter())
        monkeypatch.setattr(tracing_module, "GrpcOTLPSpanExporter", grpc_exporter)

        configure_trace_exporter(ObservabilityCollectorConfig(enabled=True, headers={"x-key": "1"}), provider=provider)

        assert grpc_exporter.call_args.kwargs["insecure"] is True
        assert grpc_exporter.call_args.kwargs["headers"] == {"x-key": "1"}


@pytest.mark.unit
class TestMetrics:
    """Tests for Prometheus metrics bridged to OpenTelemetry."""

    def test_track_latency_observes_histogram(self):
        labels = {"operation": "unit-test"}
        before = REGISTRY.get_sample_value("search_engine_call_latency_seconds_count", labels) or 0.0

        with track_latency(ENGINE_LATENCY, operation="unit-test"):
            pass

        assert REGISTRY.get_sample_value("search_engine_call_latency_seconds_count", labels) == before + 1

    def test_track_latency_observes_on_error(self):
        labels = {"operation": "unit-test-error"}
        before = REGISTRY.get_sample_value("search_engine_call_latency_seconds_count", labels) or 0.0

        with pytest.raises(ValueError), track_latency(ENGINE_LATENCY, operation="unit-test-error"):
            raise ValueError("boom")

        assert REGISTRY.get_sample_value("search_engine_call_latency_seconds_count", labels) == before + 1

    def test_counter_increments(self):
        labels = {"dataset": "metrics-test"}
        before = REGISTRY.get_sample_value("search_documents_indexed_total", labels) or 0.0

        DOCUMENTS_INDEXED.labels(dataset="metrics-test").inc(3)

        assert REGISTRY.get_sample_value("search_documents_indexed_total", labels) == before + 3

    def test_get_metrics_exposition(self):
        DOCUMENTS_INDEXED.labels(dataset="exposition").inc()

        assert b"search_documents_indexed_total" in get_metrics()
        assert get_metrics_content_type().startswith("text/plain")

    def test_unknown_metric_kind_rejected(self):
        bridge = metrics_module.MetricBridge(
            Mock(),
            otel_name="bad",
            otel_description="bad",
            otel_kind="gauge",
        )
        with pytest.raises(ValueError, match="Unknown metric kind"):
            bridge.inc({}, 1)

    def test_configure_metrics_exporter_disabled(self):
        assert configure_metrics_exporter(None) is False
        assert configure_metrics_exporter(ObservabilityCollectorConfig(enabled=False)) is False

    def test_configure_metrics_exporter_http_rewrites_trace_path(self, monkeypatch):
        exporter_cls = Mock()
        init = Mock()
        monkeypatch.setattr(metrics_module, "HttpOTLPMetricExporter", exporter_cls)
        monkeypatch.setattr(metrics_module, "PeriodicExportingMetricReader", Mock())
        monkeypatch.setattr(metrics_module, "init_metrics", init)
        config = ObservabilityCollectorConfig(
            enabled=True,
            otlp_protocol="http",
            collector_endpoint="http://collector:4318/v1/traces",
            resource_attributes={"deployment.environment": "test"},
        )

        assert configure_metrics_exporter(config) is True
        assert exporter_cls.call_args.kwargs["endpoint"] == "http://collector:4318/v1/metrics"
        assert init.call_args.kwargs["resource_attributes"] == {"deployment.environment": "test"}
