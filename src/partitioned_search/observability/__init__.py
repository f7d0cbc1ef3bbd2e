"""Observability module for OpenTelemetry-aligned tracing, metrics, and logging."""

from partitioned_search.observability.context import (
    dataset_context,
    get_trace_context,
    run_in_context,
    set_trace_context,
    trace_context,
)
from partitioned_search.observability.logging import JsonFormatter, configure_logging
from partitioned_search.observability.metrics import (
    DOCUMENTS_FAILED,
    DOCUMENTS_INDEXED,
    ENGINE_ERRORS,
    ENGINE_LATENCY,
    TEMPLATE_CACHE,
    configure_metrics_exporter,
    get_metrics,
    get_metrics_content_type,
    init_metrics,
    track_latency,
)
from partitioned_search.observability.tracing import (
    configure_trace_exporter,
    create_span,
    get_tracer,
    init_tracing,
)


__all__ = [
    "DOCUMENTS_FAILED",
    "DOCUMENTS_INDEXED",
    "ENGINE_ERRORS",
    "ENGINE_LATENCY",
    "TEMPLATE_CACHE",
    "JsonFormatter",
    "configure_logging",
    "configure_metrics_exporter",
    "configure_trace_exporter",
    "create_span",
    "dataset_context",
    "get_metrics",
    "get_metrics_content_type",
    "get_trace_context",
    "get_tracer",
    "init_metrics",
    "init_tracing",
    "run_in_context",
    "set_trace_context",
    "trace_context",
    "track_latency",
]
