"""Context propagation for log/trace correlation across worker threads.

Bulk workers run in a thread pool, which does not inherit context variables;
callers submit work through :func:`run_in_context` so the dataset and trace
ids follow each batch.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
import contextvars
from contextvars import ContextVar
from typing import Any, TypeVar
from uuid import uuid4


T = TypeVar("T")

trace_context: ContextVar[dict | None] = ContextVar("trace_context", default=None)


def generate_trace_id() -> str:
    """Generate a 32-char hex trace ID."""
    return uuid4().hex


def generate_span_id() -> str:
    """Generate a 16-char hex span ID."""
    return uuid4().hex[:16]


def get_trace_context() -> dict:
    """Get current trace context with trace_id and span_id."""
    ctx = trace_context.get()
    if ctx is None or not ctx.get("trace_id"):
        ctx = {"trace_id": generate_trace_id(), "span_id": generate_span_id()}
        trace_context.set(ctx)
    return ctx


def set_trace_context(trace_id: str, span_id: str, **extra: object) -> None:
    trace_context.set({"trace_id": trace_id, "span_id": span_id, **extra})


def update_span_id(span_id: str) -> None:
    """Update span_id while preserving trace_id and extras."""
    ctx = trace_context.get() or {}
    trace_context.set({**ctx, "span_id": span_id})


@contextmanager
def dataset_context(dataset: str) -> Iterator[dict]:
    """Tag everything logged inside the block with ``dataset``."""
    ctx = get_trace_context()
    token = trace_context.set({**ctx, "dataset": dataset})
    try:
        yield trace_context.get() or {}
    finally:
        trace_context.reset(token)


def run_in_context(func: Callable[..., T]) -> Callable[..., T]:
    """Bind ``func`` to a copy of the caller's context for use in another thread."""
    ctx = contextvars.copy_context()

    def _runner(*args: Any, **kwargs: Any) -> T:
        return ctx.run(func, *args, **kwargs)

    return _runner
