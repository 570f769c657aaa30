"""Per-pass log context: correlation IDs and the active trace span."""

from __future__ import annotations

import contextvars
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from opentelemetry import trace

# Correlation ID of the pass running in the current thread
correlation_id: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "correlation_id", default=None
)


def new_correlation_id() -> str:
    return uuid.uuid4().hex[:16]


def get_correlation_id() -> str | None:
    return correlation_id.get()


@contextmanager
def with_correlation_id(corr_id: str | None = None) -> Iterator[str]:
    """Tag everything logged inside the block with one correlation ID.

    Args:
        corr_id: Correlation ID to use; a new one is generated when omitted

    Yields:
        The correlation ID
    """
    corr_id = corr_id or new_correlation_id()
    token = correlation_id.set(corr_id)
    try:
        yield corr_id
    finally:
        correlation_id.reset(token)


def trace_context() -> dict[str, str]:
    """Return the trace and span IDs of the recording span, or an empty dict."""
    span = trace.get_current_span()
    span_context = span.get_span_context()
    if not span.is_recording() or not span_context.is_valid:
        return {}
    return {
        "trace_id": format(span_context.trace_id, "032x"),
        "span_id": format(span_context.span_id, "016x"),
    }


def get_context_dict() -> dict[str, Any]:
    """Fields attached to every structured log line."""
    ctx: dict[str, Any] = {}
    corr_id = get_correlation_id()
    if corr_id:
        ctx["correlation_id"] = corr_id
    ctx.update(trace_context())
    return ctx
