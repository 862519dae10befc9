"""Root spans that continue a trace propagated through TRACEPARENT.

Example:
    Continue the trace of a parent shell script::

        from libs.otel_tools import start_with_traceparent

        with start_with_traceparent("nightly-backup") as guard:
            guard.span.set_attribute("backup.target", "s3")
            run_backup()

    The span ends when the ``with`` block exits, including on early return
    or when an exception propagates. ``release()`` can be called explicitly
    instead when a ``with`` block does not fit.
"""

from __future__ import annotations

import logging
from contextvars import ContextVar, Token
from types import TracebackType
from typing import TYPE_CHECKING, Any, Literal, MutableMapping

from opentelemetry import context as otel_context
from opentelemetry import trace
from opentelemetry.trace import NonRecordingSpan, SpanKind, Status, StatusCode, TraceFlags

from libs.otel_tools.provider import get_tracer
from libs.otel_tools.traceparent import read_traceparent

if TYPE_CHECKING:
    from opentelemetry.context import Context
    from opentelemetry.trace import Span, Tracer

logger = logging.getLogger(__name__)

SpanKindName = Literal["internal", "server", "client", "producer", "consumer"]

_KIND_MAP = {
    "internal": SpanKind.INTERNAL,
    "server": SpanKind.SERVER,
    "client": SpanKind.CLIENT,
    "producer": SpanKind.PRODUCER,
    "consumer": SpanKind.CONSUMER,
}

# The span that error-level log records should mark as failed. Tracked per
# thread/task so that concurrent operations do not see each other's spans.
_error_marking_span: ContextVar[Span | None] = ContextVar(
    "otel_tools_error_marking_span", default=None
)


def error_marking_span() -> Span | None:
    """Return the span that opted in to error marking in this context, if any."""
    return _error_marking_span.get()


class SpanGuard:
    """Keeps a span current for the calling thread or task until released.

    While the guard is held, spans started through ordinary instrumentation
    nest under its span. Releasing ends the span and restores the context
    that was current before the guard was created, so later spans never
    attach to an ended span.
    """

    def __init__(self, span: Span, *, mark_errors: bool = False) -> None:
        """Make span current.

        Args:
            span: The started span this guard owns.
            mark_errors: If True, error-level log records emitted while the
                span is current mark it as failed.
        """
        self._span = span
        self._released = False
        self._context_token = otel_context.attach(trace.set_span_in_context(span))
        self._error_token: Token[Span | None] = _error_marking_span.set(
            span if mark_errors else None
        )

    @property
    def span(self) -> Span:
        return self._span

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        """End the span and restore the previous context.

        Safe to call more than once.
        """
        if self._released:
            return
        self._released = True

        try:
            self._span.end()
        finally:
            try:
                _error_marking_span.reset(self._error_token)
            except ValueError:
                # Released from a different thread/task than it was created in
                logger.debug("SpanGuard released outside its original context")
            otel_context.detach(self._context_token)

    def __enter__(self) -> SpanGuard:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release the guard, recording any exception that occurred."""
        if exc_val is not None and self._span.is_recording():
            self._span.record_exception(exc_val)
            self._span.set_status(Status(StatusCode.ERROR, str(exc_val)))
        self.release()


def _parent_context(environ: MutableMapping[str, str] | None) -> Context:
    """Build the parent context from TRACEPARENT, or an empty one for a root span."""
    root = otel_context.Context()

    traceparent = read_traceparent(environ)
    if traceparent is None:
        return root

    parent = trace.SpanContext(
        trace_id=traceparent.trace_id,
        span_id=traceparent.parent_id,
        is_remote=True,
        trace_flags=TraceFlags(traceparent.flags),
    )
    return trace.set_span_in_context(NonRecordingSpan(parent), root)


def start_with_traceparent(
    name: str,
    *,
    tracer: Tracer | None = None,
    kind: SpanKindName = "internal",
    attributes: dict[str, Any] | None = None,
    mark_errors: bool = False,
    environ: MutableMapping[str, str] | None = None,
) -> SpanGuard:
    """Start a span and make it current.

    If the TRACEPARENT environment variable holds a valid traceparent, the
    span becomes a child of that remote span context. Otherwise, including
    when the value is malformed, it starts a new trace. The current span of
    the calling context is never used as the parent.

    Args:
        name: Span name.
        tracer: Tracer to start the span with. Defaults to the tracer of the
            provider installed by init().
        kind: Span kind (internal, server, client, producer, consumer).
        attributes: Initial span attributes.
        mark_errors: Mark the span as failed when an error-level log record is
            emitted while it is current.
        environ: Environment mapping to read (defaults to os.environ).

    Returns:
        A SpanGuard. This function does not raise.
    """
    active_tracer = tracer if tracer is not None else get_tracer()

    try:
        span = active_tracer.start_span(
            name,
            context=_parent_context(environ),
            kind=_KIND_MAP.get(kind, SpanKind.INTERNAL),
            attributes=attributes,
        )
    except Exception as e:
        logger.warning(f"Failed to start span {name!r}, continuing without it: {e}")
        span = trace.INVALID_SPAN

    return SpanGuard(span, mark_errors=mark_errors)


def get_trace_context() -> dict[str, str | None]:
    """Get the trace and span ids of the current span.

    Returns:
        Dict with 'trace_id' and 'span_id' keys. Values are hex-formatted
        strings (32 chars for trace_id, 16 chars for span_id) or None if
        there is no valid current span.
    """
    result: dict[str, str | None] = {"trace_id": None, "span_id": None}

    span_context = trace.get_current_span().get_span_context()
    if span_context.is_valid:
        result["trace_id"] = format(span_context.trace_id, "032x")
        result["span_id"] = format(span_context.span_id, "016x")

    return result
