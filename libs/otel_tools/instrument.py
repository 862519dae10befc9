"""Function instrumentation and the log-to-span bridge.

Functions decorated with ``@instrument(err=True)`` have their span marked as
failed when they raise, and also when anything logs at ERROR or above while
their span is current, even if the function then returns normally::

    @instrument(err=True)
    async def something(message: str) -> None:
        # This marks the span as an error even though nothing is raised
        logger.error("Error: %s", message)

The bridge is a ``logging.Handler`` that ``init()`` attaches to the root
logger. It also records every log record as an event on the current span.
"""

from __future__ import annotations

import functools
import inspect
import logging
from contextlib import contextmanager
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any, Callable, Iterator, TypeVar

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode

from libs.otel_tools.provider import get_tracer
from libs.otel_tools.span import _KIND_MAP, SpanKindName, _error_marking_span, error_marking_span
from libs.otel_tools.validation import validate_attributes, validate_name

if TYPE_CHECKING:
    from opentelemetry.trace import Span, Tracer

F = TypeVar("F", bound=Callable[..., Any])

LOG_EVENT_NAME = "log"

# Set while the handler is writing to a span, so SDK warnings raised during
# that write are not fed back into the span
_in_emit: ContextVar[bool] = ContextVar("otel_tools_in_emit", default=False)


class SpanEventHandler(logging.Handler):
    """Forward log records to the current span.

    Every record becomes a span event. Records at ERROR or above set the span
    status to ERROR when the span opted in to error marking.
    """

    def __init__(self, level: int = logging.NOTSET) -> None:
        super().__init__(level)

    def emit(self, record: logging.LogRecord) -> None:
        if _in_emit.get() or record.name.startswith("opentelemetry"):
            return

        span = trace.get_current_span()
        if not span.is_recording():
            return

        token = _in_emit.set(True)
        try:
            message = record.getMessage()
            span.add_event(
                LOG_EVENT_NAME,
                {
                    "log.severity": record.levelname,
                    "log.logger": record.name,
                    "log.message": message,
                },
            )
            if record.levelno >= logging.ERROR and error_marking_span() is span:
                span.set_status(Status(StatusCode.ERROR, message))
        except Exception:
            self.handleError(record)
        finally:
            _in_emit.reset(token)


def mark_current_span_error(description: str = "") -> bool:
    """Set the status of the current span to ERROR.

    Returns:
        True if a recording span was marked.
    """
    span = trace.get_current_span()
    if not span.is_recording():
        return False
    span.set_status(Status(StatusCode.ERROR, description))
    return True


@contextmanager
def _instrumented_span(
    name: str,
    *,
    err: bool,
    kind: SpanKindName,
    attributes: dict[str, Any] | None,
    tracer: Tracer | None,
) -> Iterator[Span]:
    active_tracer = tracer if tracer is not None else get_tracer()

    with active_tracer.start_as_current_span(
        name,
        kind=_KIND_MAP.get(kind, trace.SpanKind.INTERNAL),
        attributes=attributes,
        record_exception=err,
        set_status_on_exception=err,
    ) as span:
        token = _error_marking_span.set(span if err else None)
        try:
            yield span
        finally:
            _error_marking_span.reset(token)


def instrument(
    name: str | None = None,
    *,
    err: bool = False,
    kind: SpanKindName = "internal",
    attributes: dict[str, Any] | None = None,
    tracer: Tracer | None = None,
) -> Callable[[F], F]:
    """Wrap a function call in a span.

    Works for both regular and ``async`` functions. The span is a child of
    whatever span is current when the function is called.

    Args:
        name: Span name. Defaults to the function's qualified name.
        err: Mark the span as failed when the function raises or when an
            error-level log record is emitted while its span is current.
        kind: Span kind (internal, server, client, producer, consumer).
        attributes: Attributes set on every span.
        tracer: Tracer to use. Defaults to the tracer installed by init().

    Raises:
        ValueError: If name or attributes are invalid.
    """
    if name is not None:
        validate_name("Span name", name)
    if attributes:
        validate_attributes(attributes)

    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                with _instrumented_span(
                    span_name, err=err, kind=kind, attributes=attributes, tracer=tracer
                ):
                    return await func(*args, **kwargs)

            return async_wrapper  # type: ignore[return-value]

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with _instrumented_span(
                span_name, err=err, kind=kind, attributes=attributes, tracer=tracer
            ):
                return func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator
