"""Reusable OpenTelemetry tracing helpers for services and scripts.

This package sets up tracing from the standard OTLP exporter environment
variables and continues traces handed down through the ``TRACEPARENT``
environment variable.

Usage:
    import logging

    from libs.otel_tools import init, instrument, shutdown, start_with_traceparent

    logger = logging.getLogger(__name__)

    @instrument(err=True)
    async def something(message: str) -> None:
        # This marks the span as an error even though nothing is raised
        logger.error("Error: %s", message)

    async def main() -> None:
        # Set up the exporter from the OTLP exporter environment variables
        # https://opentelemetry.io/docs/languages/sdk-configuration/otlp-exporter/
        result = init("example-service")
        if not result:
            logger.warning("Continuing without tracing: %s", result.error)

        # Start a new active span, continuing TRACEPARENT if it is valid
        with start_with_traceparent("example"):
            # Call an instrumented function
            await something("Hello World")

        shutdown()

Environment:
    OTEL_SERVICE_NAME: Service name. Takes precedence over the config file and
        the name passed to init(). A successful init() sets it to the resolved
        name when absent.
    OTEL_TRACES_EXPORTER: ``otlp`` (default), ``console`` or ``none``.
    OTEL_EXPORTER_OTLP_PROTOCOL: ``http/protobuf`` (default) or ``grpc``.
    OTEL_EXPORTER_OTLP_ENDPOINT: Collector base URL.
    OTEL_EXPORTER_OTLP_TRACES_ENDPOINT: Full traces URL, used as-is.
    OTEL_EXPORTER_OTLP_INSECURE: Use an insecure grpc channel.
    OTEL_EXPORTER_OTLP_HEADERS: ``key1=value1,key2=value2``.
    OTEL_EXPORTER_OTLP_TIMEOUT: Export timeout in milliseconds.
    OTEL_TRACES_SAMPLER: ``parentbased_traceidratio`` (default),
        ``traceidratio``, ``always_on``, ``always_off``,
        ``parentbased_always_on`` or ``parentbased_always_off``.
    OTEL_TRACES_SAMPLER_ARG: Sampling ratio for the traceidratio samplers
        (0.0 to 1.0).
    OTEL_LOG_LEVEL: Root log level set up by init().
    TRACEPARENT: W3C traceparent of the caller, e.g.
        ``00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01``.

    The ``_TRACES_`` variants of the OTLP variables take precedence over the
    generic ones.

Propagating to child processes:
    Inside a span, generate_traceparent() returns the current span context in
    traceparent form. update_traceparent() stores it in TRACEPARENT so that
    subprocesses started afterwards continue the same trace.
"""

from libs.otel_tools.config import ConfigurationError, ExporterConfig, load_config
from libs.otel_tools.instrument import SpanEventHandler, instrument, mark_current_span_error
from libs.otel_tools.provider import (
    AlreadyInitializedError,
    ExporterError,
    InitError,
    InitResult,
    InvalidConfigError,
    flush,
    get_tracer,
    init,
    is_initialized,
    shutdown,
)
from libs.otel_tools.span import SpanGuard, get_trace_context, start_with_traceparent
from libs.otel_tools.traceparent import (
    TRACEPARENT,
    Traceparent,
    TraceparentError,
    generate_traceparent,
    read_traceparent,
    update_traceparent,
)

__all__ = [
    "TRACEPARENT",
    "AlreadyInitializedError",
    "ConfigurationError",
    "ExporterConfig",
    "ExporterError",
    "InitError",
    "InitResult",
    "InvalidConfigError",
    "SpanEventHandler",
    "SpanGuard",
    "Traceparent",
    "TraceparentError",
    "flush",
    "generate_traceparent",
    "get_trace_context",
    "get_tracer",
    "init",
    "instrument",
    "is_initialized",
    "load_config",
    "mark_current_span_error",
    "read_traceparent",
    "shutdown",
    "start_with_traceparent",
    "update_traceparent",
]
