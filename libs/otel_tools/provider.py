"""Process-wide tracing provider setup driven by the OTLP environment variables.

``init()`` builds a TracerProvider with the exporter described by the
``OTEL_EXPORTER_OTLP_*`` variables and installs it globally. It never raises
for configuration or exporter problems: the outcome is returned as an
``InitResult`` so the caller can decide whether to continue without tracing.

Only one provider may be installed at a time. A second ``init()`` returns a
failed result with ``AlreadyInitializedError`` and leaves the installed
provider untouched; call ``shutdown()`` first to reconfigure.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any
from urllib.parse import urlparse

from libs.otel_tools.config import ConfigurationError, ExporterConfig, load_config, parse_otlp_headers
from libs.otel_tools.validation import validate_name

if TYPE_CHECKING:
    from opentelemetry.sdk.resources import Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import SpanExporter
    from opentelemetry.sdk.trace.sampling import Sampler
    from opentelemetry.trace import Tracer

    from libs.otel_tools.instrument import SpanEventHandler

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
INSTRUMENTATION_VERSION = "1.0.0"

_tracer_provider: TracerProvider | None = None
_tracer: Tracer | None = None
_span_event_handler: SpanEventHandler | None = None


class InitError(Exception):
    """Tracing could not be initialized."""

    pass


class InvalidConfigError(InitError):
    """The exporter configuration is malformed."""

    pass


class ExporterError(InitError):
    """The span exporter could not be constructed."""

    pass


class AlreadyInitializedError(InitError):
    """A tracing provider is already installed in this process."""

    pass


@dataclass(frozen=True)
class InitResult:
    """Outcome of init(). Truthy when tracing was installed."""

    ok: bool
    error: InitError | None = None
    config: ExporterConfig | None = None

    def __bool__(self) -> bool:
        return self.ok


def is_initialized() -> bool:
    """Check if a tracing provider has been installed by init()."""
    return _tracer_provider is not None


def get_tracer() -> Tracer:
    """Return the tracer bound to the installed provider.

    Falls back to the OpenTelemetry global tracer (a no-op unless another
    provider is installed) when init() has not succeeded.
    """
    if _tracer is not None:
        return _tracer

    from opentelemetry import trace

    return trace.get_tracer(__name__)


def init(
    service_name: str,
    *,
    config_path: str | None = None,
    span_exporter: SpanExporter | None = None,
    **overrides: Any,
) -> InitResult:
    """Initialize OpenTelemetry tracing for a service.

    An existing OTEL_SERVICE_NAME environment variable takes precedence over
    the config file, which takes precedence over service_name. Once tracing
    is installed, OTEL_SERVICE_NAME is set to the resolved name when absent
    so that child processes report under the same service. A failed init()
    leaves the environment untouched.

    Args:
        service_name: Name of the service emitting spans.
        config_path: Optional YAML file with configuration defaults.
        span_exporter: Exporter to use instead of the configured one.
        **overrides: ExporterConfig field overrides.

    Returns:
        An InitResult. On failure it carries the InitError describing the
        cause, no provider is installed, and logging falls back to local
        text output.

    Example:
        >>> result = init("example-service")
        >>> if not result:
        ...     print(f"continuing without tracing: {result.error}")
    """
    global _tracer_provider, _tracer

    if _tracer_provider is not None:
        logger.warning(
            "OpenTelemetry tracing already initialized. "
            "Call shutdown() first if you need to reconfigure."
        )
        return InitResult(
            ok=False,
            error=AlreadyInitializedError("Tracing provider is already installed"),
        )

    try:
        validate_name("Service name", service_name)
    except ValueError as e:
        return _fail(InvalidConfigError(str(e)))

    try:
        config = load_config(service_name, config_path=config_path, **overrides)
    except ConfigurationError as e:
        return _fail(InvalidConfigError(str(e)))
    except Exception as e:
        return _fail(InvalidConfigError(f"Unexpected error loading configuration: {e}"))

    try:
        tracer_provider = _create_tracer_provider(config, span_exporter)
    except ImportError as e:
        return _fail(
            ExporterError(
                f"OpenTelemetry exporter packages not installed: {e}. "
                "Install with: pip install opentelemetry-exporter-otlp"
            )
        )
    except Exception as e:
        return _fail(ExporterError(f"Failed to create span exporter: {e}"))

    from opentelemetry import trace

    trace.set_tracer_provider(tracer_provider)
    _tracer_provider = tracer_provider
    _tracer = tracer_provider.get_tracer(
        config.service_name,
        instrumenting_library_version=INSTRUMENTATION_VERSION,
    )

    if not os.environ.get("OTEL_SERVICE_NAME"):
        os.environ["OTEL_SERVICE_NAME"] = config.service_name

    _configure_logging(config.log_level)
    _install_span_event_handler()

    logger.info(
        f"OpenTelemetry tracing initialized with {config.exporter} exporter "
        f"(service={config.service_name}, endpoint={config.resolved_endpoint}, "
        f"sample_rate={config.traces_sample_rate * 100:.0f}%)"
    )
    return InitResult(ok=True, config=config)


def _fail(error: InitError) -> InitResult:
    """Fall back to local logging and build a failed InitResult."""
    _configure_logging(os.environ.get("OTEL_LOG_LEVEL", "info"))
    logger.warning(f"Tracing setup failed. Falling back to local logging. ({error})")
    return InitResult(ok=False, error=error)


def _configure_logging(level_name: str) -> None:
    """Configure root logging with a text handler at the given level."""
    level = logging.getLevelName(level_name.strip().upper())
    if not isinstance(level, int):
        level = logging.INFO

    # basicConfig is a no-op when the root logger already has handlers
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger().setLevel(level)


def _install_span_event_handler() -> None:
    global _span_event_handler

    from libs.otel_tools.instrument import SpanEventHandler

    if _span_event_handler is None:
        _span_event_handler = SpanEventHandler()
        logging.getLogger().addHandler(_span_event_handler)


def _remove_span_event_handler() -> None:
    global _span_event_handler

    if _span_event_handler is not None:
        logging.getLogger().removeHandler(_span_event_handler)
        _span_event_handler = None


def _create_resource(config: ExporterConfig) -> Resource:
    """Create a Resource with the service name.

    Resource.create() also merges OTEL_RESOURCE_ATTRIBUTES.
    """
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource

    return Resource.create({SERVICE_NAME: config.service_name})


def _create_tracer_provider(
    config: ExporterConfig,
    span_exporter: SpanExporter | None = None,
) -> TracerProvider:
    """Build a TracerProvider with the configured sampler and exporter."""
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import BatchSpanProcessor
    tracer_provider = TracerProvider(
        resource=_create_resource(config), sampler=_create_sampler(config)
    )

    exporter = span_exporter if span_exporter is not None else _create_exporter(config)
    if exporter is None:
        logger.info("Trace exporter disabled, spans will not be exported")
    else:
        tracer_provider.add_span_processor(BatchSpanProcessor(exporter))

    return tracer_provider


def _create_sampler(config: ExporterConfig) -> Sampler:
    """Create the sampler named by OTEL_TRACES_SAMPLER.

    The ratio from OTEL_TRACES_SAMPLER_ARG only applies to the traceidratio
    samplers. Parent-based samplers follow the sampled flag of a remote parent.
    """
    from opentelemetry.sdk.trace.sampling import (
        ALWAYS_OFF,
        ALWAYS_ON,
        ParentBased,
        TraceIdRatioBased,
    )

    name = config.sampler
    root: Sampler
    if name.endswith("always_on"):
        root = ALWAYS_ON
    elif name.endswith("always_off"):
        root = ALWAYS_OFF
    else:
        root = TraceIdRatioBased(config.traces_sample_rate)

    if name.startswith("parentbased_"):
        return ParentBased(root)
    return root


def _create_exporter(config: ExporterConfig) -> SpanExporter | None:
    """Create the span exporter selected by the configuration.

    Returns:
        The exporter, or None when the exporter is "none".

    Raises:
        ImportError: If the exporter package is not installed.
    """
    if config.exporter == "none":
        return None

    if config.exporter == "console":
        from opentelemetry.sdk.trace.export import ConsoleSpanExporter

        return ConsoleSpanExporter(service_name=config.service_name)

    headers = parse_otlp_headers(config.headers)
    endpoint = config.resolved_endpoint

    if config.protocol == "grpc":
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter as GrpcSpanExporter,
        )

        # A plain http:// endpoint can only be reached over an insecure channel
        insecure = config.insecure or urlparse(endpoint).scheme == "http"
        return GrpcSpanExporter(
            endpoint=endpoint,
            insecure=insecure,
            headers=headers or None,
            timeout=config.timeout_seconds,
        )

    from opentelemetry.exporter.otlp.proto.http.trace_exporter import (
        OTLPSpanExporter as HttpSpanExporter,
    )

    return HttpSpanExporter(
        endpoint=endpoint,
        headers=headers or None,
        timeout=config.timeout_seconds,
    )


def flush(timeout: float = 2.0) -> None:
    """Flush pending spans.

    Args:
        timeout: Maximum time to wait for flush in seconds.
    """
    if _tracer_provider is None:
        return

    try:
        _tracer_provider.force_flush(timeout_millis=int(timeout * 1000))
    except Exception as e:
        logger.warning("Failed to flush tracer provider: %s", e)


def shutdown(timeout: float = 2.0) -> None:
    """Flush pending spans and shut the tracing provider down.

    Best-effort: spans still open when this is called may not be exported.
    Safe to call multiple times. After shutdown, init() may be called again.
    """
    global _tracer_provider, _tracer

    if _tracer_provider is None:
        logger.debug("shutdown called but tracing not initialized")
        return

    flush(timeout)

    try:
        _tracer_provider.shutdown()
        logger.info("OpenTelemetry tracing shutdown complete")
    except Exception as e:
        logger.warning("Failed to shutdown tracer provider: %s", e)
    finally:
        _tracer_provider = None
        _tracer = None
        _remove_span_event_handler()
