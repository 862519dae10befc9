"""Shared fixtures for otel_tools tests.

All tests use an in-memory exporter - no collectors are contacted.
"""

from __future__ import annotations

import logging
from typing import Iterator

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.util._once import Once

from libs.otel_tools import provider
from libs.otel_tools.instrument import SpanEventHandler

OTEL_ENV_VARS = [
    "OTEL_SERVICE_NAME",
    "OTEL_TRACES_EXPORTER",
    "OTEL_EXPORTER_OTLP_PROTOCOL",
    "OTEL_EXPORTER_OTLP_TRACES_PROTOCOL",
    "OTEL_EXPORTER_OTLP_ENDPOINT",
    "OTEL_EXPORTER_OTLP_TRACES_ENDPOINT",
    "OTEL_EXPORTER_OTLP_INSECURE",
    "OTEL_EXPORTER_OTLP_TRACES_INSECURE",
    "OTEL_EXPORTER_OTLP_HEADERS",
    "OTEL_EXPORTER_OTLP_TRACES_HEADERS",
    "OTEL_EXPORTER_OTLP_TIMEOUT",
    "OTEL_EXPORTER_OTLP_TRACES_TIMEOUT",
    "OTEL_TRACES_SAMPLER",
    "OTEL_TRACES_SAMPLER_ARG",
    "OTEL_LOG_LEVEL",
    "OTEL_RESOURCE_ATTRIBUTES",
    "TRACEPARENT",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove OTEL_* and TRACEPARENT variables, restoring them after the test.

    Setting before deleting makes monkeypatch remember the original state, so
    values written by the code under test are removed again afterwards.
    """
    for name in OTEL_ENV_VARS:
        monkeypatch.setenv(name, "")
        monkeypatch.delenv(name)


@pytest.fixture(autouse=True)
def reset_tracing() -> Iterator[None]:
    """Shut down any provider installed by init() and reset OTEL globals."""
    root = logging.getLogger()
    root_level = root.level
    yield
    provider.shutdown()
    trace._TRACER_PROVIDER_SET_ONCE = Once()
    trace._TRACER_PROVIDER = None
    root.setLevel(root_level)


@pytest.fixture
def exporter() -> InMemorySpanExporter:
    return InMemorySpanExporter()


@pytest.fixture
def tracer_provider(exporter: InMemorySpanExporter) -> Iterator[TracerProvider]:
    """A local provider exporting synchronously to the in-memory exporter."""
    local_provider = TracerProvider()
    local_provider.add_span_processor(SimpleSpanProcessor(exporter))
    yield local_provider
    local_provider.shutdown()


@pytest.fixture
def tracer(tracer_provider: TracerProvider) -> trace.Tracer:
    return tracer_provider.get_tracer("otel-tools-tests")


@pytest.fixture
def test_logger() -> Iterator[logging.Logger]:
    """A logger with the span event handler attached."""
    log = logging.getLogger("otel_tools_tests")
    handler = SpanEventHandler()
    log.addHandler(handler)
    previous_level = log.level
    log.setLevel(logging.DEBUG)
    yield log
    log.removeHandler(handler)
    log.setLevel(previous_level)
