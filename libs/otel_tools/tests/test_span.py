"""Tests for start_with_traceparent() and SpanGuard."""

from __future__ import annotations

import asyncio
import re
import threading
from unittest import mock

import pytest
from opentelemetry import trace
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode

from libs.otel_tools.span import SpanGuard, get_trace_context, start_with_traceparent
from libs.otel_tools.traceparent import TRACEPARENT

EXAMPLE = "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01"
EXAMPLE_TRACE_ID = 0x4BF92F3577B34DA6A3CE929D0E0E4736
EXAMPLE_PARENT_ID = 0x00F067AA0BA902B7


class TestTraceparentContinuation:
    """Spans continue the trace found in TRACEPARENT."""

    def test_example_scenario(
        self,
        tracer: trace.Tracer,
        exporter: InMemorySpanExporter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv(TRACEPARENT, EXAMPLE)

        with start_with_traceparent("example", tracer=tracer):
            pass

        (span,) = exporter.get_finished_spans()
        assert format(span.context.trace_id, "032x") == "4bf92f3577b34da6a3ce929d0e0e4736"
        assert span.parent is not None
        assert format(span.parent.span_id, "016x") == "00f067aa0ba902b7"
        assert span.parent.is_remote is True

    def test_explicit_environ(self, tracer: trace.Tracer) -> None:
        with start_with_traceparent("example", tracer=tracer, environ={TRACEPARENT: EXAMPLE}) as guard:
            span_context = guard.span.get_span_context()

        assert span_context.trace_id == EXAMPLE_TRACE_ID
        assert span_context.span_id != EXAMPLE_PARENT_ID

    @pytest.mark.parametrize(
        "traceparent",
        [
            "00-0af7651916cd43dd8448eb211c80319c-b7ad6b7169203331-01",
            "00-00000000000000000000000000000001-0000000000000001-01",
            "01-ffffffffffffffffffffffffffffffff-ffffffffffffffff-01",
        ],
    )
    def test_trace_id_matches_parsed_value(self, tracer: trace.Tracer, traceparent: str) -> None:
        with start_with_traceparent("work", tracer=tracer, environ={TRACEPARENT: traceparent}) as guard:
            trace_id = guard.span.get_span_context().trace_id

        assert format(trace_id, "032x") == traceparent.split("-")[1]

    def test_unsampled_parent_is_respected(
        self, tracer: trace.Tracer, exporter: InMemorySpanExporter
    ) -> None:
        unsampled = EXAMPLE[:-2] + "00"

        with start_with_traceparent("work", tracer=tracer, environ={TRACEPARENT: unsampled}) as guard:
            assert guard.span.is_recording() is False
            assert guard.span.get_span_context().trace_id == EXAMPLE_TRACE_ID

        assert exporter.get_finished_spans() == ()

    def test_attributes_and_kind(self, tracer: trace.Tracer, exporter: InMemorySpanExporter) -> None:
        with start_with_traceparent(
            "work", tracer=tracer, kind="server", attributes={"job.name": "backup"}, environ={}
        ):
            pass

        (span,) = exporter.get_finished_spans()
        assert span.kind == trace.SpanKind.SERVER
        assert span.attributes["job.name"] == "backup"


class TestRootSpanFallback:
    """Missing or malformed TRACEPARENT starts a new trace."""

    def test_missing_variable_starts_root_span(
        self, tracer: trace.Tracer, exporter: InMemorySpanExporter
    ) -> None:
        with start_with_traceparent("root", tracer=tracer, environ={}):
            pass

        (span,) = exporter.get_finished_spans()
        assert span.parent is None
        assert span.context.trace_id != 0
        assert re.fullmatch(r"[0-9a-f]{32}", format(span.context.trace_id, "032x"))

    @pytest.mark.parametrize(
        "traceparent",
        [
            "",
            "garbage",
            "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7",
            "00-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01-extra",
            "ff-4bf92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01",
            "00-xyz92f3577b34da6a3ce929d0e0e4736-00f067aa0ba902b7-01",
            "00-00000000000000000000000000000000-00f067aa0ba902b7-01",
        ],
    )
    def test_malformed_variable_starts_root_span(
        self, tracer: trace.Tracer, exporter: InMemorySpanExporter, traceparent: str
    ) -> None:
        with start_with_traceparent("root", tracer=tracer, environ={TRACEPARENT: traceparent}):
            pass

        (span,) = exporter.get_finished_spans()
        assert span.parent is None
        assert span.context.trace_id != 0
        assert span.context.trace_id != EXAMPLE_TRACE_ID

    def test_current_span_is_not_used_as_parent(
        self, tracer: trace.Tracer, exporter: InMemorySpanExporter
    ) -> None:
        with tracer.start_as_current_span("outer") as outer:
            with start_with_traceparent("root", tracer=tracer, environ={}):
                pass

        root = next(span for span in exporter.get_finished_spans() if span.name == "root")
        assert root.parent is None
        assert root.context.trace_id != outer.get_span_context().trace_id

    def test_tracer_failure_returns_usable_guard(self) -> None:
        broken_tracer = mock.MagicMock()
        broken_tracer.start_span.side_effect = RuntimeError("tracer exploded")

        with start_with_traceparent("root", tracer=broken_tracer, environ={}) as guard:
            assert guard.span is trace.INVALID_SPAN

        assert guard.released is True


class TestSpanGuard:
    """Tests for the guard's scope handling."""

    def test_span_is_current_while_held(self, tracer: trace.Tracer) -> None:
        with start_with_traceparent("root", tracer=tracer, environ={}) as guard:
            assert trace.get_current_span() is guard.span

    def test_nested_spans_are_children(
        self, tracer: trace.Tracer, exporter: InMemorySpanExporter
    ) -> None:
        with start_with_traceparent("root", tracer=tracer, environ={TRACEPARENT: EXAMPLE}) as guard:
            with tracer.start_as_current_span("child"):
                pass
            root_span_id = guard.span.get_span_context().span_id

        child = next(span for span in exporter.get_finished_spans() if span.name == "child")
        assert child.parent is not None
        assert child.parent.span_id == root_span_id
        assert child.context.trace_id == EXAMPLE_TRACE_ID

    def test_release_ends_span_and_restores_context(
        self, tracer: trace.Tracer, exporter: InMemorySpanExporter
    ) -> None:
        guard = start_with_traceparent("root", tracer=tracer, environ={})
        guard.release()

        assert guard.released is True
        assert trace.get_current_span() is trace.INVALID_SPAN
        (span,) = exporter.get_finished_spans()
        assert span.end_time is not None

    def test_released_span_is_not_a_parent(
        self, tracer: trace.Tracer, exporter: InMemorySpanExporter
    ) -> None:
        guard = start_with_traceparent("root", tracer=tracer, environ={})
        root_context = guard.span.get_span_context()
        guard.release()

        with tracer.start_as_current_span("after"):
            pass

        after = next(span for span in exporter.get_finished_spans() if span.name == "after")
        assert after.parent is None
        assert after.context.trace_id != root_context.trace_id

    def test_release_restores_outer_span(self, tracer: trace.Tracer) -> None:
        with tracer.start_as_current_span("outer") as outer:
            with start_with_traceparent("root", tracer=tracer, environ={}):
                pass
            assert trace.get_current_span() is outer

    def test_release_is_idempotent(
        self, tracer: trace.Tracer, exporter: InMemorySpanExporter
    ) -> None:
        guard = start_with_traceparent("root", tracer=tracer, environ={})
        guard.release()
        guard.release()

        assert len(exporter.get_finished_spans()) == 1

    def test_exception_marks_span_and_propagates(
        self, tracer: trace.Tracer, exporter: InMemorySpanExporter
    ) -> None:
        with pytest.raises(ValueError, match="bad input"):
            with start_with_traceparent("root", tracer=tracer, environ={}):
                raise ValueError("bad input")

        (span,) = exporter.get_finished_spans()
        assert span.status.status_code == StatusCode.ERROR
        assert span.status.description == "bad input"
        assert [event.name for event in span.events] == ["exception"]
        assert trace.get_current_span() is trace.INVALID_SPAN

    def test_early_return_ends_span(
        self, tracer: trace.Tracer, exporter: InMemorySpanExporter
    ) -> None:
        def work() -> str:
            with start_with_traceparent("root", tracer=tracer, environ={}):
                return "done"

        assert work() == "done"
        assert len(exporter.get_finished_spans()) == 1

    def test_guard_wraps_existing_span(self, tracer: trace.Tracer) -> None:
        span = tracer.start_span("manual")

        with SpanGuard(span) as guard:
            assert guard.span is span
            assert trace.get_current_span() is span

        assert span.is_recording() is False


class TestConcurrency:
    """The current span is tracked per thread and per task."""

    def test_threads_have_independent_current_spans(self, tracer: trace.Tracer) -> None:
        results: dict[str, bool] = {}
        barrier = threading.Barrier(2)

        def worker(name: str) -> None:
            with start_with_traceparent(name, tracer=tracer, environ={}) as guard:
                barrier.wait(timeout=5)
                results[name] = trace.get_current_span() is guard.span

        threads = [threading.Thread(target=worker, args=(name,)) for name in ("a", "b")]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        assert results == {"a": True, "b": True}

    @pytest.mark.asyncio
    async def test_tasks_keep_their_span_across_await(self, tracer: trace.Tracer) -> None:
        async def worker(name: str) -> bool:
            with start_with_traceparent(name, tracer=tracer, environ={}) as guard:
                await asyncio.sleep(0.01)
                return trace.get_current_span() is guard.span

        assert await asyncio.gather(worker("a"), worker("b")) == [True, True]


class TestGetTraceContext:
    """Tests for get_trace_context()."""

    def test_without_span(self) -> None:
        assert get_trace_context() == {"trace_id": None, "span_id": None}

    def test_inside_guard(self, tracer: trace.Tracer) -> None:
        with start_with_traceparent("root", tracer=tracer, environ={TRACEPARENT: EXAMPLE}) as guard:
            context = get_trace_context()
            span_id = guard.span.get_span_context().span_id

        assert context["trace_id"] == "4bf92f3577b34da6a3ce929d0e0e4736"
        assert context["span_id"] == format(span_id, "016x")
