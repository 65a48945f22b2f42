"""Unit tests for tm_trace.py: request-scoped tracing.

Tests cover: stage recording, API call attribution to stages, summary
outcome, timed_stage, and thread-local storage.
"""

import threading

import pytest

from tm_trace import (
    TraceContext,
    clear_trace,
    get_trace,
    set_trace,
    timed_stage,
)


# =========================================================================
# Stage lifecycle
# =========================================================================

class TestStageRecording:
    def test_record_stage(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.record_stage("compute_missing", 100.0, 100.5)

        assert len(ctx.stages) == 1
        assert ctx.stages[0].stage_name == "compute_missing"
        assert ctx.stages[0].elapsed_ms == 500
        assert ctx.stages[0].error_class == ""

    def test_api_calls_attributed_to_current_stage(self):
        ctx = TraceContext(trace_id="test-1")
        with ctx.stage("resolve_route"):
            ctx.record_api_call("google_maps", "distance_matrix", 40, 200, "OK")
            ctx.record_api_call("google_maps", "directions", 55, 200, "OK")
        ctx.record_api_call("google_maps", "geocode", 10, 200, "OK")
        ctx.record_stage("resolve_route", 100.0, 100.1)

        assert ctx.api_calls[0].stage == "resolve_route"
        assert ctx.api_calls[2].stage == ""
        assert ctx.stages[0].api_calls_made == 2


# =========================================================================
# Summary
# =========================================================================

class TestSummary:
    def test_empty(self):
        assert TraceContext(trace_id="t").summary_dict()["final_outcome"] == "empty"

    def test_success(self):
        ctx = TraceContext(trace_id="t")
        ctx.record_stage("a", 100.0, 100.1)
        summary = ctx.summary_dict()
        assert summary["final_outcome"] == "success"
        assert summary["stages_completed"] == 1

    def test_partial(self):
        ctx = TraceContext(trace_id="t")
        ctx.record_stage("a", 100.0, 100.1)
        ctx.record_stage("b", 100.0, 100.1, error_class="RouteNotFound")
        assert ctx.summary_dict()["final_outcome"] == "partial"

    def test_error(self):
        ctx = TraceContext(trace_id="t")
        ctx.record_stage("a", 100.0, 100.1, error_class="ProviderUnavailable")
        summary = ctx.summary_dict()
        assert summary["final_outcome"] == "error"
        assert summary["stages_errored"] == 1


# =========================================================================
# timed_stage
# =========================================================================

class TestTimedStage:
    def test_returns_result_and_records(self):
        ctx = TraceContext(trace_id="t")
        set_trace(ctx)
        try:
            assert timed_stage("double", lambda x: x * 2, 21) == 42
        finally:
            clear_trace()
        assert [s.stage_name for s in ctx.stages] == ["double"]

    def test_reraises_and_records_error(self):
        ctx = TraceContext(trace_id="t")
        set_trace(ctx)

        def boom():
            raise ValueError("bad input")

        try:
            with pytest.raises(ValueError):
                timed_stage("boom", boom)
        finally:
            clear_trace()
        assert ctx.stages[0].error_class == "ValueError"
        assert ctx.stages[0].error_message == "bad input"

    def test_works_without_trace(self):
        clear_trace()
        assert timed_stage("plain", lambda: "ok") == "ok"


# =========================================================================
# Thread-local storage
# =========================================================================

class TestThreadLocal:
    def test_set_get_clear(self):
        ctx = TraceContext(trace_id="t")
        set_trace(ctx)
        assert get_trace() is ctx
        clear_trace()
        assert get_trace() is None

    def test_not_shared_across_threads(self):
        set_trace(TraceContext(trace_id="main"))
        seen = []
        t = threading.Thread(target=lambda: seen.append(get_trace()))
        t.start()
        t.join()
        clear_trace()
        assert seen == [None]


class TestStageContext:
    def test_stage_closed_after_error(self):
        ctx = TraceContext(trace_id="t")
        with pytest.raises(RuntimeError):
            with ctx.stage("resolve_route"):
                raise RuntimeError("boom")
        assert ctx.open_stage == ""

    def test_failed_flag(self):
        ctx = TraceContext(trace_id="t")
        ctx.record_stage("a", 100.0, 100.1, error_class="RouteNotFound")
        assert ctx.stages[0].failed
