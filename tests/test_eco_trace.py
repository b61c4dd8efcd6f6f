"""Unit tests for eco_trace.py: request-scoped tracing.

Tests cover: TraceContext lifecycle, stage recording, provider call
recording, summary computation, and thread-local storage.
"""

import time
import threading

from eco_trace import (
    TraceContext,
    ProviderCallRecord,
    StageRecord,
    get_trace,
    set_trace,
    clear_trace,
)


class TestTraceContextInit:
    def test_defaults(self):
        ctx = TraceContext(trace_id="test-1")
        assert ctx.trace_id == "test-1"
        assert ctx.stages == []
        assert ctx.provider_calls == []
        assert ctx._current_stage == ""
        assert ctx.request_start > 0


class TestStageRecording:
    def test_record_stage(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.record_stage("block_state", 100.0, 100.5)

        assert ctx.stages == [StageRecord("block_state", 500, False, "")]

    def test_record_degraded_stage(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.record_stage("geocode", time.time(), time.time(), degraded=True, note="fallback")
        assert ctx.stages[0].degraded is True
        assert ctx.stages[0].note == "fallback"

    def test_start_and_end_stage(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.start_stage("simulate")
        assert ctx._current_stage == "simulate"
        ctx.end_stage()
        assert ctx._current_stage == ""

    def test_provider_calls_attributed_to_stage(self):
        ctx = TraceContext(trace_id="test-1")
        ctx.start_stage("block_state")
        ctx.record_provider_call("air_quality", "current", 120, 200)
        ctx.end_stage()
        ctx.record_provider_call("narrative", "generate", 900, 200)

        assert ctx.provider_calls[0] == ProviderCallRecord(
            "air_quality", "current", 120, 200, "ok", "block_state",
        )
        assert ctx.provider_calls[1].stage == ""


class TestSummary:
    def test_success_summary(self):
        ctx = TraceContext(trace_id="s-1")
        ctx.record_provider_call("air_quality", "current", 10, 200)
        ctx.record_provider_call("geocode_primary", "search", 10, 200, "empty")
        s = ctx.summary_dict()
        assert s["trace_id"] == "s-1"
        assert s["provider_calls"] == 2
        assert s["degraded_providers"] == []
        assert s["final_outcome"] == "success"

    def test_degraded_summary_lists_each_provider_once(self):
        ctx = TraceContext(trace_id="s-2")
        ctx.record_provider_call("traffic", "flow_segment", 10, 0, "timeout")
        ctx.record_provider_call("land_use", "overpass:land_use", 10, 429, "rate_limit")
        ctx.record_provider_call("traffic", "flow_segment", 10, 500, "http_error")
        s = ctx.summary_dict()
        assert s["degraded_providers"] == ["traffic", "land_use"]
        assert s["final_outcome"] == "degraded"

    def test_stages_in_summary(self):
        ctx = TraceContext(trace_id="s-3")
        ctx.record_stage("simulate", 0.0, 0.25, degraded=True)
        assert ctx.summary_dict()["stages"] == [
            {"stage": "simulate", "elapsed_ms": 250, "degraded": True},
        ]

    def test_log_summary_does_not_raise(self, caplog):
        ctx = TraceContext(trace_id="s-4")
        with caplog.at_level("INFO", logger="eco_trace"):
            ctx.log_summary()
        assert "[trace-summary] trace=s-4" in caplog.text


class TestThreadLocal:
    def test_set_get_clear(self):
        ctx = TraceContext(trace_id="tl")
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

    def test_concurrent_recording(self):
        ctx = TraceContext(trace_id="conc")

        def work():
            for _ in range(200):
                ctx.record_provider_call("air_quality", "current", 1, 200)

        threads = [threading.Thread(target=work) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(ctx.provider_calls) == 800
