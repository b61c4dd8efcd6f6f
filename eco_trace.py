"""
Per-request trace for the EcoBlocks API.

app.py opens a TraceContext for every request and stores it thread-locally.
Code deeper in the stack calls get_trace() and, when a trace is active,
adds to it:

    stage timings   record_stage("block_state", t0, t1, degraded=..., note=...)
    provider calls  record_provider_call("traffic", "flow_segment", ms, http, outcome)

Provider calls are tagged with whatever stage is open (start_stage /
end_stage).  At teardown app.py logs one [trace-summary] line per request.

Thread-locals do not cross into ThreadPoolExecutor workers, so the
block-state fan-out hands the parent context to each worker with
set_trace() and clears it afterwards.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

# Outcomes that do not mark a provider as degraded
OK_OUTCOMES = ("ok", "empty")


@dataclass(frozen=True)
class ProviderCallRecord:
    provider: str         # air_quality, traffic, land_use, geocode_primary, ...
    operation: str        # current, history, flow_segment, search, ...
    elapsed_ms: int
    status_code: int      # 0 when no HTTP response arrived
    outcome: str = "ok"   # ok, empty, timeout, http_error, parse_error, exception, disabled
    stage: str = ""


@dataclass(frozen=True)
class StageRecord:
    stage_name: str
    elapsed_ms: int = 0
    degraded: bool = False
    note: str = ""


def _ms(start_ts: float, end_ts: float) -> int:
    return int((end_ts - start_ts) * 1000)


@dataclass
class TraceContext:
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    provider_calls: List[ProviderCallRecord] = field(default_factory=list)
    _current_stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def start_stage(self, name: str) -> None:
        self._current_stage = name

    def end_stage(self) -> None:
        self._current_stage = ""

    def record_stage(self, stage_name, start_ts, end_ts, degraded=False, note=""):
        rec = StageRecord(stage_name, _ms(start_ts, end_ts), degraded, note)
        with self._lock:
            self.stages.append(rec)
        logger.info(
            "  [stage] trace=%s %s %s %dms%s",
            self.trace_id, stage_name, "DEGRADED" if degraded else "OK",
            rec.elapsed_ms, f" note={note}" if note else "",
        )

    def record_provider_call(self, provider, operation, elapsed_ms, status_code, outcome="ok"):
        stage = self._current_stage
        rec = ProviderCallRecord(provider, operation, elapsed_ms, status_code, outcome, stage)
        with self._lock:
            self.provider_calls.append(rec)
        logger.info(
            "  [call] trace=%s stage=%s %s/%s %dms http=%d %s",
            self.trace_id, stage or "-", provider, operation,
            elapsed_ms, status_code, outcome,
        )

    def degraded_providers(self) -> List[str]:
        """Providers with at least one failed call, in first-failure order."""
        with self._lock:
            calls = list(self.provider_calls)
        failed = [c.provider for c in calls if c.outcome not in OK_OUTCOMES]
        return list(dict.fromkeys(failed))

    def summary_dict(self) -> Dict[str, Any]:
        degraded = self.degraded_providers()
        with self._lock:
            stages = list(self.stages)
            n_calls = len(self.provider_calls)
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": _ms(self.request_start, time.time()),
            "provider_calls": n_calls,
            "degraded_providers": degraded,
            "final_outcome": "degraded" if degraded else "success",
            "stages": [
                {"stage": s.stage_name, "elapsed_ms": s.elapsed_ms, "degraded": s.degraded}
                for s in stages
            ],
        }

    def log_summary(self) -> None:
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d provider_calls=%d degraded=%s outcome=%s",
            s["trace_id"], s["total_elapsed_ms"], s["provider_calls"],
            ",".join(s["degraded_providers"]) or "-", s["final_outcome"],
        )


_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    return getattr(_local, "trace", None)


def set_trace(ctx: Optional[TraceContext]) -> None:
    _local.trace = ctx


def clear_trace() -> None:
    _local.trace = None
