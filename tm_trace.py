"""
Per-request timing for TourMatrix.

A TraceContext is bound to the handling thread with set_trace(). While it
is bound, timed_stage() records each unit of engine work (compute_missing,
resolve_route) and GoogleMapsRoutingProvider._traced_get() records every
outbound provider call against the stage that is open at the time.

Distance batches run on pool threads: each worker binds the parent's
context with set_trace(parent), and the context guards its lists with a
lock. app.py logs one summary line per request and returns summary_dict()
alongside compute and route responses.
"""

import time
import threading
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class ProviderCall:
    service: str
    endpoint: str
    elapsed_ms: int
    status_code: int
    provider_status: str = ""
    stage: str = ""


@dataclass
class Stage:
    stage_name: str
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""

    @property
    def failed(self) -> bool:
        return bool(self.error_class)


def _outcome(stages: List[Stage]) -> str:
    failed = sum(1 for s in stages if s.failed)
    if not stages:
        return "empty"
    if failed == len(stages):
        return "error"
    return "partial" if failed else "success"


@dataclass
class TraceContext:
    trace_id: str
    started: float = field(default_factory=time.time)
    stages: List[Stage] = field(default_factory=list)
    api_calls: List[ProviderCall] = field(default_factory=list)
    open_stage: str = ""
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @contextmanager
    def stage(self, name: str):
        """Attribute provider calls made inside the block to *name*."""
        self.open_stage = name
        try:
            yield
        finally:
            self.open_stage = ""

    def record_stage(self, stage_name, start_ts, end_ts, error_class="", error_message=""):
        with self._lock:
            calls = sum(1 for c in self.api_calls if c.stage == stage_name)
            rec = Stage(stage_name, int((end_ts - start_ts) * 1000), calls, error_class, error_message)
            self.stages.append(rec)
        logger.info(
            "[stage] trace=%s %s %s %dms calls=%d%s",
            self.trace_id, stage_name, "ERR" if rec.failed else "OK",
            rec.elapsed_ms, calls,
            f" {error_class}: {error_message}" if rec.failed else "",
        )

    def record_api_call(self, service, endpoint, elapsed_ms, status_code, provider_status=""):
        rec = ProviderCall(service, endpoint, elapsed_ms, status_code, provider_status, self.open_stage)
        with self._lock:
            self.api_calls.append(rec)
        logger.debug(
            "[provider] trace=%s %s/%s %dms http=%d status=%s",
            self.trace_id, service, endpoint, elapsed_ms, status_code, provider_status or "-",
        )

    def summary_dict(self) -> Dict[str, Any]:
        with self._lock:
            stages = list(self.stages)
            calls = len(self.api_calls)
        failed = sum(1 for s in stages if s.failed)
        return {
            "trace_id": self.trace_id,
            "total_elapsed_ms": int((time.time() - self.started) * 1000),
            "total_api_calls": calls,
            "stages_completed": len(stages) - failed,
            "stages_errored": failed,
            "final_outcome": _outcome(stages),
        }

    def log_summary(self):
        s = self.summary_dict()
        logger.info(
            "[trace] %s %s in %dms (%d provider calls, %d/%d stages ok)",
            s["trace_id"], s["final_outcome"], s["total_elapsed_ms"], s["total_api_calls"],
            s["stages_completed"], s["stages_completed"] + s["stages_errored"],
        )


def timed_stage(stage_name, fn, *args, **kwargs):
    """Call fn as a named stage on the bound trace; exceptions propagate."""
    trace = get_trace()
    t0 = time.time()
    if trace is None:
        result = fn(*args, **kwargs)
        logger.debug("[stage] %s %.2fs (untraced)", stage_name, time.time() - t0)
        return result
    with trace.stage(stage_name):
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            trace.record_stage(stage_name, t0, time.time(), type(exc).__name__, str(exc)[:200])
            raise
    trace.record_stage(stage_name, t0, time.time())
    return result


_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    return getattr(_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    _local.ctx = ctx


def clear_trace():
    _local.ctx = None
