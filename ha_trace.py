"""
Request-scoped tracing for HomeAccess analysis debugging.

Provides a thread-local TraceContext that records:
  - Per-stage timing (stage_name, start/end, elapsed_ms, api_calls, errors)
  - Per-outbound-call timing (service, endpoint, elapsed_ms, status, provider status)
  - Strategy fallbacks (resolver chain, strategy, error, input excerpt) so the
    keyword and threshold tables can be tuned offline
  - End-of-request summary (total_elapsed, total_api_calls, outcome)

Usage:
    from ha_trace import TraceContext, get_trace, set_trace, clear_trace

    # In the request handler (app.py):
    ctx = TraceContext(trace_id=request_id)
    set_trace(ctx)
    ...
    ctx.log_summary()
    clear_trace()

    # In API clients (automatically via _traced_get helpers):
    trace = get_trace()
    if trace:
        trace.record_api_call(...)
"""

import time
import threading
import logging
from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any

logger = logging.getLogger(__name__)

# Longest input excerpt kept on a fallback record.
EXCERPT_CHARS = 160


# =============================================================================
# Data classes for trace records
# =============================================================================

@dataclass
class APICallRecord:
    """One outbound HTTP call (Google Maps, vision classifier, listing page)."""
    service: str          # "google_maps" | "vision" | "listing"
    endpoint: str         # "geocode", "places_nearby", "messages", etc.
    elapsed_ms: int
    status_code: int
    provider_status: str = ""   # e.g. Google "OK", "ZERO_RESULTS"
    stage: str = ""             # which analysis stage was running


@dataclass
class StageRecord:
    """One analysis stage (scrape, epc, features, gp_proximity, etc.)."""
    stage_name: str
    start_ts: float = 0.0
    end_ts: float = 0.0
    elapsed_ms: int = 0
    api_calls_made: int = 0
    error_class: str = ""
    error_message: str = ""


@dataclass
class FallbackRecord:
    """A non-fatal strategy failure that advanced a resolver to its next step."""
    chain: str
    strategy: str
    error_class: str
    error_message: str
    excerpt: str = ""
    stage: str = ""


# =============================================================================
# Trace context
# =============================================================================

@dataclass
class TraceContext:
    """Accumulates timing data for a single analysis request."""
    trace_id: str
    request_start: float = field(default_factory=time.time)
    stages: List[StageRecord] = field(default_factory=list)
    api_calls: List[APICallRecord] = field(default_factory=list)
    fallbacks: List[FallbackRecord] = field(default_factory=list)
    model_version: str = ""
    _current_stage: str = ""

    # ------------------------------------------------------------------
    # Stage lifecycle
    # ------------------------------------------------------------------

    def start_stage(self, name: str):
        self._current_stage = name

    def end_stage(self):
        self._current_stage = ""

    def record_stage(
        self,
        stage_name: str,
        start_ts: float,
        end_ts: float,
        error_class: str = "",
        error_message: str = "",
    ):
        api_in_stage = sum(1 for c in self.api_calls if c.stage == stage_name)
        rec = StageRecord(
            stage_name=stage_name,
            start_ts=start_ts,
            end_ts=end_ts,
            elapsed_ms=int((end_ts - start_ts) * 1000),
            api_calls_made=api_in_stage,
            error_class=error_class,
            error_message=error_message,
        )
        self.stages.append(rec)

        status = "ERR" if error_class else "OK"
        err_info = f" err={error_class}: {error_message}" if error_class else ""
        logger.info(
            "  [stage] trace=%s %s %s %dms api_calls=%d%s",
            self.trace_id,
            stage_name,
            status,
            rec.elapsed_ms,
            api_in_stage,
            err_info,
        )

    # ------------------------------------------------------------------
    # API call recording
    # ------------------------------------------------------------------

    def record_api_call(
        self,
        service: str,
        endpoint: str,
        elapsed_ms: int,
        status_code: int,
        provider_status: str = "",
    ):
        rec = APICallRecord(
            service=service,
            endpoint=endpoint,
            elapsed_ms=elapsed_ms,
            status_code=status_code,
            provider_status=provider_status,
            stage=self._current_stage,
        )
        self.api_calls.append(rec)
        logger.info(
            "  [api] trace=%s stage=%s svc=%s ep=%s ms=%d http=%d provider=%s",
            self.trace_id,
            self._current_stage or "-",
            service,
            endpoint,
            elapsed_ms,
            status_code,
            provider_status,
        )

    # ------------------------------------------------------------------
    # Strategy fallbacks
    # ------------------------------------------------------------------

    def record_fallback(
        self,
        chain: str,
        strategy: str,
        error: BaseException,
        excerpt: str = "",
    ):
        rec = FallbackRecord(
            chain=chain,
            strategy=strategy,
            error_class=type(error).__name__,
            error_message=str(error)[:200],
            excerpt=(excerpt or "")[:EXCERPT_CHARS],
            stage=self._current_stage,
        )
        self.fallbacks.append(rec)

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    # Maximum per-call records persisted in summary_dict to prevent bloat.
    MAX_CALL_RECORDS = 500

    def summary_dict(self) -> Dict[str, Any]:
        """Return a summary dict suitable for logging and JSON responses."""
        total_elapsed = int((time.time() - self.request_start) * 1000)
        completed = [s for s in self.stages if not s.error_class]
        errored = [s for s in self.stages if s.error_class]

        if errored and not completed:
            outcome = "error"
        elif not completed:
            outcome = "empty"
        elif errored or self.fallbacks:
            outcome = "partial"
        else:
            outcome = "success"

        calls = [
            {
                "service": c.service,
                "endpoint": c.endpoint,
                "stage": c.stage,
                "elapsed_ms": c.elapsed_ms,
                "status_code": c.status_code,
            }
            for c in self.api_calls[:self.MAX_CALL_RECORDS]
        ]

        result = {
            "trace_id": self.trace_id,
            "total_elapsed_ms": total_elapsed,
            "total_api_calls": len(self.api_calls),
            "stages_completed": len(completed),
            "stages_errored": len(errored),
            "strategy_fallbacks": len(self.fallbacks),
            "final_outcome": outcome,
            "calls": calls,
        }
        if self.model_version:
            result["model_version"] = self.model_version
        return result

    def log_summary(self):
        """Emit a single structured summary log line."""
        s = self.summary_dict()
        logger.info(
            "[trace-summary] trace=%s total_ms=%d api_calls=%d "
            "completed=%d errored=%d fallbacks=%d outcome=%s",
            s["trace_id"],
            s["total_elapsed_ms"],
            s["total_api_calls"],
            s["stages_completed"],
            s["stages_errored"],
            s["strategy_fallbacks"],
            s["final_outcome"],
        )

    # ------------------------------------------------------------------
    # Serialisation helpers (for debug output)
    # ------------------------------------------------------------------

    def stages_to_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "stage": s.stage_name,
                "elapsed_ms": s.elapsed_ms,
                "api_calls": s.api_calls_made,
                "error": (
                    f"{s.error_class}: {s.error_message}"
                    if s.error_class else None
                ),
            }
            for s in self.stages
        ]

    def fallbacks_to_list(self) -> List[Dict[str, Any]]:
        return [
            {
                "chain": f.chain,
                "strategy": f.strategy,
                "error": f"{f.error_class}: {f.error_message}",
                "excerpt": f.excerpt,
                "stage": f.stage,
            }
            for f in self.fallbacks
        ]

    def full_trace_dict(self) -> Dict[str, Any]:
        """Complete trace data for debug output."""
        summary = self.summary_dict()
        summary["stages"] = self.stages_to_list()
        summary["fallbacks"] = self.fallbacks_to_list()
        return summary


# =============================================================================
# Thread-local storage
# =============================================================================

_trace_local = threading.local()


def get_trace() -> Optional[TraceContext]:
    """Get the current request's trace context, or None."""
    return getattr(_trace_local, "ctx", None)


def set_trace(ctx: Optional[TraceContext]):
    """Set the trace context for the current thread."""
    _trace_local.ctx = ctx


def clear_trace():
    """Clear the current trace context."""
    _trace_local.ctx = None
