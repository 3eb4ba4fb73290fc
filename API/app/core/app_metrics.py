"""In-memory pipeline metrics: profile update outcomes, write conflicts and latency."""
from __future__ import annotations

from collections import deque
from threading import Lock

# Rolling window size for latency percentiles
_LATENCY_WINDOW = 500
# Alert thresholds
_FAILURE_RATE_ALERT_THRESHOLD = 0.10  # 10%
_CONFLICT_RATE_ALERT_THRESHOLD = 0.25
_LATENCY_P95_ALERT_MS = 1000

_lock = Lock()
_outcomes: dict[str, int] = {"applied": 0, "replayed": 0, "failed": 0}
_conflicts = 0
_latencies: deque[float] = deque(maxlen=_LATENCY_WINDOW)


def record_pipeline_run(duration_sec: float, outcome: str) -> None:
    with _lock:
        _outcomes[outcome] = _outcomes.get(outcome, 0) + 1
        _latencies.append(max(0.0, float(duration_sec)))


def record_write_conflict() -> None:
    with _lock:
        global _conflicts
        _conflicts += 1


def get_metrics() -> dict:
    with _lock:
        outcomes = dict(_outcomes)
        conflicts = _conflicts
        latencies = list(_latencies)

    total = sum(outcomes.values())
    failure_rate = (outcomes.get("failed", 0) / total) if total else 0.0
    conflict_rate = (conflicts / total) if total else 0.0
    latency_ms_p50: float | None = None
    latency_ms_p95: float | None = None
    if latencies:
        sorted_ms = sorted(lat * 1000 for lat in latencies)
        n = len(sorted_ms)
        latency_ms_p50 = sorted_ms[int((n - 1) * 0.50)]
        latency_ms_p95 = sorted_ms[int((n - 1) * 0.95)]

    alerts: list[str] = []
    if total and failure_rate >= _FAILURE_RATE_ALERT_THRESHOLD:
        alerts.append("high_update_failure_rate")
    if total and conflict_rate >= _CONFLICT_RATE_ALERT_THRESHOLD:
        alerts.append("high_write_conflict_rate")
    if latency_ms_p95 is not None and latency_ms_p95 >= _LATENCY_P95_ALERT_MS:
        alerts.append("high_update_latency_p95")

    return {
        "profile_updates": total,
        "profile_updates_by_outcome": outcomes,
        "write_conflicts": conflicts,
        "failure_rate": round(failure_rate, 4),
        "latency_ms_p50": round(latency_ms_p50, 2) if latency_ms_p50 is not None else None,
        "latency_ms_p95": round(latency_ms_p95, 2) if latency_ms_p95 is not None else None,
        "alerts": alerts,
    }


def reset_metrics() -> None:
    with _lock:
        global _conflicts
        _outcomes.clear()
        _outcomes.update({"applied": 0, "replayed": 0, "failed": 0})
        _conflicts = 0
        _latencies.clear()
