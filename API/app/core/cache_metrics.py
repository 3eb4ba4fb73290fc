"""In-memory profile cache counters: hits, misses, writes, discarded entries and Redis errors per operation."""
from __future__ import annotations

from collections import Counter
from threading import Lock

_lock = Lock()
_counts: Counter[str] = Counter()
_errors_by_operation: Counter[str] = Counter()


def record_cache_get(hit: bool) -> None:
    with _lock:
        _counts["hits" if hit else "misses"] += 1


def record_cache_set() -> None:
    with _lock:
        _counts["sets"] += 1


def record_cache_discard() -> None:
    """A cached snapshot failed validation and was dropped."""
    with _lock:
        _counts["discarded"] += 1


def record_cache_error(operation: str) -> None:
    with _lock:
        _errors_by_operation[operation] += 1


def get_cache_metrics() -> dict:
    with _lock:
        counts = dict(_counts)
        errors = dict(_errors_by_operation)
    hits = counts.get("hits", 0)
    misses = counts.get("misses", 0)
    total_gets = hits + misses
    return {
        "cache_hits": hits,
        "cache_misses": misses,
        "cache_sets": counts.get("sets", 0),
        "cache_discarded": counts.get("discarded", 0),
        "cache_errors": sum(errors.values()),
        "cache_errors_by_operation": errors,
        "cache_get_total": total_gets,
        "cache_hit_ratio": round(hits / total_gets, 4) if total_gets else None,
    }


def reset_cache_metrics() -> None:
    with _lock:
        _counts.clear()
        _errors_by_operation.clear()
