from __future__ import annotations

from fastapi import APIRouter, Depends

from app.core.app_metrics import get_metrics
from app.core.cache_metrics import get_cache_metrics
from app.core.resilience import get_breakers_status
from app.runtime.container import EngineRuntime, get_runtime

router = APIRouter(prefix="/metrics", tags=["metrics"])


@router.get("/app")
async def app_metrics(runtime: EngineRuntime = Depends(get_runtime)):
    """Profile update outcomes and latency, cache hit ratio, breaker states and worker backlog."""
    out = get_metrics()
    out["cache"] = get_cache_metrics()
    cache = out["cache"]
    hit_ratio = cache.get("cache_hit_ratio")
    if cache.get("cache_get_total", 0) >= 10 and hit_ratio is not None and hit_ratio < 0.5:
        out["alerts"] = list(out.get("alerts", [])) + ["low_cache_hit_ratio"]
    out["breakers"] = get_breakers_status()
    if any(status.get("state") == "open" for status in out["breakers"].values()):
        out["alerts"] = list(out.get("alerts", [])) + ["circuit_open"]
    out["worker"] = runtime.worker.status() if runtime.worker is not None else None
    return out
