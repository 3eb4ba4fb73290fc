from fastapi import APIRouter, Depends

from app.core.settings import settings
from app.runtime.container import EngineRuntime, get_runtime

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(runtime: EngineRuntime = Depends(get_runtime)):
    cache_ok = await runtime.cache.ping() if runtime.cache is not None else None
    return {
        "status": "ok",
        "service": "skill-profile-engine",
        "env": settings.app_env,
        "cache": {"enabled": runtime.cache is not None, "reachable": cache_ok},
        "worker": runtime.worker.status() if runtime.worker is not None else {"running": False},
        "active_student_locks": len(runtime.pipeline.locks.active_keys()),
    }
