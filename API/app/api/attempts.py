import json

from fastapi import APIRouter, Depends, Query

from app.agents.ability import ABILITY_WINDOW_SIZE
from app.core.errors import AdaptiveEngineError
from app.core.logging import DOMAIN_API, get_domain_logger
from app.runtime.container import EngineRuntime, get_runtime
from app.schemas.attempts import (
    AttemptCreateRequest,
    AttemptCreateResponse,
    AttemptRecord,
    AttemptSyncRequest,
    AttemptSyncResponse,
)

router = APIRouter(prefix="/attempts", tags=["attempts"])
logger = get_domain_logger(__name__, DOMAIN_API)


async def _trigger_profile_update(
    runtime: EngineRuntime, student_id: str, concept_id: str, skill_tags: list[str | None] | None
) -> str:
    """Hand the derived update to the worker, or run it inline when no worker is running.

    The attempt is already durable at this point, so an inline failure is
    reported in the response instead of failing the request.
    """
    if runtime.worker is not None and runtime.worker.running:
        runtime.worker.enqueue(student_id, concept_id, skill_tags)
        return "queued"
    try:
        await runtime.pipeline.apply_attempt(student_id, concept_id, skill_tags)
    except AdaptiveEngineError as exc:
        logger.warning(
            json.dumps(
                {
                    "type": "inline_profile_update_failed",
                    "student_id": student_id,
                    "concept_id": concept_id,
                    "code": exc.code,
                }
            )
        )
        return f"failed:{exc.code}"
    return "applied"


@router.post("", response_model=AttemptCreateResponse)
async def record_attempt(payload: AttemptCreateRequest, runtime: EngineRuntime = Depends(get_runtime)):
    attempt = await runtime.ledger.append(**payload.model_dump(exclude={"skill_tags"}))
    status = await _trigger_profile_update(runtime, attempt.student_id, attempt.concept_id, payload.skill_tags)
    return AttemptCreateResponse(attempt=attempt, profile_update=status)


@router.post("/sync", response_model=AttemptSyncResponse)
async def sync_attempts(payload: AttemptSyncRequest, runtime: EngineRuntime = Depends(get_runtime)):
    """Offline sync: store a device's queued attempts, then refresh each touched (student, concept) once."""
    attempts = await runtime.ledger.append_many(item.model_dump(exclude={"skill_tags"}) for item in payload.attempts)

    pairs: dict[tuple[str, str], list[str | None] | None] = {}
    for item in payload.attempts:
        key = (item.student_id, item.concept_id)
        if key not in pairs:
            pairs[key] = item.skill_tags

    updates: dict[str, str] = {}
    for (student_id, concept_id), skill_tags in pairs.items():
        updates[f"{student_id}:{concept_id}"] = await _trigger_profile_update(
            runtime, student_id, concept_id, skill_tags
        )
    return AttemptSyncResponse(synced=len(attempts), attempts=attempts, profile_updates=updates)


@router.get("/{student_id}/window", response_model=list[AttemptRecord])
async def ability_window(
    student_id: str,
    concept_id: str = Query(..., min_length=1),
    window_size: int = Query(default=ABILITY_WINDOW_SIZE),
    runtime: EngineRuntime = Depends(get_runtime),
):
    return await runtime.pipeline.get_ability_window(student_id, concept_id, window_size)
