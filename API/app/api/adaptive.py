from fastapi import APIRouter, Depends, Query

from app.agents.learner_profile import LearnerProfilingAgent
from app.core.settings import settings
from app.runtime.container import EngineRuntime, get_runtime
from app.schemas.attempts import DifficultyHistoryEntry
from app.schemas.profile import (
    AdaptiveStateResponse,
    ApplyAttemptRequest,
    ApplyAttemptResponse,
    DifficultyTransitionOut,
    NextSkillResponse,
)

router = APIRouter(prefix="/adaptive", tags=["adaptive"])
profiling_agent = LearnerProfilingAgent()


@router.get("/state/{student_id}", response_model=AdaptiveStateResponse)
async def adaptive_state(student_id: str, runtime: EngineRuntime = Depends(get_runtime)):
    profile = await runtime.pipeline.get_profile(student_id)
    return AdaptiveStateResponse(
        student_id=profile.student_id,
        current_difficulty=profile.current_difficulty,
        overall_mastery=profile.overall_mastery,
        overall_mastery_percent=round(profile.overall_mastery * 100),
        skills=profile.skills,
        version=profile.version,
    )


@router.get("/next-skill/{student_id}", response_model=NextSkillResponse)
async def next_skill(student_id: str, runtime: EngineRuntime = Depends(get_runtime)):
    """Lowest-mastery skill first; empty recommendation until the student has practised something."""
    profile = await runtime.pipeline.get_profile(student_id)
    return NextSkillResponse(**profiling_agent.analyze(profile))


@router.get("/difficulty-history/{student_id}", response_model=list[DifficultyHistoryEntry])
async def difficulty_history(
    student_id: str,
    limit: int = Query(default=settings.difficulty_history_limit, ge=1, le=500),
    runtime: EngineRuntime = Depends(get_runtime),
):
    await runtime.catalog.require_learners({student_id})
    attempts = await runtime.ledger.difficulty_history(student_id, limit=limit)
    return [
        DifficultyHistoryEntry(
            attempt_id=attempt.id,
            concept_id=attempt.concept_id,
            score=attempt.score,
            is_correct=attempt.is_correct,
            created_at=attempt.created_at,
        )
        for attempt in attempts
    ]


@router.post("/update", response_model=ApplyAttemptResponse)
async def trigger_update(payload: ApplyAttemptRequest, runtime: EngineRuntime = Depends(get_runtime)):
    """Internal: recompute a student's profile after an attempt has been recorded."""
    result = await runtime.pipeline.apply_attempt(payload.student_id, payload.concept_id, payload.skill_tags)
    return ApplyAttemptResponse(
        student_id=payload.student_id,
        concept_id=payload.concept_id,
        theta=result.theta,
        replayed=result.replayed,
        skills_updated=result.skills_updated,
        difficulty=DifficultyTransitionOut(
            from_difficulty=result.transition.from_difficulty,
            to_difficulty=result.transition.to_difficulty,
            delta=result.transition.delta,
        ),
        overall_mastery=result.profile.overall_mastery,
        version=result.profile.version,
    )
