from __future__ import annotations

from datetime import datetime, timezone

import pytest

from app.core.errors import ConcurrencyConflictError
from app.schemas.profile import SkillState, SkillTrend
from conftest import seed


@pytest.mark.asyncio
async def test_get_or_create_returns_default_profile(runtime):
    await seed(runtime)
    assert await runtime.profiles.load("s1") is None

    profile = await runtime.profiles.get_or_create("s1")
    assert profile.student_id == "s1"
    assert profile.skills == {}
    assert profile.overall_mastery == 0.0
    assert profile.current_difficulty == 3
    assert profile.version == 1

    again = await runtime.profiles.get_or_create("s1")
    assert again.version == 1


@pytest.mark.asyncio
async def test_save_bumps_version_and_round_trips_skills(runtime):
    await seed(runtime)
    profile = await runtime.profiles.get_or_create("s1")
    practiced = datetime(2026, 3, 2, 11, 15, 7, tzinfo=timezone.utc)
    changed = profile.model_copy(
        update={
            "skills": {
                "fractions": SkillState(
                    mastery_score=0.6, attempts_count=1, last_practiced_at=practiced, trend=SkillTrend.IMPROVING
                )
            },
            "overall_mastery": 0.6,
            "current_difficulty": 2,
            "applied_attempts": {"c1": "attempt-1"},
        }
    )

    saved = await runtime.profiles.save(changed)
    assert saved.version == 2

    stored = await runtime.profiles.load("s1")
    assert stored.version == 2
    assert stored.current_difficulty == 2
    assert stored.applied_attempts == {"c1": "attempt-1"}
    state = stored.skills["fractions"]
    assert state.trend == SkillTrend.IMPROVING
    assert state.mastery_score == pytest.approx(0.6)
    assert state.last_practiced_at.replace(tzinfo=timezone.utc) == practiced


@pytest.mark.asyncio
async def test_stale_save_is_rejected(runtime):
    await seed(runtime)
    snapshot = await runtime.profiles.get_or_create("s1")
    await runtime.profiles.save(snapshot.model_copy(update={"overall_mastery": 0.4}))

    with pytest.raises(ConcurrencyConflictError) as exc:
        await runtime.profiles.save(snapshot.model_copy(update={"overall_mastery": 0.9}))
    assert exc.value.details["expected_version"] == 1

    stored = await runtime.profiles.load("s1")
    assert stored.overall_mastery == pytest.approx(0.4)
    assert stored.version == 2
