"""
Skill aggregation: folds a fresh theta into a student's per-skill mastery map.

Also hosts the profile analysis used for "what to practise next": mastery
bands, weak/strong skills and the lowest-mastery skill.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Iterable

from app.agents.ability import THETA_MAX, THETA_MIN, clamp_theta
from app.core.logging import DOMAIN_SCORING, get_domain_logger
from app.schemas.profile import SkillProfile, SkillState, SkillTrend

logger = get_domain_logger(__name__, DOMAIN_SCORING)

NEW_SKILL_PRIOR_MASTERY = 0.5
TREND_THRESHOLD = 0.2
_THETA_SPAN = THETA_MAX - THETA_MIN
MAX_SKILL_TAG_LENGTH = 128


def theta_to_mastery(theta: float) -> float:
    mastery = (clamp_theta(theta) - THETA_MIN) / _THETA_SPAN
    return max(0.0, min(1.0, mastery))


def mastery_to_theta(mastery: float) -> float:
    return mastery * _THETA_SPAN + THETA_MIN


def classify_trend(theta: float, prev_mastery: float) -> SkillTrend:
    prev_theta = mastery_to_theta(prev_mastery)
    if theta > prev_theta + TREND_THRESHOLD:
        return SkillTrend.IMPROVING
    if theta < prev_theta - TREND_THRESHOLD:
        return SkillTrend.DECLINING
    return SkillTrend.STABLE


def compute_overall_mastery(skills: dict[str, SkillState]) -> float:
    if not skills:
        return 0.0
    return sum(state.mastery_score for state in skills.values()) / len(skills)


def normalize_skill_tags(tags: Iterable[str | None] | None) -> list[str]:
    """Drop null/blank/oversized tags, strip whitespace, de-duplicate keeping first-seen order."""
    cleaned: list[str] = []
    dropped = 0
    for tag in tags or ():
        if not isinstance(tag, str):
            dropped += 1
            continue
        tag = tag.strip()
        if not tag or len(tag) > MAX_SKILL_TAG_LENGTH:
            dropped += 1
            continue
        if tag not in cleaned:
            cleaned.append(tag)
    if dropped:
        logger.info(json.dumps({"type": "skill_tags_filtered", "dropped": dropped, "kept": cleaned}))
    return cleaned


def merge_skill(
    profile: SkillProfile,
    skill_tag: str,
    theta: float,
    now: datetime,
    *,
    replay: bool = False,
) -> SkillProfile:
    """Return a new snapshot with ``skill_tag`` updated from ``theta`` and overall mastery recomputed.

    A replay (same newest attempt merged again) only refreshes the mastery
    score, so retries never double-count attempts or shift the trend.
    """
    previous = profile.skills.get(skill_tag)
    mastery = theta_to_mastery(theta)

    if replay and previous is not None:
        updated = previous.model_copy(update={"mastery_score": mastery})
    else:
        prev_mastery = previous.mastery_score if previous is not None else NEW_SKILL_PRIOR_MASTERY
        updated = SkillState(
            mastery_score=mastery,
            attempts_count=(previous.attempts_count if previous is not None else 0) + 1,
            last_practiced_at=now,
            trend=classify_trend(theta, prev_mastery),
        )

    skills = dict(profile.skills)
    skills[skill_tag] = updated
    return profile.model_copy(update={"skills": skills, "overall_mastery": compute_overall_mastery(skills)})


def merge_skills(
    profile: SkillProfile,
    skill_tags: Iterable[str],
    theta: float,
    now: datetime,
    *,
    replay: bool = False,
) -> SkillProfile:
    """Apply ``merge_skill`` for every tag; the caller persists the result once."""
    for tag in skill_tags:
        profile = merge_skill(profile, tag, theta, now, replay=replay)
    return profile


def _mastery_band(score: float) -> str:
    if score >= 0.80:
        return "mastered"
    if score >= 0.60:
        return "proficient"
    if score >= 0.30:
        return "developing"
    return "beginner"


class LearnerProfilingAgent:
    """Summarises a skills map into bands and a next-skill recommendation."""

    weak_threshold = 0.40
    strong_threshold = 0.80

    def analyze(self, profile: SkillProfile) -> dict:
        breakdown = []
        weak_skills = []
        strong_skills = []

        for tag in sorted(profile.skills):
            state = profile.skills[tag]
            breakdown.append(
                {
                    "skill": tag,
                    "mastery_score": round(state.mastery_score, 3),
                    "band": _mastery_band(state.mastery_score),
                    "attempts_count": state.attempts_count,
                    "trend": state.trend,
                }
            )
            if state.mastery_score < self.weak_threshold:
                weak_skills.append(tag)
            elif state.mastery_score >= self.strong_threshold:
                strong_skills.append(tag)

        # lowest mastery first, tag name breaks ties
        ranked = sorted(breakdown, key=lambda entry: (profile.skills[entry["skill"]].mastery_score, entry["skill"]))
        recommended = ranked[0]["skill"] if ranked else None
        if recommended is not None:
            message = f'Focus on "{recommended}": you have the most room to grow here.'
        else:
            message = "No skill data yet. Complete some exercises to get a recommendation."

        distribution = {band: 0 for band in ("mastered", "proficient", "developing", "beginner")}
        for entry in breakdown:
            distribution[entry["band"]] += 1

        return {
            "student_id": profile.student_id,
            "recommended_skill": recommended,
            "message": message,
            "weak_skills": weak_skills,
            "strong_skills": strong_skills,
            "skill_breakdown": breakdown,
            "mastery_distribution": distribution,
        }
