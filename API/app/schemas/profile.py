from datetime import datetime
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, Field, StringConstraints, field_validator

MIN_DIFFICULTY = 1
MAX_DIFFICULTY = 5
DEFAULT_DIFFICULTY = 3

SkillTag = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1, max_length=128)]


class SkillTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


def _to_second(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    return value.replace(microsecond=0)


class SkillState(BaseModel):
    mastery_score: float = Field(default=0.0, ge=0.0, le=1.0)
    attempts_count: int = Field(default=0, ge=0)
    last_practiced_at: datetime | None = None
    trend: SkillTrend = SkillTrend.STABLE

    @field_validator("last_practiced_at")
    @classmethod
    def _truncate_to_second(cls, value: datetime | None) -> datetime | None:
        return _to_second(value)


class SkillProfile(BaseModel):
    """Per-student aggregate: one entry per skill tag ever practised."""

    student_id: str
    skills: dict[SkillTag, SkillState] = Field(default_factory=dict)
    overall_mastery: float = Field(default=0.0, ge=0.0, le=1.0)
    current_difficulty: int = Field(default=DEFAULT_DIFFICULTY, ge=MIN_DIFFICULTY, le=MAX_DIFFICULTY)
    # concept_id -> newest attempt id already merged for that concept
    applied_attempts: dict[str, str] = Field(default_factory=dict)
    version: int = Field(default=0, ge=0)
    updated_at: datetime | None = None

    @field_validator("updated_at")
    @classmethod
    def _truncate_to_second(cls, value: datetime | None) -> datetime | None:
        return _to_second(value)


class AdaptiveStateResponse(BaseModel):
    student_id: str
    current_difficulty: int
    overall_mastery: float
    overall_mastery_percent: int
    skills: dict[str, SkillState]
    version: int


class SkillBreakdownEntry(BaseModel):
    skill: str
    mastery_score: float
    band: str
    attempts_count: int
    trend: SkillTrend


class NextSkillResponse(BaseModel):
    student_id: str
    recommended_skill: str | None
    message: str
    weak_skills: list[str]
    strong_skills: list[str]
    skill_breakdown: list[SkillBreakdownEntry]
    mastery_distribution: dict[str, int]


class ApplyAttemptRequest(BaseModel):
    student_id: str = Field(..., min_length=1)
    concept_id: str = Field(..., min_length=1)
    # None -> use the concept's catalog tags; malformed entries are dropped, not rejected
    skill_tags: list[str | None] | None = None


class DifficultyTransitionOut(BaseModel):
    from_difficulty: int
    to_difficulty: int
    delta: int


class ApplyAttemptResponse(BaseModel):
    student_id: str
    concept_id: str
    theta: float
    replayed: bool
    skills_updated: list[str]
    difficulty: DifficultyTransitionOut
    overall_mastery: float
    version: int
