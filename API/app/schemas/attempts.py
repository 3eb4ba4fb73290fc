from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class AttemptMode(str, Enum):
    LEARNING = "learning"
    EXAM = "exam"


class AttemptRecord(BaseModel):
    """Read-only view of one ledger row."""

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str
    student_id: str
    exercise_id: str
    concept_id: str
    answer: str | list[str] | None = None
    is_correct: bool
    score: int = Field(ge=0, le=100)
    time_taken_seconds: int | None = Field(default=None, ge=0)
    hints_used: int = Field(default=0, ge=0)
    retries_count: int = Field(default=0, ge=0)
    mode: AttemptMode = AttemptMode.LEARNING
    created_at: datetime


class AttemptCreateRequest(BaseModel):
    student_id: str = Field(..., min_length=1)
    exercise_id: str = Field(..., min_length=1)
    concept_id: str = Field(..., min_length=1)
    answer: str | list[str] | None = None
    is_correct: bool
    score: int = Field(..., ge=0, le=100)
    time_taken_seconds: int | None = Field(default=None, ge=0)
    hints_used: int = Field(default=0, ge=0)
    retries_count: int = Field(default=0, ge=0)
    mode: AttemptMode = AttemptMode.LEARNING
    # offline-synced attempts carry the device timestamp
    created_at: datetime | None = None
    skill_tags: list[str | None] | None = None


class AttemptCreateResponse(BaseModel):
    attempt: AttemptRecord
    profile_update: str


class AttemptSyncRequest(BaseModel):
    attempts: list[AttemptCreateRequest] = Field(..., min_length=1, max_length=500)


class AttemptSyncResponse(BaseModel):
    synced: int
    attempts: list[AttemptRecord]
    profile_updates: dict[str, str]


class DifficultyHistoryEntry(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    attempt_id: str
    concept_id: str
    score: int
    is_correct: bool
    created_at: datetime
