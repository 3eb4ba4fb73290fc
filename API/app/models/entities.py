import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Index, Integer, String, event, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.core.errors import AppendOnlyViolationError
from app.models.base import Base

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in local/test runs)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def _new_id() -> str:
    return uuid.uuid4().hex


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Learner(Base):
    __tablename__ = "learners"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Concept(Base):
    __tablename__ = "concepts"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    skill_tags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class AttemptLog(Base):
    """Immutable record of one exercise attempt. Rows are only ever inserted."""

    __tablename__ = "attempt_logs"
    __table_args__ = (
        Index("idx_attempt_logs_student_concept_created", "student_id", "concept_id", "created_at"),
        Index("idx_attempt_logs_student_created", "student_id", "created_at"),
        Index("idx_attempt_logs_created_at", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_new_id)
    student_id: Mapped[str] = mapped_column(String(64), nullable=False)
    exercise_id: Mapped[str] = mapped_column(String(64), nullable=False)
    concept_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # string for MCQ / fill-blank, list of strings for step-based answers
    answer: Mapped[Any] = mapped_column(JSONType, nullable=True)
    is_correct: Mapped[bool] = mapped_column(Boolean, nullable=False)
    score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    time_taken_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    hints_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retries_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    mode: Mapped[str] = mapped_column(String(16), nullable=False, default="learning")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SkillProfileRecord(Base):
    __tablename__ = "skill_profiles"

    student_id: Mapped[str] = mapped_column(
        String(64), ForeignKey("learners.id", ondelete="CASCADE"), primary_key=True
    )
    skills: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    overall_mastery: Mapped[float] = mapped_column(nullable=False, default=0.0)
    current_difficulty: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    applied_attempts: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


@event.listens_for(AttemptLog, "before_update")
def _reject_attempt_update(mapper, connection, target):
    raise AppendOnlyViolationError(
        f"attempt {target.id} is immutable", details={"attempt_id": target.id, "operation": "update"}
    )


@event.listens_for(AttemptLog, "before_delete")
def _reject_attempt_delete(mapper, connection, target):
    raise AppendOnlyViolationError(
        f"attempt {target.id} is immutable", details={"attempt_id": target.id, "operation": "delete"}
    )
