"""Append-only attempt ledger.

Writers only ever insert; readers get newest-first slices ordered by
``created_at`` with ties broken by ``id``. There is no update or
delete API, and the ORM listeners in ``app.models.entities`` reject both.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Iterable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import StorageError, ValidationError
from app.core.logging import DOMAIN_LEDGER, get_domain_logger
from app.memory.catalog import CatalogStore
from app.models.entities import AttemptLog
from app.schemas.attempts import AttemptMode, AttemptRecord

logger = get_domain_logger(__name__, DOMAIN_LEDGER)

_ATTEMPT_FIELDS = (
    "student_id",
    "exercise_id",
    "concept_id",
    "answer",
    "is_correct",
    "score",
    "time_taken_seconds",
    "hints_used",
    "retries_count",
    "mode",
    "created_at",
)


def _normalize_timestamp(value: datetime | None) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _validate_attempt(payload: dict[str, Any]) -> dict[str, Any]:
    missing = [name for name in ("student_id", "exercise_id", "concept_id", "is_correct", "score") if payload.get(name) is None]
    if missing:
        raise ValidationError("attempt is missing required fields", details={"missing": missing})

    unknown = sorted(set(payload) - set(_ATTEMPT_FIELDS))
    if unknown:
        raise ValidationError("attempt has unknown fields", details={"unknown": unknown})

    score = payload["score"]
    if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 100:
        raise ValidationError("score must be an integer between 0 and 100", details={"score": score})

    for name in ("hints_used", "retries_count"):
        value = payload.get(name, 0)
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValidationError(f"{name} must be a non-negative integer", details={name: value})

    time_taken = payload.get("time_taken_seconds")
    if time_taken is not None and (isinstance(time_taken, bool) or not isinstance(time_taken, int) or time_taken < 0):
        raise ValidationError(
            "time_taken_seconds must be a non-negative integer", details={"time_taken_seconds": time_taken}
        )

    answer = payload.get("answer")
    if answer is not None and not isinstance(answer, str):
        if not isinstance(answer, (list, tuple)) or not all(isinstance(item, str) for item in answer):
            raise ValidationError("answer must be a string or a list of strings")
        answer = list(answer)

    try:
        mode = AttemptMode(payload.get("mode") or AttemptMode.LEARNING)
    except ValueError as exc:
        raise ValidationError("mode must be 'learning' or 'exam'", details={"mode": payload.get("mode")}) from exc

    return {
        "student_id": str(payload["student_id"]),
        "exercise_id": str(payload["exercise_id"]),
        "concept_id": str(payload["concept_id"]),
        "answer": answer,
        "is_correct": bool(payload["is_correct"]),
        "score": score,
        "time_taken_seconds": time_taken,
        "hints_used": payload.get("hints_used", 0),
        "retries_count": payload.get("retries_count", 0),
        "mode": mode.value,
        "created_at": _normalize_timestamp(payload.get("created_at")),
    }


class AttemptLedger:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession], catalog: CatalogStore):
        self._sessionmaker = sessionmaker
        self._catalog = catalog

    async def append(self, **attempt: Any) -> AttemptRecord:
        records = await self.append_many([attempt])
        return records[0]

    async def append_many(self, attempts: Iterable[dict[str, Any]]) -> list[AttemptRecord]:
        """Insert a batch (offline sync) in one transaction. Nothing is written if any entry is invalid."""
        rows = [_validate_attempt(dict(item)) for item in attempts]
        if not rows:
            return []

        await self._catalog.require_learners({row["student_id"] for row in rows})
        await self._catalog.require_concepts({row["concept_id"] for row in rows})

        entities = [AttemptLog(**row) for row in rows]
        try:
            async with self._sessionmaker() as session:
                session.add_all(entities)
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error(
                json.dumps(
                    {
                        "type": "ledger_append_failed",
                        "students": sorted({row["student_id"] for row in rows}),
                        "concepts": sorted({row["concept_id"] for row in rows}),
                        "count": len(rows),
                        "error": str(exc),
                    }
                )
            )
            raise StorageError("failed to append attempts to the ledger") from exc

        logger.info(
            json.dumps({"type": "attempts_appended", "count": len(entities), "ids": [e.id for e in entities]})
        )
        return [AttemptRecord.model_validate(entity) for entity in entities]

    async def recent_window(self, student_id: str, concept_id: str, limit: int) -> list[AttemptRecord]:
        """Return up to ``limit`` attempts for one (student, concept) pair, newest first."""
        if limit < 1:
            raise ValidationError("window size must be a positive integer", details={"window_size": limit})
        stmt = (
            select(AttemptLog)
            .where(AttemptLog.student_id == student_id, AttemptLog.concept_id == concept_id)
            .order_by(AttemptLog.created_at.desc(), AttemptLog.id.desc())
            .limit(limit)
        )
        return await self._fetch(stmt, student_id=student_id, concept_id=concept_id)

    async def difficulty_history(self, student_id: str, limit: int = 50) -> list[AttemptRecord]:
        """Newest-first attempts across all concepts, for progress charts."""
        if limit < 1:
            raise ValidationError("history limit must be a positive integer", details={"limit": limit})
        stmt = (
            select(AttemptLog)
            .where(AttemptLog.student_id == student_id)
            .order_by(AttemptLog.created_at.desc(), AttemptLog.id.desc())
            .limit(limit)
        )
        return await self._fetch(stmt, student_id=student_id, concept_id=None)

    async def _fetch(self, stmt, *, student_id: str, concept_id: str | None) -> list[AttemptRecord]:
        try:
            async with self._sessionmaker() as session:
                rows = (await session.execute(stmt)).scalars().all()
        except SQLAlchemyError as exc:
            logger.error(
                json.dumps(
                    {
                        "type": "ledger_read_failed",
                        "student_id": student_id,
                        "concept_id": concept_id,
                        "error": str(exc),
                    }
                )
            )
            raise StorageError(
                "failed to read the attempt ledger",
                details={"student_id": student_id, "concept_id": concept_id},
            ) from exc
        return [AttemptRecord.model_validate(row) for row in rows]
