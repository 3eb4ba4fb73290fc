"""Durable SkillProfile aggregate with optimistic concurrency.

Every row carries a ``version``. ``save`` is a compare-and-swap: it only
updates the row whose version still equals the snapshot's version, and bumps
it by one. Losing that race raises ``ConcurrencyConflictError``; the caller
re-reads and re-applies its change.
"""
from __future__ import annotations

import json
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import ConcurrencyConflictError, StorageError
from app.core.logging import DOMAIN_PROFILE, get_domain_logger
from app.models.entities import SkillProfileRecord
from app.schemas.profile import DEFAULT_DIFFICULTY, SkillProfile

logger = get_domain_logger(__name__, DOMAIN_PROFILE)


def _to_schema(record: SkillProfileRecord) -> SkillProfile:
    return SkillProfile.model_validate(
        {
            "student_id": record.student_id,
            "skills": record.skills or {},
            "overall_mastery": record.overall_mastery,
            "current_difficulty": record.current_difficulty,
            "applied_attempts": record.applied_attempts or {},
            "version": record.version,
            "updated_at": record.updated_at,
        }
    )


def _column_values(profile: SkillProfile) -> dict:
    dumped = profile.model_dump(mode="json", include={"skills", "applied_attempts"})
    return {
        "skills": dumped["skills"],
        "overall_mastery": profile.overall_mastery,
        "current_difficulty": profile.current_difficulty,
        "applied_attempts": dumped["applied_attempts"],
    }


class ProfileStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def load(self, student_id: str) -> SkillProfile | None:
        try:
            async with self._sessionmaker() as session:
                record = await session.get(SkillProfileRecord, student_id)
        except SQLAlchemyError as exc:
            self._log_failure("profile_read_failed", student_id, exc)
            raise StorageError("failed to read skill profile", details={"student_id": student_id}) from exc
        return _to_schema(record) if record is not None else None

    async def get_or_create(self, student_id: str) -> SkillProfile:
        """Return the stored profile, inserting the default one (no skills, mastery 0, difficulty 3) if absent."""
        existing = await self.load(student_id)
        if existing is not None:
            return existing

        now = datetime.now(timezone.utc).replace(microsecond=0)
        record = SkillProfileRecord(
            student_id=student_id,
            skills={},
            overall_mastery=0.0,
            current_difficulty=DEFAULT_DIFFICULTY,
            applied_attempts={},
            version=1,
            created_at=now,
            updated_at=now,
        )
        try:
            async with self._sessionmaker() as session:
                session.add(record)
                await session.commit()
        except IntegrityError:
            # another writer created it first
            created = await self.load(student_id)
            if created is None:
                raise StorageError("skill profile vanished after concurrent create", details={"student_id": student_id})
            return created
        except SQLAlchemyError as exc:
            self._log_failure("profile_create_failed", student_id, exc)
            raise StorageError("failed to create skill profile", details={"student_id": student_id}) from exc

        logger.info(json.dumps({"type": "profile_created", "student_id": student_id}))
        return _to_schema(record)

    async def save(self, profile: SkillProfile) -> SkillProfile:
        """Write ``profile`` if its version is still current; return the stored snapshot."""
        now = datetime.now(timezone.utc).replace(microsecond=0)
        stmt = (
            update(SkillProfileRecord)
            .where(
                SkillProfileRecord.student_id == profile.student_id,
                SkillProfileRecord.version == profile.version,
            )
            .values(**_column_values(profile), version=profile.version + 1, updated_at=now)
        )
        try:
            async with self._sessionmaker() as session:
                result = await session.execute(stmt)
                await session.commit()
        except SQLAlchemyError as exc:
            self._log_failure("profile_write_failed", profile.student_id, exc)
            raise StorageError("failed to write skill profile", details={"student_id": profile.student_id}) from exc

        if result.rowcount != 1:
            raise ConcurrencyConflictError(
                f"skill profile for {profile.student_id} changed since version {profile.version}",
                details={"student_id": profile.student_id, "expected_version": profile.version},
            )
        return profile.model_copy(update={"version": profile.version + 1, "updated_at": now})

    @staticmethod
    def _log_failure(event_type: str, student_id: str, exc: Exception) -> None:
        logger.error(json.dumps({"type": event_type, "student_id": student_id, "error": str(exc)}))
