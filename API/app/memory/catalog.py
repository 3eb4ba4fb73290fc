"""Known students and concepts.

Only what the engine needs: existence checks and a concept's skill tags.
Accounts and course content are owned by other services, which register
rows here as they are created.
"""
from __future__ import annotations

from typing import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.errors import NotFoundError, StorageError
from app.core.logging import DOMAIN_PROFILE, get_domain_logger
from app.models.entities import Concept, Learner

logger = get_domain_logger(__name__, DOMAIN_PROFILE)


class CatalogStore:
    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        self._sessionmaker = sessionmaker

    async def register_learner(self, learner_id: str, name: str = "") -> None:
        await self._upsert(Learner, learner_id, name=name or f"Learner-{learner_id[:8]}")

    async def register_concept(self, concept_id: str, title: str = "", skill_tags: Iterable[str] = ()) -> None:
        await self._upsert(Concept, concept_id, title=title or concept_id, skill_tags=list(skill_tags))

    async def get_concept_skill_tags(self, concept_id: str) -> list[str]:
        try:
            async with self._sessionmaker() as session:
                concept = await session.get(Concept, concept_id)
        except SQLAlchemyError as exc:
            raise StorageError("failed to read concept", details={"concept_id": concept_id}) from exc
        if concept is None:
            raise NotFoundError(f"concept {concept_id} not found", details={"concept_id": concept_id})
        return list(concept.skill_tags or [])

    async def require_learners(self, learner_ids: Iterable[str]) -> None:
        await self._require(Learner, set(learner_ids), "student")

    async def require_concepts(self, concept_ids: Iterable[str]) -> None:
        await self._require(Concept, set(concept_ids), "concept")

    async def _require(self, model, ids: set[str], label: str) -> None:
        if not ids:
            return
        try:
            async with self._sessionmaker() as session:
                found = set((await session.execute(select(model.id).where(model.id.in_(ids)))).scalars().all())
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to look up {label}s", details={"ids": sorted(ids)}) from exc
        missing = sorted(ids - found)
        if missing:
            raise NotFoundError(
                f"{label} {missing[0]} not found" if len(missing) == 1 else f"{len(missing)} {label}s not found",
                details={f"{label}_ids": missing},
            )

    async def _upsert(self, model, row_id: str, **values) -> None:
        try:
            async with self._sessionmaker() as session:
                row = await session.get(model, row_id)
                if row is None:
                    session.add(model(id=row_id, **values))
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
                await session.commit()
        except IntegrityError:
            # registered concurrently by another writer
            logger.debug("%s %s already registered", model.__tablename__, row_id)
        except SQLAlchemyError as exc:
            raise StorageError(f"failed to register {model.__tablename__} row", details={"id": row_id}) from exc
