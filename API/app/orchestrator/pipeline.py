"""Profile update pipeline: ledger window -> theta -> skill merge -> difficulty -> one profile write.

Per-student discipline: the read-merge-write part runs inside a keyed lock
(one per student, none shared between students) and is retried from the
profile read whenever the optimistic version check loses a race with another
process. The ledger window is re-read on every try, after the profile read,
and the cache is refreshed before the lock is released.
"""
from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable

from app.agents.ability import ABILITY_WINDOW_SIZE, estimate_ability
from app.agents.adaptation import DifficultyController, DifficultyTransition
from app.agents.learner_profile import merge_skills, normalize_skill_tags
from app.core.app_metrics import record_pipeline_run, record_write_conflict
from app.core.concurrency import KeyedLock
from app.core.errors import AdaptiveEngineError, ConcurrencyConflictError
from app.core.logging import DOMAIN_SCORING, get_domain_logger
from app.core.resilience import retry_with_backoff
from app.memory.cache import ProfileCache
from app.memory.catalog import CatalogStore
from app.memory.ledger import AttemptLedger
from app.memory.profile_store import ProfileStore
from app.schemas.attempts import AttemptRecord
from app.schemas.profile import SkillProfile

logger = get_domain_logger(__name__, DOMAIN_SCORING)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


@dataclass
class ProfileUpdateResult:
    profile: SkillProfile
    theta: float
    transition: DifficultyTransition
    replayed: bool
    skills_updated: list[str] = field(default_factory=list)
    window_size: int = 0


class ProfileUpdatePipeline:
    def __init__(
        self,
        *,
        ledger: AttemptLedger,
        profiles: ProfileStore,
        catalog: CatalogStore,
        cache: ProfileCache | None = None,
        locks: KeyedLock | None = None,
        controller: DifficultyController | None = None,
        fetch_limit: int = 20,
        max_write_retries: int = 3,
        retry_delay_seconds: float = 0.05,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.ledger = ledger
        self.profiles = profiles
        self.catalog = catalog
        self.cache = cache
        self.locks = locks or KeyedLock()
        self.controller = controller or DifficultyController()
        self.fetch_limit = fetch_limit
        self.max_write_retries = max_write_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._clock = clock

    async def apply_attempt(
        self,
        student_id: str,
        concept_id: str,
        skill_tags: Iterable[str | None] | None = None,
    ) -> ProfileUpdateResult:
        """Re-derive theta for (student, concept) from the ledger and fold it into the student's profile.

        ``skill_tags=None`` means "use the concept's catalog tags". Blank or
        null tags are dropped. Safe to re-run: a run whose newest ledger
        attempt was already merged only re-derives mastery.
        """
        started = time.perf_counter()
        try:
            result = await self._apply(student_id, concept_id, skill_tags)
        except AdaptiveEngineError as exc:
            record_pipeline_run(time.perf_counter() - started, "failed")
            logger.error(
                json.dumps(
                    {
                        "type": "profile_update_failed",
                        "student_id": student_id,
                        "concept_id": concept_id,
                        "code": exc.code,
                        "error": exc.message,
                    }
                )
            )
            raise
        record_pipeline_run(time.perf_counter() - started, "replayed" if result.replayed else "applied")
        return result

    async def get_profile(self, student_id: str) -> SkillProfile:
        """Current snapshot; creates the default profile on first access. Never touches the ledger."""
        await self.catalog.require_learners({student_id})
        if self.cache is not None:
            cached = await self.cache.get(student_id)
            if cached is not None:
                return cached
        async with self.locks.hold(student_id):
            profile = await self.profiles.get_or_create(student_id)
            if self.cache is not None:
                await self.cache.set(profile)
        return profile

    async def get_ability_window(
        self, student_id: str, concept_id: str, window_size: int = ABILITY_WINDOW_SIZE
    ) -> list[AttemptRecord]:
        """Raw newest-first history for reporting."""
        return await self.ledger.recent_window(student_id, concept_id, window_size)

    async def _apply(
        self,
        student_id: str,
        concept_id: str,
        skill_tags: Iterable[str | None] | None,
    ) -> ProfileUpdateResult:
        await self.catalog.require_learners({student_id})
        if skill_tags is None:
            tags = normalize_skill_tags(await self.catalog.get_concept_skill_tags(concept_id))
        else:
            await self.catalog.require_concepts({concept_id})
            tags = normalize_skill_tags(skill_tags)

        async with self.locks.hold(student_id):
            result = await retry_with_backoff(
                lambda: self._merge_and_persist(student_id, concept_id, tags),
                max_retries=self.max_write_retries,
                base_delay_seconds=self.retry_delay_seconds,
                retryable_errors=(ConcurrencyConflictError,),
                on_retry=lambda attempt, exc: self._on_conflict(student_id, concept_id, attempt),
            )
            # refreshed before the lock is released so cache writes land in version order
            if self.cache is not None:
                await self.cache.set(result.profile)

        logger.info(
            json.dumps(
                {
                    "type": "profile_updated",
                    "student_id": student_id,
                    "concept_id": concept_id,
                    "theta": round(result.theta, 4),
                    "window": result.window_size,
                    "skills": result.skills_updated,
                    "replayed": result.replayed,
                    "from_difficulty": result.transition.from_difficulty,
                    "to_difficulty": result.transition.to_difficulty,
                    "overall_mastery": round(result.profile.overall_mastery, 4),
                    "version": result.profile.version,
                }
            )
        )
        return result

    async def _merge_and_persist(self, student_id: str, concept_id: str, tags: list[str]) -> ProfileUpdateResult:
        # Profile first, ledger second: an attempt merged by a save we have not
        # seen yet either shows up in this window or makes our save conflict.
        profile = await self.profiles.get_or_create(student_id)
        newest_first = await self.ledger.recent_window(student_id, concept_id, self.fetch_limit)
        theta = estimate_ability(list(reversed(newest_first)))
        newest_attempt_id = newest_first[0].id if newest_first else None
        replayed = newest_attempt_id is not None and profile.applied_attempts.get(concept_id) == newest_attempt_id

        merged = merge_skills(profile, tags, theta, self._clock(), replay=replayed)
        if replayed:
            transition = self.controller.hold(profile.current_difficulty)
        else:
            transition = self.controller.transition(theta, profile.current_difficulty)

        applied = dict(merged.applied_attempts)
        if newest_attempt_id is not None:
            applied[concept_id] = newest_attempt_id
        merged = merged.model_copy(update={"current_difficulty": transition.to_difficulty, "applied_attempts": applied})

        saved = await self.profiles.save(merged)
        return ProfileUpdateResult(
            profile=saved,
            theta=theta,
            transition=transition,
            replayed=replayed,
            skills_updated=list(tags),
            window_size=min(len(newest_first), ABILITY_WINDOW_SIZE),
        )


    def _on_conflict(self, student_id: str, concept_id: str, attempt: int) -> None:
        record_write_conflict()
        logger.warning(
            json.dumps(
                {
                    "type": "profile_write_conflict",
                    "student_id": student_id,
                    "concept_id": concept_id,
                    "retry": attempt,
                    "max_retries": self.max_write_retries,
                }
            )
        )
