"""Read-through Redis cache for SkillProfile snapshots.

The profile store stays the source of truth: every cache failure is logged,
counted, and turned into a miss. A circuit breaker stops hammering Redis
while it is down.
"""
from __future__ import annotations

import json

import pydantic
import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.cache_metrics import record_cache_discard, record_cache_error, record_cache_get, record_cache_set
from app.core.logging import DOMAIN_CACHE, get_domain_logger
from app.core.resilience import CircuitBreaker
from app.schemas.profile import SkillProfile

logger = get_domain_logger(__name__, DOMAIN_CACHE)

_CACHE_ERRORS = (RedisError, OSError)


class ProfileCache:
    def __init__(
        self,
        client: redis.Redis,
        *,
        breaker: CircuitBreaker,
        ttl_seconds: int = 3600,
        key_prefix: str = "skill_profile",
    ):
        self._client = client
        self._breaker = breaker
        self._ttl_seconds = ttl_seconds
        self._key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> "ProfileCache":
        return cls(redis.from_url(url, decode_responses=True), **kwargs)

    def key_for(self, student_id: str) -> str:
        return f"{self._key_prefix}:{student_id}"

    async def get(self, student_id: str) -> SkillProfile | None:
        if not self._breaker.can_execute():
            record_cache_get(False)
            return None
        key = self.key_for(student_id)
        try:
            raw = await self._client.get(key)
        except _CACHE_ERRORS as exc:
            self._record_failure("get", student_id, exc)
            return None
        self._breaker.record_success()
        if raw is None:
            record_cache_get(False)
            return None
        try:
            profile = SkillProfile.model_validate_json(raw)
        except pydantic.ValidationError:
            logger.warning("Discarding unreadable cached profile for %s", student_id)
            record_cache_discard()
            record_cache_get(False)
            await self.invalidate(student_id)
            return None
        record_cache_get(True)
        return profile

    async def set(self, profile: SkillProfile) -> None:
        if not self._breaker.can_execute():
            return
        try:
            await self._client.set(self.key_for(profile.student_id), profile.model_dump_json(), ex=self._ttl_seconds)
        except _CACHE_ERRORS as exc:
            self._record_failure("set", profile.student_id, exc)
            return
        self._breaker.record_success()
        record_cache_set()

    async def invalidate(self, student_id: str) -> None:
        if not self._breaker.can_execute():
            return
        try:
            await self._client.delete(self.key_for(student_id))
        except _CACHE_ERRORS as exc:
            self._record_failure("delete", student_id, exc)
            return
        self._breaker.record_success()

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except _CACHE_ERRORS:
            return False

    async def close(self) -> None:
        await self._client.aclose()

    def status(self) -> dict:
        return {"enabled": True, "ttl_seconds": self._ttl_seconds, "breaker": self._breaker.status()}

    def _record_failure(self, operation: str, student_id: str, exc: Exception) -> None:
        self._breaker.record_failure()
        record_cache_error(operation)
        logger.warning(
            json.dumps(
                {
                    "type": "profile_cache_unavailable",
                    "operation": operation,
                    "student_id": student_id,
                    "breaker_state": self._breaker.state.value,
                    "error": str(exc),
                }
            )
        )
