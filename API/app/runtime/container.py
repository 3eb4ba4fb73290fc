"""Process-lifetime wiring: engine, stores, cache, pipeline and worker.

Built once at startup and torn down at shutdown; routers reach it through
``request.app.state.runtime`` rather than module-level singletons.
"""
from __future__ import annotations

import logging

from fastapi import HTTPException, Request

from app.autonomy.update_worker import ProfileUpdateWorker
from app.core.bootstrap import initialize_database
from app.core.concurrency import KeyedLock
from app.core.resilience import get_breaker
from app.core.settings import Settings, settings
from app.memory.cache import ProfileCache
from app.memory.catalog import CatalogStore
from app.memory.database import build_engine, build_sessionmaker
from app.memory.ledger import AttemptLedger
from app.memory.profile_store import ProfileStore
from app.orchestrator.pipeline import ProfileUpdatePipeline

logger = logging.getLogger(__name__)


class EngineRuntime:
    def __init__(self, config: Settings | None = None, *, cache_client=None):
        self.config = config or settings
        self._cache_client = cache_client
        self.engine = None
        self.sessionmaker = None
        self.catalog: CatalogStore | None = None
        self.ledger: AttemptLedger | None = None
        self.profiles: ProfileStore | None = None
        self.cache: ProfileCache | None = None
        self.pipeline: ProfileUpdatePipeline | None = None
        self.worker: ProfileUpdateWorker | None = None
        self.started = False

    async def start(self) -> None:
        if self.started:
            return
        cfg = self.config
        self.engine = build_engine(cfg.database_url, echo=cfg.database_echo)
        await initialize_database(self.engine)
        self.sessionmaker = build_sessionmaker(self.engine)

        self.catalog = CatalogStore(self.sessionmaker)
        self.ledger = AttemptLedger(self.sessionmaker, self.catalog)
        self.profiles = ProfileStore(self.sessionmaker)
        self.cache = self._build_cache()
        self.pipeline = ProfileUpdatePipeline(
            ledger=self.ledger,
            profiles=self.profiles,
            catalog=self.catalog,
            cache=self.cache,
            locks=KeyedLock(),
            fetch_limit=cfg.ledger_fetch_limit,
            max_write_retries=cfg.profile_write_max_retries,
            retry_delay_seconds=cfg.profile_write_retry_delay_seconds,
        )
        if cfg.update_worker_enabled:
            self.worker = ProfileUpdateWorker(
                self.pipeline,
                concurrency=cfg.update_worker_concurrency,
                max_retries=cfg.update_worker_max_retries,
                retry_delay_seconds=cfg.update_worker_retry_delay_seconds,
            )
            await self.worker.start()
        self.started = True
        logger.info(
            "Engine runtime started | cache=%s | worker=%s",
            "on" if self.cache is not None else "off",
            "on" if self.worker is not None else "off",
        )

    async def stop(self) -> None:
        if not self.started:
            return
        if self.worker is not None:
            await self.worker.stop()
        if self.cache is not None:
            await self.cache.close()
        if self.engine is not None:
            await self.engine.dispose()
        self.started = False
        logger.info("Engine runtime stopped")

    def _build_cache(self) -> ProfileCache | None:
        cfg = self.config
        if not cfg.profile_cache_enabled:
            return None
        breaker = get_breaker(
            "profile_cache",
            failure_threshold=cfg.cache_breaker_failure_threshold,
            recovery_timeout_seconds=cfg.cache_breaker_recovery_seconds,
        )
        options = {
            "breaker": breaker,
            "ttl_seconds": cfg.profile_cache_ttl_seconds,
            "key_prefix": cfg.profile_cache_key_prefix,
        }
        if self._cache_client is not None:
            return ProfileCache(self._cache_client, **options)
        return ProfileCache.from_url(cfg.redis_url, **options)


def get_runtime(request: Request) -> EngineRuntime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None or not runtime.started:
        raise HTTPException(status_code=503, detail="Engine runtime is not running")
    return runtime
