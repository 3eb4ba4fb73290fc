from __future__ import annotations

import asyncio
import json
from collections import deque
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from app.core.errors import AdaptiveEngineError, ConcurrencyConflictError, StorageError
from app.core.logging import DOMAIN_WORKER, get_domain_logger
from app.core.resilience import retry_with_backoff
from app.orchestrator.pipeline import ProfileUpdatePipeline

logger = get_domain_logger(__name__, DOMAIN_WORKER)


class UpdateJob(BaseModel):
    student_id: str
    concept_id: str
    skill_tags: list[str | None] | None = None
    enqueued_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    last_status: str | None = None


class ProfileUpdateWorker:
    """Background trigger for the update pipeline.

    Jobs for the same student may run on different worker tasks; the pipeline's
    per-student lock keeps them serialised. Transient storage failures and
    lost write races are retried here, since the worker is the pipeline's caller.
    """

    def __init__(
        self,
        pipeline: ProfileUpdatePipeline,
        *,
        concurrency: int = 4,
        max_retries: int = 3,
        retry_delay_seconds: float = 0.5,
        failed_history: int = 200,
    ):
        self.pipeline = pipeline
        self.concurrency = max(1, int(concurrency))
        self.max_retries = max_retries
        self.retry_delay_seconds = retry_delay_seconds
        self.failed: deque[UpdateJob] = deque(maxlen=failed_history)
        self.processed = 0
        self._queue: asyncio.Queue[UpdateJob] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def enqueue(self, student_id: str, concept_id: str, skill_tags: list[str | None] | None = None) -> UpdateJob:
        job = UpdateJob(student_id=student_id, concept_id=concept_id, skill_tags=skill_tags)
        self._queue.put_nowait(job)
        return job

    async def join(self) -> None:
        """Wait until every queued job has been processed (or given up on)."""
        await self._queue.join()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._tasks = [
            asyncio.create_task(self._work(index), name=f"profile-update-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info("Profile update worker started with %s tasks", self.concurrency)

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        if self._queue.qsize():
            logger.warning("Profile update worker stopped with %s queued jobs", self._queue.qsize())

    def status(self) -> dict:
        return {
            "running": self._running,
            "tasks": len(self._tasks),
            "queued": self._queue.qsize(),
            "processed": self.processed,
            "failed": len(self.failed),
        }

    async def _work(self, index: int) -> None:
        while self._running:
            job = await self._queue.get()
            try:
                await self._run_job(job)
            finally:
                self._queue.task_done()

    async def _run_job(self, job: UpdateJob) -> None:
        try:
            await retry_with_backoff(
                lambda: self.pipeline.apply_attempt(job.student_id, job.concept_id, job.skill_tags),
                max_retries=self.max_retries,
                base_delay_seconds=self.retry_delay_seconds,
                retryable_errors=(StorageError, ConcurrencyConflictError),
            )
        except AdaptiveEngineError as exc:
            job.last_status = f"failed: {exc.code}"
            self.failed.append(job)
            logger.error(
                json.dumps(
                    {
                        "type": "profile_update_job_failed",
                        "student_id": job.student_id,
                        "concept_id": job.concept_id,
                        "code": exc.code,
                        "error": exc.message,
                    }
                )
            )
            return
        except Exception:
            # keep the worker task alive; the job is kept for inspection
            job.last_status = "failed: internal_error"
            self.failed.append(job)
            logger.exception("Unexpected error applying profile update for %s/%s", job.student_id, job.concept_id)
            return
        job.last_status = "applied"
        self.processed += 1
