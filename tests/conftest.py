from __future__ import annotations

import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

ROOT = Path(__file__).resolve().parents[1]
API_DIR = ROOT / "API"
if str(API_DIR) not in sys.path:
    sys.path.insert(0, str(API_DIR))

# Test-mode runtime guards:
# - throwaway SQLite file instead of PostgreSQL
# - no Redis traffic, updates applied inline
_API_DB_DIR = Path(tempfile.mkdtemp(prefix="skill-engine-api-"))
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_API_DB_DIR / 'api.sqlite3'}")
os.environ.setdefault("PROFILE_CACHE_ENABLED", "false")
os.environ.setdefault("UPDATE_WORKER_ENABLED", "false")
os.environ.setdefault("PROFILE_WRITE_RETRY_DELAY_SECONDS", "0")
os.environ.setdefault("LOG_LEVEL", "WARNING")

from app.core.app_metrics import reset_metrics  # noqa: E402
from app.core.cache_metrics import reset_cache_metrics  # noqa: E402
from app.core.resilience import reset_breakers  # noqa: E402
from app.core.settings import Settings  # noqa: E402
from app.main import app  # noqa: E402
from app.runtime.container import EngineRuntime  # noqa: E402

BASE_TIME = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture(scope="session")
def client() -> TestClient:
    with TestClient(app) as tc:
        yield tc


@pytest.fixture(autouse=True)
def _reset_process_state():
    reset_metrics()
    reset_cache_metrics()
    reset_breakers()
    yield
    reset_breakers()


@pytest.fixture
def engine_settings(tmp_path: Path) -> Settings:
    return Settings(
        app_env="test",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.sqlite3'}",
        profile_cache_enabled=False,
        update_worker_enabled=False,
        profile_write_retry_delay_seconds=0,
        update_worker_retry_delay_seconds=0,
    )


@pytest_asyncio.fixture
async def runtime(engine_settings: Settings):
    rt = EngineRuntime(engine_settings)
    await rt.start()
    yield rt
    await rt.stop()


async def seed(runtime: EngineRuntime, student_id: str = "s1", concepts: dict | None = None) -> None:
    """Register a student and concepts (concept_id -> skill tags)."""
    await runtime.catalog.register_learner(student_id)
    for concept_id, tags in (concepts or {"c1": ["fractions"]}).items():
        await runtime.catalog.register_concept(concept_id, skill_tags=tags)


async def record_attempts(
    runtime: EngineRuntime,
    outcomes: list[bool],
    *,
    student_id: str = "s1",
    concept_id: str = "c1",
    time_taken: int | None = 50,
    start: datetime = BASE_TIME,
):
    """Append one attempt per outcome, one minute apart, oldest first."""
    return await runtime.ledger.append_many(
        {
            "student_id": student_id,
            "exercise_id": f"ex-{index}",
            "concept_id": concept_id,
            "answer": "a",
            "is_correct": correct,
            "score": 100 if correct else 0,
            "time_taken_seconds": time_taken,
            "created_at": start + timedelta(minutes=index),
        }
        for index, correct in enumerate(outcomes)
    )
