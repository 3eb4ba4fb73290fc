"""Retry and circuit-breaker helpers for the profile pipeline, the update worker and the Redis cache."""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from threading import Lock
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry_with_backoff(
    async_func: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_seconds: float = 0.5,
    max_delay_seconds: float = 5.0,
    retryable_errors: tuple[type[Exception], ...] = (TimeoutError, ConnectionError, asyncio.TimeoutError),
    on_retry: Callable[[int, Exception], None] | None = None,
) -> T:
    """Await ``async_func()`` at most ``max_retries`` times in total.

    Between tries it sleeps ``base * 2**n`` seconds, capped at ``max_delay_seconds``.
    ``on_retry(attempt, exc)`` runs before each sleep. Errors outside
    ``retryable_errors`` propagate immediately; the last retryable one is
    re-raised once the budget is spent.
    """
    attempts = max(1, max_retries)
    for attempt in range(1, attempts + 1):
        try:
            return await async_func()
        except retryable_errors as exc:  # type: ignore[misc]
            if attempt == attempts:
                raise
            if on_retry is not None:
                on_retry(attempt, exc)
            await asyncio.sleep(min(max_delay_seconds, base_delay_seconds * (2 ** (attempt - 1))))
    raise AssertionError("unreachable")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Closed -> open after ``failure_threshold`` consecutive failures; one probe call after the cool-down."""

    name: str
    failure_threshold: int = 4
    recovery_timeout_seconds: float = 30.0
    half_open_max_calls: int = 1
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    state: CircuitState = field(default=CircuitState.CLOSED)
    failure_count: int = field(default=0)
    opened_at: float | None = field(default=None)
    times_opened: int = field(default=0)
    half_open_calls: int = field(default=0)
    _lock: Lock = field(default_factory=Lock, repr=False)

    def can_execute(self) -> bool:
        with self._lock:
            if self.state == CircuitState.OPEN:
                if self.clock() - (self.opened_at or 0.0) < self.recovery_timeout_seconds:
                    return False
                self._move_to(CircuitState.HALF_OPEN)
            if self.state == CircuitState.HALF_OPEN:
                if self.half_open_calls >= self.half_open_max_calls:
                    return False
                self.half_open_calls += 1
            return True

    def record_success(self) -> None:
        with self._lock:
            self.failure_count = 0
            if self.state != CircuitState.CLOSED:
                self._move_to(CircuitState.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            self.failure_count += 1
            if self.state == CircuitState.HALF_OPEN or (
                self.state == CircuitState.CLOSED and self.failure_count >= self.failure_threshold
            ):
                self._move_to(CircuitState.OPEN)

    def status(self) -> dict:
        with self._lock:
            retry_in = None
            if self.state == CircuitState.OPEN and self.opened_at is not None:
                retry_in = max(0.0, round(self.recovery_timeout_seconds - (self.clock() - self.opened_at), 2))
            return {
                "name": self.name,
                "state": self.state.value,
                "failure_count": self.failure_count,
                "times_opened": self.times_opened,
                "retry_in_seconds": retry_in,
            }

    def _move_to(self, new_state: CircuitState) -> None:
        # caller holds self._lock
        previous = self.state
        self.state = new_state
        self.half_open_calls = 0
        if new_state == CircuitState.OPEN:
            self.opened_at = self.clock()
            self.times_opened += 1
        elif new_state == CircuitState.CLOSED:
            self.opened_at = None
        log = logger.warning if new_state == CircuitState.OPEN else logger.info
        log(
            json.dumps(
                {
                    "type": "circuit_state_changed",
                    "breaker": self.name,
                    "from": previous.value,
                    "to": new_state.value,
                    "failure_count": self.failure_count,
                }
            )
        )


_registry: dict[str, CircuitBreaker] = {}
_registry_lock = Lock()


def get_breaker(name: str, **kwargs) -> CircuitBreaker:
    """Process-wide breaker by name; ``kwargs`` only apply when it is first created."""
    with _registry_lock:
        if name not in _registry:
            _registry[name] = CircuitBreaker(name=name, **kwargs)
        return _registry[name]


def get_breakers_status() -> dict[str, dict]:
    with _registry_lock:
        breakers = list(_registry.values())
    return {breaker.name: breaker.status() for breaker in breakers}


def reset_breakers() -> None:
    with _registry_lock:
        _registry.clear()
