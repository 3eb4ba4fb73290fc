"""IRT-lite ability estimate (theta) from a student's recent attempts on one concept.

Not a fitted IRT model: accuracy over the most recent attempts is mapped onto
the theta scale and slow answering costs a fixed penalty.
"""
from __future__ import annotations

from typing import Protocol, Sequence

THETA_MIN = -3.0
THETA_MAX = 3.0
NEUTRAL_THETA = 0.0

ABILITY_WINDOW_SIZE = 10
# seconds assumed for attempts recorded without a duration
DEFAULT_TIME_TAKEN_SECONDS = 60
SLOW_RESPONSE_THRESHOLD_SECONDS = 90
LATENCY_PENALTY = 0.5


class ScoredAttempt(Protocol):
    is_correct: bool
    time_taken_seconds: int | None


def clamp_theta(theta: float) -> float:
    return max(THETA_MIN, min(THETA_MAX, theta))


def select_window(attempts: Sequence[ScoredAttempt], size: int = ABILITY_WINDOW_SIZE) -> list[ScoredAttempt]:
    """Most recent ``size`` attempts of an oldest-first sequence; older ones are dropped, not averaged."""
    return list(attempts[-size:]) if size > 0 else []


def mean_time_taken(window: Sequence[ScoredAttempt]) -> float:
    if not window:
        return 0.0
    total = sum(
        a.time_taken_seconds if a.time_taken_seconds is not None else DEFAULT_TIME_TAKEN_SECONDS for a in window
    )
    return total / len(window)


def latency_penalty(window: Sequence[ScoredAttempt]) -> float:
    return LATENCY_PENALTY if mean_time_taken(window) > SLOW_RESPONSE_THRESHOLD_SECONDS else 0.0


def estimate_ability(attempts: Sequence[ScoredAttempt]) -> float:
    """Theta in [-3, 3] for attempts ordered oldest -> newest. An empty history is neutral (0)."""
    window = select_window(attempts)
    if not window:
        return NEUTRAL_THETA
    accuracy = sum(1 for a in window if a.is_correct) / len(window)
    return clamp_theta((accuracy - 0.5) * 2 - latency_penalty(window))
