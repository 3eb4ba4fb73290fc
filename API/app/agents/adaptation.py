from dataclasses import dataclass

from app.schemas.profile import DEFAULT_DIFFICULTY, MAX_DIFFICULTY, MIN_DIFFICULTY

# Exclusive hysteresis thresholds on theta.
RAISE_THETA_THRESHOLD = 1.0
LOWER_THETA_THRESHOLD = -1.0


@dataclass(frozen=True)
class DifficultyTransition:
    from_difficulty: int
    to_difficulty: int
    delta: int

    @property
    def changed(self) -> bool:
        return self.delta != 0


def clamp_difficulty(level: int) -> int:
    return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, int(level)))


def next_difficulty(theta: float, current_difficulty: int) -> int:
    """Delta in {-1, 0, +1} for the recommended difficulty."""
    if theta > RAISE_THETA_THRESHOLD and current_difficulty < MAX_DIFFICULTY:
        return 1
    if theta < LOWER_THETA_THRESHOLD and current_difficulty > MIN_DIFFICULTY:
        return -1
    return 0


class DifficultyController:
    """Five-state difficulty machine (1..5, starts at 3) that moves at most one step per update."""

    initial_state = DEFAULT_DIFFICULTY

    def transition(self, theta: float, current_difficulty: int) -> DifficultyTransition:
        current = clamp_difficulty(current_difficulty)
        delta = next_difficulty(theta, current)
        return DifficultyTransition(
            from_difficulty=current,
            to_difficulty=clamp_difficulty(current + delta),
            delta=delta,
        )

    def hold(self, current_difficulty: int) -> DifficultyTransition:
        current = clamp_difficulty(current_difficulty)
        return DifficultyTransition(from_difficulty=current, to_difficulty=current, delta=0)
