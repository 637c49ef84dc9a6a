from __future__ import annotations

from dataclasses import dataclass

DEFAULT_TIMEOUT_S = 20.0
TIMEOUT_BACKOFF_STEP_S = 20.0
TIMEOUT_MAX_ATTEMPTS = 3
DEFAULT_IDLE_TIMEOUT_S = 30.0


@dataclass(frozen=True)
class TimeoutPolicy:
    base_timeout_s: float = DEFAULT_TIMEOUT_S
    backoff_step_s: float = TIMEOUT_BACKOFF_STEP_S
    max_attempts: int = TIMEOUT_MAX_ATTEMPTS
    idle_timeout_s: float = DEFAULT_IDLE_TIMEOUT_S

    def __post_init__(self) -> None:
        if self.base_timeout_s <= 0:
            raise ValueError("base_timeout_s must be positive")
        if self.backoff_step_s < 0:
            raise ValueError("backoff_step_s must not be negative")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.idle_timeout_s <= 0:
            raise ValueError("idle_timeout_s must be positive")

    def deadline(self, attempt_index: int) -> float:
        return self.base_timeout_s + max(attempt_index, 0) * self.backoff_step_s

    def should_retry(self, attempt_index: int) -> bool:
        return attempt_index + 1 < self.max_attempts

    def next_wait(self, *, remaining_s: float, idle_remaining_s: float) -> tuple[float, bool]:
        """Return the wait budget for the next read and whether the idle clock bounds it."""
        if idle_remaining_s < remaining_s:
            return max(idle_remaining_s, 0.0), True
        return max(remaining_s, 0.0), False
