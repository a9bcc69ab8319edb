from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

LOCKOUT_THRESHOLD = 5
LOCKOUT_DURATION_MINUTES = 15


@dataclass(frozen=True)
class LockoutDecision:
    failed_attempts: int
    locked_until: Optional[datetime]

    @property
    def locked(self) -> bool:
        return self.locked_until is not None


class LockoutPolicy:
    """Consecutive-failure lockout over an account's login counters.

    Pure decision logic; callers persist the returned state.
    """

    def __init__(
        self,
        threshold: int = LOCKOUT_THRESHOLD,
        duration: timedelta = timedelta(minutes=LOCKOUT_DURATION_MINUTES),
    ) -> None:
        if threshold < 1:
            raise ValueError("lockout threshold must be positive")
        self.threshold = threshold
        self.duration = duration

    @property
    def duration_minutes(self) -> int:
        return math.ceil(self.duration.total_seconds() / 60)

    @staticmethod
    def is_locked(locked_until: Optional[datetime], now: datetime) -> bool:
        return locked_until is not None and locked_until > now

    @staticmethod
    def remaining_minutes(locked_until: datetime, now: datetime) -> int:
        seconds = (locked_until - now).total_seconds()
        return max(1, math.ceil(seconds / 60))

    def register_failure(self, failed_attempts: int, now: datetime) -> LockoutDecision:
        # An expired lock leaves the counter where it was; the next failure
        # past the threshold therefore re-locks immediately.
        attempts = max(0, failed_attempts) + 1
        if attempts >= self.threshold:
            return LockoutDecision(failed_attempts=attempts, locked_until=now + self.duration)
        return LockoutDecision(failed_attempts=attempts, locked_until=None)

    @staticmethod
    def reset() -> LockoutDecision:
        return LockoutDecision(failed_attempts=0, locked_until=None)
