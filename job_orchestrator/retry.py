"""Retry policy used for activities and the out-of-band payment retry."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .errors import is_retryable


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff.

    Delay before attempt ``n + 1`` = min(initial * coefficient ** (n - 1), max).
    ``max_attempts`` counts the first attempt, so ``max_attempts=3`` means
    at most two retries.
    """

    max_attempts: int = 3
    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    max_interval: float = 60.0

    def delay_after(self, attempts_made: int) -> timedelta:
        """Delay to wait once ``attempts_made`` attempts have failed."""
        if attempts_made < 1:
            return timedelta(0)
        seconds = self.initial_interval * (self.backoff_coefficient ** (attempts_made - 1))
        return timedelta(seconds=min(seconds, self.max_interval))

    def should_retry(self, attempts_made: int, error: Optional[BaseException] = None) -> bool:
        if attempts_made >= self.max_attempts:
            return False
        if error is not None and not is_retryable(error):
            return False
        return True

    def to_dict(self) -> dict:
        return {
            "max_attempts": self.max_attempts,
            "initial_interval_seconds": self.initial_interval,
            "backoff_coefficient": self.backoff_coefficient,
            "max_interval_seconds": self.max_interval,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "RetryPolicy":
        return cls(
            max_attempts=data.get("max_attempts", 3),
            initial_interval=data.get("initial_interval_seconds", 1.0),
            backoff_coefficient=data.get("backoff_coefficient", 2.0),
            max_interval=data.get("max_interval_seconds", 60.0),
        )


NO_RETRY = RetryPolicy(max_attempts=1)
