"""
Retry Policy - capped backoff schedule and attempt limit for order placement.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta

from autogift.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    """
    Backoff schedule indexed by failure count, capped at its last step.

    With max_attempts=3 and the default schedule: first failure retries
    after 10 minutes, second after 1 hour, third is terminal.
    """

    backoff_seconds: tuple[int, ...]
    max_attempts: int

    def __post_init__(self) -> None:
        if not self.backoff_seconds:
            raise ValueError("backoff_seconds cannot be empty")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1: {self.max_attempts}")

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            backoff_seconds=tuple(settings.retry_backoff_seconds),
            max_attempts=settings.max_order_attempts,
        )

    def delay_for(self, failure_count: int) -> timedelta:
        """Wait before the retry that follows the given number of failures."""
        index = min(max(failure_count, 1), len(self.backoff_seconds)) - 1
        return timedelta(seconds=self.backoff_seconds[index])

    def next_retry_at(self, failure_count: int, now: datetime) -> datetime:
        return now + self.delay_for(failure_count)

    def is_exhausted(self, failure_count: int) -> bool:
        return failure_count >= self.max_attempts
