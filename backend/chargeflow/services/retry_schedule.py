"""Bounded retry timing for self-rescheduling jobs."""

from dataclasses import dataclass
from datetime import datetime, timedelta

from chargeflow.core.config import settings


@dataclass(frozen=True)
class RetrySchedule:
    """Attempts are numbered from 1; attempt ``max_attempts`` is the last one."""

    max_attempts: int
    delay: timedelta

    def has_attempts_left(self, attempt: int) -> bool:
        return attempt < self.max_attempts

    def next_run(self, attempt: int, now: datetime) -> datetime | None:
        """When attempt ``attempt + 1`` should run, or None once attempts run out."""
        if not self.has_attempts_left(attempt):
            return None
        return now + self.delay

    @classmethod
    def for_preorder_charges(cls) -> "RetrySchedule":
        return cls(
            max_attempts=settings.PREORDER_MAX_CHARGE_ATTEMPTS,
            delay=timedelta(minutes=settings.PREORDER_RETRY_DELAY_MINUTES),
        )
