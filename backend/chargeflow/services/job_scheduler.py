"""Deferred job collection for work produced inside a unit of work."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from chargeflow.core.database import atomic

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScheduledJob:
    """A job to hand to the worker queue once the current transaction commits."""

    function: str
    args: tuple[Any, ...] = ()
    run_at: datetime | None = None
    job_id: str | None = None
    queue_name: str | None = None


@dataclass
class JobScheduler:
    """Collects jobs while a unit of work runs.

    Jobs are only enqueued by the caller after a successful commit; a
    rolled-back unit of work discards whatever it scheduled.
    """

    pending: list[ScheduledJob] = field(default_factory=list)

    def enqueue(
        self,
        function: str,
        *args: Any,
        run_at: datetime | None = None,
        job_id: str | None = None,
        queue_name: str | None = None,
    ) -> ScheduledJob:
        job = ScheduledJob(
            function=function,
            args=tuple(args),
            run_at=run_at,
            job_id=job_id,
            queue_name=queue_name,
        )
        self.pending.append(job)
        return job

    def jobs_for(self, function: str) -> list[ScheduledJob]:
        return [job for job in self.pending if job.function == function]

    def mark(self) -> int:
        return len(self.pending)

    def rollback_to(self, mark: int) -> None:
        if len(self.pending) > mark:
            logger.info("Discarding %d jobs from a rolled back unit of work", len(self.pending) - mark)
        del self.pending[mark:]

    def drain(self) -> list[ScheduledJob]:
        jobs = list(self.pending)
        self.pending.clear()
        return jobs


@contextmanager
def unit_of_work(db: Session, scheduler: JobScheduler) -> Iterator[Session]:
    """Commit database changes and keep scheduled jobs only if the block succeeds."""
    mark = scheduler.mark()
    try:
        with atomic(db):
            yield db
    except Exception:
        scheduler.rollback_to(mark)
        raise
