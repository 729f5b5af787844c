from collections.abc import Iterable
from typing import Any

from arq import create_pool
from arq.connections import ArqRedis, RedisSettings
from arq.jobs import Job

from chargeflow.core.config import settings
from chargeflow.services.job_scheduler import ScheduledJob

# Redis connection settings
redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)


async def get_redis_pool() -> ArqRedis:
    """Get or create Redis pool for arq"""
    return await create_pool(redis_settings)


async def enqueue_task(task_name: str, *args: Any, **kwargs: Any) -> Job | None:
    """
    Enqueue a task to the arq worker.

    Args:
        task_name: Name of the task function
        *args: Positional arguments for the task
        **kwargs: Keyword arguments for the task, including arq's
            ``_defer_until``, ``_job_id`` and ``_queue_name``

    Returns:
        Job object from arq, or None when a job with the same id exists
    """
    pool = await get_redis_pool()
    try:
        return await pool.enqueue_job(task_name, *args, **kwargs)
    finally:
        await pool.close()


def job_kwargs(job: ScheduledJob) -> dict[str, Any]:
    kwargs: dict[str, Any] = {}
    if job.run_at is not None:
        kwargs["_defer_until"] = job.run_at
    if job.job_id is not None:
        kwargs["_job_id"] = job.job_id
    if job.queue_name is not None:
        kwargs["_queue_name"] = job.queue_name
    return kwargs


async def enqueue_scheduled_jobs(jobs: Iterable[ScheduledJob]) -> int:
    """Hand committed jobs to arq over a single pool.

    Jobs sharing a ``job_id`` with one already queued are dropped by arq.
    """
    pool = await get_redis_pool()
    count = 0
    try:
        for job in jobs:
            enqueued = await pool.enqueue_job(job.function, *job.args, **job_kwargs(job))
            if enqueued is not None:
                count += 1
        return count
    finally:
        await pool.close()


async def enqueue_recurring_charge_sweep() -> Job | None:
    """Enqueue a sweep over all live subscriptions."""
    return await enqueue_task("recurring_charge_sweep_task")


async def enqueue_membership_price_updates(tier_id: str) -> Job | None:
    """Enqueue propagation of a tier's new prices to its memberships."""
    return await enqueue_task("schedule_membership_price_updates_task", tier_id)
