"""Tests for background task enqueueing."""

from datetime import UTC, datetime
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from chargeflow.services.job_scheduler import ScheduledJob
from chargeflow.tasks import (
    enqueue_membership_price_updates,
    enqueue_recurring_charge_sweep,
    enqueue_scheduled_jobs,
    enqueue_task,
    get_redis_pool,
    job_kwargs,
)


def _mock_pool(**enqueue_kwargs):
    mock_pool = MagicMock()
    mock_pool.enqueue_job = AsyncMock(**enqueue_kwargs)
    mock_pool.close = AsyncMock()
    return mock_pool


class TestTasks:
    @pytest.mark.asyncio
    async def test_get_redis_pool(self):
        """Test get_redis_pool creates a pool."""
        mock_pool = MagicMock()

        with patch("chargeflow.tasks.create_pool", new_callable=AsyncMock) as mock_create:
            mock_create.return_value = mock_pool

            result = await get_redis_pool()

            assert result == mock_pool
            mock_create.assert_called_once()

    @pytest.mark.asyncio
    async def test_enqueue_task(self):
        """Test enqueue_task enqueues a job and closes the pool."""
        mock_job = MagicMock()
        mock_pool = _mock_pool(return_value=mock_job)

        with patch("chargeflow.tasks.get_redis_pool", new_callable=AsyncMock) as mock_get_pool:
            mock_get_pool.return_value = mock_pool

            result = await enqueue_task("recurring_charge_task", "sub-1", _job_id="recurring_charge:sub-1")

            assert result == mock_job
            mock_pool.enqueue_job.assert_called_once_with(
                "recurring_charge_task", "sub-1", _job_id="recurring_charge:sub-1"
            )
            mock_pool.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_enqueue_task_closes_pool_on_error(self):
        """Test enqueue_task closes pool even when job enqueue fails."""
        mock_pool = _mock_pool(side_effect=Exception("Redis error"))

        with patch("chargeflow.tasks.get_redis_pool", new_callable=AsyncMock) as mock_get_pool:
            mock_get_pool.return_value = mock_pool

            with pytest.raises(Exception, match="Redis error"):
                await enqueue_task("failing_task")

            mock_pool.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_enqueue_helpers(self):
        with patch("chargeflow.tasks.enqueue_task", new_callable=AsyncMock) as mock_enqueue:
            await enqueue_recurring_charge_sweep()
            await enqueue_membership_price_updates("tier-1")

        assert [c.args for c in mock_enqueue.call_args_list] == [
            ("recurring_charge_sweep_task",),
            ("schedule_membership_price_updates_task", "tier-1"),
        ]


class TestScheduledJobs:
    def test_job_kwargs(self):
        run_at = datetime(2026, 10, 20, 12, 0, tzinfo=UTC)
        job = ScheduledJob(
            function="deliver_notification_task",
            args=("preorder_card_declined", "p-1"),
            run_at=run_at,
            job_id="notify:p-1",
            queue_name="arq:queue:low",
        )

        assert job_kwargs(job) == {
            "_defer_until": run_at,
            "_job_id": "notify:p-1",
            "_queue_name": "arq:queue:low",
        }

    def test_job_kwargs_omits_unset_options(self):
        assert job_kwargs(ScheduledJob(function="sync_stuck_purchases_task")) == {}

    @pytest.mark.asyncio
    async def test_enqueue_scheduled_jobs_counts_new_jobs(self):
        """Jobs arq drops as duplicates are not counted."""
        mock_pool = _mock_pool(side_effect=[MagicMock(), None])
        jobs = [
            ScheduledJob(function="charge_preorder_task", args=("p-1", 2), job_id="charge_preorder:p-1:2"),
            ScheduledJob(function="charge_preorder_task", args=("p-1", 2), job_id="charge_preorder:p-1:2"),
        ]

        with patch("chargeflow.tasks.get_redis_pool", new_callable=AsyncMock) as mock_get_pool:
            mock_get_pool.return_value = mock_pool

            count = await enqueue_scheduled_jobs(jobs)

        assert count == 1
        assert mock_pool.enqueue_job.call_count == 2
        mock_pool.enqueue_job.assert_called_with("charge_preorder_task", "p-1", 2, _job_id="charge_preorder:p-1:2")
        mock_get_pool.assert_called_once()
        mock_pool.close.assert_called_once()

    @pytest.mark.asyncio
    async def test_enqueue_scheduled_jobs_closes_pool_on_error(self):
        mock_pool = _mock_pool(side_effect=Exception("Redis error"))

        with patch("chargeflow.tasks.get_redis_pool", new_callable=AsyncMock) as mock_get_pool:
            mock_get_pool.return_value = mock_pool

            with pytest.raises(Exception, match="Redis error"):
                await enqueue_scheduled_jobs([ScheduledJob(function="sync_stuck_purchases_task")])

        mock_pool.close.assert_called_once()
