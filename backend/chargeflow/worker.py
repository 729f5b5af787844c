import logging
from typing import Any
from uuid import UUID

from arq import cron

from chargeflow.core.config import settings
from chargeflow.core.database import SessionLocal
from chargeflow.models.shared import utc_now
from chargeflow.services.abandoned_purchase import AbandonedPurchaseReconciler
from chargeflow.services.charge_processor import get_charge_processor
from chargeflow.services.dunning_service import DunningService
from chargeflow.services.job_scheduler import JobScheduler
from chargeflow.services.plan_change_applier import PlanChangeRejected
from chargeflow.services.preorder_charge import PreorderChargeService, PreorderNotChargeable
from chargeflow.services.price_change_propagation import PriceChangePropagationService
from chargeflow.services.purchase_settlement import PurchaseSettlementService
from chargeflow.services.recurring_charge import RecurringChargeService
from chargeflow.tasks import enqueue_scheduled_jobs, redis_settings

logger = logging.getLogger(__name__)


async def _flush_jobs(scheduler: JobScheduler) -> None:
    """Enqueue the jobs committed units of work left on the scheduler."""
    jobs = scheduler.drain()
    if jobs:
        await enqueue_scheduled_jobs(jobs)


async def recurring_charge_task(
    ctx: dict[str, Any],
    subscription_id: str,
    ignore_consecutive_failures: bool = False,
) -> str:
    """Background task: charge one subscription if its period has run out."""
    db = SessionLocal()
    scheduler = JobScheduler()
    try:
        service = RecurringChargeService(db, get_charge_processor(), scheduler)
        try:
            result = service.perform(
                UUID(subscription_id), utc_now(), ignore_consecutive_failures
            )
        except PlanChangeRejected as e:
            logger.error("Plan change for subscription %s rejected: %s", subscription_id, e)
            raise
        return result.status.value
    finally:
        db.close()
        await _flush_jobs(scheduler)


async def recurring_charge_sweep_task(ctx: dict[str, Any]) -> int:
    """Background task: fan out a charge job for every live subscription.

    Runs daily.
    """
    db = SessionLocal()
    scheduler = JobScheduler()
    try:
        service = RecurringChargeService(db, get_charge_processor(), scheduler)
        count = service.plan_sweep(utc_now())
        logger.info("Planned recurring charges for %d subscriptions", count)
        return count
    finally:
        db.close()
        await _flush_jobs(scheduler)


async def unsubscribe_and_fail_task(ctx: dict[str, Any], subscription_id: str) -> bool:
    """Background task: fail a subscription still unpaid at its dunning deadline."""
    db = SessionLocal()
    scheduler = JobScheduler()
    try:
        service = DunningService(db, scheduler)
        return service.unsubscribe_and_fail_if_still_failing(UUID(subscription_id), utc_now())
    finally:
        db.close()
        await _flush_jobs(scheduler)


async def charge_declined_reminder_task(ctx: dict[str, Any], subscription_id: str) -> bool:
    db = SessionLocal()
    scheduler = JobScheduler()
    try:
        service = DunningService(db, scheduler)
        return service.send_charge_declined_reminder(UUID(subscription_id), utc_now())
    finally:
        db.close()
        await _flush_jobs(scheduler)


async def charge_preorder_task(ctx: dict[str, Any], preorder_id: str, attempt: int = 1) -> str:
    """Background task: charge a released preorder, retrying processing errors."""
    db = SessionLocal()
    scheduler = JobScheduler()
    try:
        service = PreorderChargeService(db, get_charge_processor(), scheduler)
        try:
            result = service.charge_preorder(UUID(preorder_id), utc_now(), attempt)
        except PreorderNotChargeable as e:
            logger.warning("Not charging preorder %s: %s", preorder_id, e)
            raise
        return result.status.value
    finally:
        db.close()
        await _flush_jobs(scheduler)


async def cancel_preorder_task(ctx: dict[str, Any], preorder_id: str) -> bool:
    db = SessionLocal()
    scheduler = JobScheduler()
    try:
        service = PreorderChargeService(db, get_charge_processor(), scheduler)
        return service.cancel_preorder(UUID(preorder_id), utc_now(), auto_cancelled=True)
    finally:
        db.close()
        await _flush_jobs(scheduler)


async def release_preorder_product_task(ctx: dict[str, Any], product_id: str) -> int:
    db = SessionLocal()
    scheduler = JobScheduler()
    try:
        service = PreorderChargeService(db, get_charge_processor(), scheduler)
        return service.release_product(UUID(product_id), utc_now())
    finally:
        db.close()
        await _flush_jobs(scheduler)


async def fail_abandoned_purchase_task(ctx: dict[str, Any], purchase_id: str) -> str:
    """Background task: cancel a purchase whose card authentication was abandoned."""
    db = SessionLocal()
    scheduler = JobScheduler()
    try:
        reconciler = AbandonedPurchaseReconciler(db, get_charge_processor(), scheduler)
        return reconciler.reconcile(UUID(purchase_id), utc_now()).value
    finally:
        db.close()
        await _flush_jobs(scheduler)


async def sync_stuck_purchases_task(ctx: dict[str, Any]) -> int:
    """Background task: settle purchases left in progress for hours.

    Runs hourly.
    """
    db = SessionLocal()
    scheduler = JobScheduler()
    try:
        service = PurchaseSettlementService(db, get_charge_processor(), scheduler)
        count = service.sync_stuck_purchases(utc_now())
        if count > 0:
            logger.info("Settled %d stuck purchases", count)
        return count
    finally:
        db.close()
        await _flush_jobs(scheduler)


async def schedule_membership_price_updates_task(ctx: dict[str, Any], tier_id: str) -> int:
    db = SessionLocal()
    scheduler = JobScheduler()
    try:
        service = PriceChangePropagationService(db, scheduler)
        summary = service.schedule_price_updates(UUID(tier_id), utc_now())
        return summary.scheduled
    finally:
        db.close()
        await _flush_jobs(scheduler)


async def deliver_notification_task(
    ctx: dict[str, Any], notification: str, record_id: str
) -> None:
    # Delivery itself belongs to the mailer service
    logger.info("Delivering %s notification for %s", notification, record_id)


async def schedule_tier_workflows_task(
    ctx: dict[str, Any], tier_id: str, purchase_id: str
) -> None:
    logger.info("Scheduling workflows of tier %s for purchase %s", tier_id, purchase_id)


class WorkerSettings:
    functions = [
        recurring_charge_task,
        recurring_charge_sweep_task,
        unsubscribe_and_fail_task,
        charge_declined_reminder_task,
        charge_preorder_task,
        cancel_preorder_task,
        release_preorder_product_task,
        fail_abandoned_purchase_task,
        sync_stuck_purchases_task,
        schedule_membership_price_updates_task,
        deliver_notification_task,
        schedule_tier_workflows_task,
    ]
    cron_jobs = [
        cron(recurring_charge_sweep_task, hour=0, minute=0),  # daily at midnight
        cron(sync_stuck_purchases_task, minute={30}),  # hourly
    ]
    redis_settings = redis_settings


class LowPriorityWorkerSettings:
    functions = [deliver_notification_task]
    queue_name = settings.LOW_PRIORITY_QUEUE_NAME
    redis_settings = redis_settings
