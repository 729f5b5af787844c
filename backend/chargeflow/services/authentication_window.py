"""The window a buyer has to complete card authentication (SCA)."""

from datetime import datetime, timedelta

from chargeflow.core.config import settings
from chargeflow.models.purchase import Purchase
from chargeflow.models.shared import as_utc
from chargeflow.services.job_scheduler import JobScheduler


def sca_window() -> timedelta:
    return timedelta(minutes=settings.SCA_COMPLETION_WINDOW_MINUTES)


def authentication_deadline(purchase: Purchase) -> datetime:
    return as_utc(purchase.created_at) + sca_window()  # type: ignore[no-any-return]


def schedule_abandonment_check(scheduler: JobScheduler, purchase: Purchase) -> None:
    """Check back on a purchase waiting for card authentication once its window closes."""
    scheduler.enqueue(
        "fail_abandoned_purchase_task",
        str(purchase.id),
        run_at=authentication_deadline(purchase),
        job_id=f"fail_abandoned_purchase:{purchase.id}",
    )
