"""Dunning for recurring charges: reminders and failing unpaid subscriptions."""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.core.config import settings
from chargeflow.models.purchase import PurchaseState
from chargeflow.models.subscription import Subscription
from chargeflow.repositories.subscription_repository import SubscriptionRepository
from chargeflow.services.job_scheduler import JobScheduler, unit_of_work
from chargeflow.services.notification_service import Notification, NotificationService
from chargeflow.services.subscription_ledger import SubscriptionLedger

logger = logging.getLogger(__name__)


def dunning_threshold() -> timedelta:
    return timedelta(days=settings.DUNNING_THRESHOLD_DAYS)


class DunningService:
    """Service for failed-charge follow-up on subscriptions."""

    def __init__(self, db: Session, scheduler: JobScheduler):
        self.db = db
        self.scheduler = scheduler
        self.subscription_repo = SubscriptionRepository(db)
        self.ledger = SubscriptionLedger(db)
        self.notifications = NotificationService(scheduler)

    def unsubscribe_and_fail(self, subscription: Subscription, now: datetime) -> bool:
        """Fail and deactivate a subscription; a no-op if it already failed."""
        if subscription.failed_at is not None:
            return False

        subscription.failed_at = now  # type: ignore[assignment]
        subscription.deactivated_at = now  # type: ignore[assignment]
        self.db.flush()

        subscription_id: UUID = subscription.id  # type: ignore[assignment]
        self.notifications.notify(Notification.SUBSCRIPTION_AUTOCANCELLED, subscription_id)
        seller = self.ledger.seller(subscription)
        if seller is not None and seller.enable_payment_email:
            self.notifications.notify(Notification.SELLER_SUBSCRIPTION_AUTOCANCELLED, subscription_id)

        logger.info("Subscription %s failed after unpaid charges", subscription_id)
        return True

    def schedule_failure_followups(
        self,
        subscription: Subscription,
        now: datetime,
        card_declined: bool,
    ) -> datetime:
        """Schedule the unsubscribe deadline and, for declines, the reminder mail.

        Returns the time the subscription will be failed if still unpaid.
        """
        terminate_by = self.ledger.termination_deadline(subscription, now, dunning_threshold())
        self.scheduler.enqueue(
            "unsubscribe_and_fail_task",
            str(subscription.id),
            run_at=terminate_by,
            job_id=f"unsubscribe_and_fail:{subscription.id}:{int(terminate_by.timestamp())}",
        )

        if card_declined:
            self.notifications.notify(Notification.SUBSCRIPTION_CARD_DECLINED, subscription.id)  # type: ignore[arg-type]
            reminder_at = now + dunning_threshold() - timedelta(days=settings.CHARGE_DECLINED_REMINDER_DAYS)
            self.scheduler.enqueue(
                "charge_declined_reminder_task", str(subscription.id), run_at=reminder_at
            )
        return terminate_by

    def _latest_charge_failed(self, subscription: Subscription) -> bool:
        last_purchase = self.ledger.last_purchase(subscription)
        return (
            last_purchase is not None
            and last_purchase.purchase_state == PurchaseState.FAILED.value
        )

    def unsubscribe_and_fail_if_still_failing(self, subscription_id: UUID, now: datetime) -> bool:
        """Deadline job: fail the subscription unless it has been paid since."""
        with unit_of_work(self.db, self.scheduler):
            subscription = self.subscription_repo.get_for_update(subscription_id)
            if subscription is None:
                raise ValueError(f"Subscription {subscription_id} not found")
            if subscription.is_test_subscription or not self.ledger.is_alive(subscription, now):
                return False
            if not self.ledger.is_overdue_for_charge(subscription, now):
                return False
            if not self._latest_charge_failed(subscription):
                return False
            return self.unsubscribe_and_fail(subscription, now)

    def send_charge_declined_reminder(self, subscription_id: UUID, now: datetime) -> bool:
        subscription = self.subscription_repo.get_by_id(subscription_id)
        if subscription is None:
            raise ValueError(f"Subscription {subscription_id} not found")
        if not self.ledger.is_alive(subscription, now) or not self._latest_charge_failed(subscription):
            return False
        self.notifications.notify(Notification.SUBSCRIPTION_CHARGE_DECLINED_REMINDER, subscription_id)
        return True
