"""Mark purchases failed and undo membership changes they carried."""

import logging
from datetime import datetime

from sqlalchemy.orm import Session

from chargeflow.models.purchase import Purchase, PurchaseKind, PurchaseState
from chargeflow.models.subscription import Subscription
from chargeflow.repositories.purchase_repository import PurchaseRepository
from chargeflow.repositories.subscription_repository import SubscriptionRepository
from chargeflow.services.job_scheduler import JobScheduler
from chargeflow.services.notification_service import Notification, NotificationService

logger = logging.getLogger(__name__)


class PurchaseFailureService:
    def __init__(self, db: Session, scheduler: JobScheduler):
        self.db = db
        self.purchase_repo = PurchaseRepository(db)
        self.subscription_repo = SubscriptionRepository(db)
        self.notifications = NotificationService(scheduler)

    def mark_failed(self, purchase: Purchase, error_code: str | None = None) -> None:
        purchase.transition_to(PurchaseState.FAILED)
        if error_code is not None:
            purchase.error_code = error_code  # type: ignore[assignment]
        self.db.flush()

    def mark_items_failed(
        self,
        purchase: Purchase,
        now: datetime,
        error_code: str | None = None,
    ) -> None:
        """Fail a membership upgrade or restart purchase and roll its changes back.

        An upgrade restores the original purchase (tier and price) that was
        archived when the upgrade started. A restart clears the pending
        resubscription flag and deactivates the subscription.
        """
        self.mark_failed(purchase, error_code)
        if purchase.subscription_id is None:
            return

        subscription = self.subscription_repo.get_by_id(purchase.subscription_id)  # type: ignore[arg-type]
        if subscription is None:
            raise ValueError(f"Subscription {purchase.subscription_id} not found")

        if purchase.kind == PurchaseKind.MEMBERSHIP_UPGRADE.value:
            self._restore_original_purchase(subscription, purchase)
        elif purchase.kind == PurchaseKind.MEMBERSHIP_RESTART.value:
            subscription.is_resubscription_pending_confirmation = False  # type: ignore[assignment]
            if subscription.deactivated_at is None:
                subscription.deactivated_at = now  # type: ignore[assignment]

        self.db.flush()
        self.notifications.notify(Notification.MEMBERSHIP_UPDATE_FAILED, purchase.id)  # type: ignore[arg-type]
        logger.info(
            "Rolled back %s purchase %s for subscription %s",
            purchase.kind,
            purchase.id,
            subscription.id,
        )

    def _restore_original_purchase(self, subscription: Subscription, upgrade: Purchase) -> None:
        previous = None
        if upgrade.replaced_original_purchase_id is not None:
            previous = self.purchase_repo.get_by_id(upgrade.replaced_original_purchase_id)  # type: ignore[arg-type]
        if previous is None:
            previous = self.purchase_repo.get_last_archived_original_purchase(subscription.id)  # type: ignore[arg-type]
        if previous is None:
            logger.warning("Subscription %s has no archived original purchase to restore", subscription.id)
            return

        current = self.purchase_repo.get_original_purchase(subscription.id)  # type: ignore[arg-type]
        if current is not None and current.id != previous.id:
            current.is_archived_original_subscription_purchase = True  # type: ignore[assignment]
            if current.purchase_state == PurchaseState.NOT_CHARGED.value:
                current.transition_to(PurchaseState.FAILED)

        previous.is_archived_original_subscription_purchase = False  # type: ignore[assignment]
        subscription.price_id = previous.price_id
