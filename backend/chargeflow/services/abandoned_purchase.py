"""Fail purchases whose card authentication was never completed."""

import logging
from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.models.purchase import (
    ABANDONMENT_ACTIONS,
    AbandonmentAction,
    Purchase,
    PurchaseErrorCode,
    PurchaseKind,
    PurchaseState,
)
from chargeflow.repositories.preorder_repository import PreorderRepository
from chargeflow.repositories.purchase_repository import PurchaseRepository
from chargeflow.repositories.subscription_repository import SubscriptionRepository
from chargeflow.services.authentication_window import authentication_deadline
from chargeflow.services.charge_processor import CancelOutcome, ChargeProcessorBase
from chargeflow.services.dunning_service import DunningService
from chargeflow.services.job_scheduler import JobScheduler, unit_of_work
from chargeflow.services.preorder_charge import PreorderChargeService
from chargeflow.services.purchase_failure import PurchaseFailureService

logger = logging.getLogger(__name__)


class MissingIntentError(ValueError):
    """An in-progress purchase has no processor intent to cancel."""


class ReconcileOutcome(str, Enum):
    NOOP = "noop"
    RESCHEDULED = "rescheduled"
    CANCELED = "canceled"
    RACE_IGNORED = "race_ignored"


class AbandonedPurchaseReconciler:
    """Cancels the processor intent of a purchase left waiting past the SCA window.

    If the processor reports the intent already canceled or already
    succeeded, the purchase is left untouched for the webhook or stuck
    purchase sync to settle.
    """

    def __init__(self, db: Session, processor: ChargeProcessorBase, scheduler: JobScheduler):
        self.db = db
        self.processor = processor
        self.scheduler = scheduler
        self.purchase_repo = PurchaseRepository(db)
        self.preorder_repo = PreorderRepository(db)
        self.subscription_repo = SubscriptionRepository(db)
        self.failures = PurchaseFailureService(db, scheduler)
        self.dunning = DunningService(db, scheduler)
        self.preorders = PreorderChargeService(db, processor, scheduler)

    def reconcile(self, purchase_id: UUID, now: datetime) -> ReconcileOutcome:
        with unit_of_work(self.db, self.scheduler):
            purchase = self.purchase_repo.get_for_update(purchase_id)
            if purchase is None:
                raise ValueError(f"Purchase {purchase_id} not found")
            if purchase.purchase_state != PurchaseState.IN_PROGRESS.value:
                return ReconcileOutcome.NOOP

            deadline = authentication_deadline(purchase)
            if now < deadline:
                self.scheduler.enqueue("fail_abandoned_purchase_task", str(purchase_id), run_at=deadline)
                return ReconcileOutcome.RESCHEDULED

            intent_id = purchase.intent_id
            if not intent_id:
                raise MissingIntentError(
                    f"Purchase {purchase_id} has no {purchase.intent_type.value} to cancel"
                )

            outcome = self.processor.cancel_intent(intent_id, purchase.intent_type)
            if outcome != CancelOutcome.CANCELED:
                logger.info(
                    "Leaving purchase %s in progress: intent %s %s",
                    purchase_id,
                    intent_id,
                    outcome.value,
                )
                return ReconcileOutcome.RACE_IGNORED

            self._apply_abandonment(purchase, now)
            logger.info("Failed abandoned purchase %s after cancelling %s", purchase_id, intent_id)
            return ReconcileOutcome.CANCELED

    def _apply_abandonment(self, purchase: Purchase, now: datetime) -> None:
        error_code = PurchaseErrorCode.AUTHENTICATION_ABANDONED.value
        action = ABANDONMENT_ACTIONS[purchase.purchase_kind]

        if action == AbandonmentAction.MARK_PREORDER_AUTHORIZATION_FAILED:
            preorder = self.preorder_repo.get_by_id(purchase.preorder_id)  # type: ignore[arg-type]
            if preorder is None:
                raise ValueError(f"Preorder {purchase.preorder_id} not found")
            self.preorders.mark_authorization_failed(preorder, purchase, error_code)
        elif action == AbandonmentAction.MARK_ITEMS_FAILED:
            self.failures.mark_items_failed(purchase, now, error_code)
        else:
            self.failures.mark_failed(purchase, error_code)
            if purchase.kind == PurchaseKind.RECURRING_CHARGE.value:
                subscription = self.subscription_repo.get_by_id(purchase.subscription_id)  # type: ignore[arg-type]
                if subscription is not None:
                    self.dunning.schedule_failure_followups(subscription, now, card_declined=False)
