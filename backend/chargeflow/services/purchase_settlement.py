"""Settle purchases whose outcome arrives after the charge call returned."""

import logging
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.orm import Session

from chargeflow.core.config import settings
from chargeflow.models.preorder import Preorder
from chargeflow.models.purchase import (
    ABANDONMENT_ACTIONS,
    AbandonmentAction,
    Purchase,
    PurchaseErrorCode,
    PurchaseKind,
    PurchaseState,
)
from chargeflow.models.shared import as_utc
from chargeflow.repositories.preorder_repository import PreorderRepository
from chargeflow.repositories.purchase_repository import PurchaseRepository
from chargeflow.repositories.subscription_repository import SubscriptionRepository
from chargeflow.services.charge_processor import (
    ChargeOutcome,
    ChargeProcessorBase,
    ChargeProcessorError,
    IntentState,
    IntentStatus,
    WebhookResult,
)
from chargeflow.services.dunning_service import DunningService
from chargeflow.services.job_scheduler import JobScheduler, unit_of_work
from chargeflow.services.membership_update import MembershipUpdateService
from chargeflow.services.preorder_charge import PreorderChargeService
from chargeflow.services.purchase_failure import PurchaseFailureService
from chargeflow.services.subscription_ledger import SubscriptionLedger

logger = logging.getLogger(__name__)

FAILED_INTENT_STATUSES = frozenset({IntentStatus.CANCELED, IntentStatus.REQUIRES_PAYMENT_METHOD})


class SettlementOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    UNCHANGED = "unchanged"
    ALREADY_SETTLED = "already_settled"
    NOT_FOUND = "not_found"
    IGNORED = "ignored"


class PurchaseSettlementService:
    """Applies a processor's final word on an intent to the purchase that owns it.

    Used by processor webhooks and by the sweep over purchases stuck in
    progress. Settling is idempotent: a purchase that already left
    ``in_progress`` is not touched again.
    """

    def __init__(self, db: Session, processor: ChargeProcessorBase, scheduler: JobScheduler):
        self.db = db
        self.processor = processor
        self.scheduler = scheduler
        self.purchase_repo = PurchaseRepository(db)
        self.preorder_repo = PreorderRepository(db)
        self.subscription_repo = SubscriptionRepository(db)
        self.ledger = SubscriptionLedger(db)
        self.failures = PurchaseFailureService(db, scheduler)
        self.dunning = DunningService(db, scheduler)
        self.preorders = PreorderChargeService(db, processor, scheduler)
        self.memberships = MembershipUpdateService(db, processor, scheduler)

    def settle_webhook(self, event: WebhookResult, now: datetime) -> SettlementOutcome:
        if event.intent_id is None or event.status is None:
            logger.info("Ignoring processor event %s", event.event_type)
            return SettlementOutcome.IGNORED
        return self.settle_from_intent(
            event.intent_id, event.status, now, error_code=event.error_code
        )

    def settle_from_intent(
        self,
        intent_id: str,
        status: IntentStatus,
        now: datetime,
        error_code: str | None = None,
    ) -> SettlementOutcome:
        with unit_of_work(self.db, self.scheduler):
            found = self.purchase_repo.get_by_intent_id(intent_id)
            if found is None:
                logger.warning("No purchase found for intent %s", intent_id)
                return SettlementOutcome.NOT_FOUND

            purchase = self.purchase_repo.get_for_update(found.id)  # type: ignore[arg-type]
            if purchase is None or purchase.purchase_state != PurchaseState.IN_PROGRESS.value:
                return SettlementOutcome.ALREADY_SETTLED

            if status == IntentStatus.REQUIRES_CAPTURE:
                captured = self.processor.capture(intent_id)
                if captured.outcome == ChargeOutcome.SUCCEEDED:
                    status = IntentStatus.SUCCEEDED
                elif captured.outcome == ChargeOutcome.DECLINED:
                    status = IntentStatus.REQUIRES_PAYMENT_METHOD
                    error_code = captured.error_code
                else:
                    return SettlementOutcome.UNCHANGED

            if status == IntentStatus.SUCCEEDED:
                self._mark_successful(purchase, now)
                logger.info("Settled purchase %s as successful from %s", purchase.id, intent_id)
                return SettlementOutcome.SUCCEEDED

            if status in FAILED_INTENT_STATUSES:
                self._mark_failed(purchase, now, error_code or PurchaseErrorCode.CARD_DECLINED.value)
                logger.info("Settled purchase %s as failed from %s", purchase.id, intent_id)
                return SettlementOutcome.FAILED

            return SettlementOutcome.UNCHANGED

    def _get_preorder(self, purchase: Purchase) -> Preorder:
        preorder = self.preorder_repo.get_for_update(purchase.preorder_id)  # type: ignore[arg-type]
        if preorder is None:
            raise ValueError(f"Preorder {purchase.preorder_id} not found")
        return preorder

    def _mark_successful(self, purchase: Purchase, now: datetime) -> None:
        kind = purchase.purchase_kind
        if kind == PurchaseKind.PREORDER_AUTHORIZATION:
            self.preorders.mark_authorization_successful(self._get_preorder(purchase), purchase)
            return
        if kind == PurchaseKind.PREORDER_CHARGE:
            self.preorders.mark_charge_successful(self._get_preorder(purchase), purchase, now)
            return

        purchase.transition_to(PurchaseState.SUCCESSFUL)
        purchase.succeeded_at = now  # type: ignore[assignment]
        self.db.flush()

        if purchase.subscription_id is None:
            return
        subscription = self.subscription_repo.get_by_id(purchase.subscription_id)  # type: ignore[arg-type]
        if subscription is None:
            raise ValueError(f"Subscription {purchase.subscription_id} not found")
        if kind == PurchaseKind.MEMBERSHIP_RESTART:
            self.memberships.confirm_restart(subscription)
        elif kind == PurchaseKind.RECURRING_CHARGE:
            self._refund_if_duplicate(purchase, now)

    def _refund_if_duplicate(self, purchase: Purchase, now: datetime) -> None:
        """Refund a late-settling charge when a newer charge already paid the period."""
        newer = [
            charge
            for charge in self.purchase_repo.get_for_subscription(purchase.subscription_id)  # type: ignore[arg-type]
            if charge.id != purchase.id
            and charge.kind == PurchaseKind.RECURRING_CHARGE.value
            and charge.purchase_state == PurchaseState.SUCCESSFUL.value
            and charge.refunded_at is None
            and as_utc(charge.created_at) > as_utc(purchase.created_at)
        ]
        if not newer or not purchase.processor_payment_intent_id:
            return

        self.processor.refund(str(purchase.processor_payment_intent_id))
        purchase.refunded_at = now  # type: ignore[assignment]
        self.db.flush()
        logger.warning(
            "Refunded duplicate charge %s for subscription %s; already paid by %s",
            purchase.id,
            purchase.subscription_id,
            newer[-1].id,
        )

    def _mark_failed(self, purchase: Purchase, now: datetime, error_code: str) -> None:
        action = ABANDONMENT_ACTIONS[purchase.purchase_kind]
        if action == AbandonmentAction.MARK_PREORDER_AUTHORIZATION_FAILED:
            self.preorders.mark_authorization_failed(self._get_preorder(purchase), purchase, error_code)
            return
        if action == AbandonmentAction.MARK_ITEMS_FAILED:
            self.failures.mark_items_failed(purchase, now, error_code)
            return

        if purchase.kind == PurchaseKind.PREORDER_CHARGE.value:
            self.preorders.record_charge_decline(self._get_preorder(purchase), purchase, error_code, now)
            return

        self.failures.mark_failed(purchase, error_code)
        if purchase.kind == PurchaseKind.RECURRING_CHARGE.value:
            subscription = self.subscription_repo.get_by_id(purchase.subscription_id)  # type: ignore[arg-type]
            if subscription is not None:
                self.dunning.schedule_failure_followups(subscription, now, card_declined=True)

    def sync_stuck_purchases(self, now: datetime) -> int:
        """Ask the processor about purchases left in progress for hours.

        Returns the number of purchases whose state changed.
        """
        purchases = self.purchase_repo.get_stuck_in_progress(
            created_after=now - timedelta(hours=settings.STUCK_PURCHASE_MAX_AGE_HOURS),
            created_before=now - timedelta(hours=settings.STUCK_PURCHASE_MIN_AGE_HOURS),
        )
        candidates = [(p.id, p.intent_id, p.intent_type) for p in purchases]

        settled = 0
        for purchase_id, intent_id, intent_type in candidates:
            if not intent_id:
                logger.warning("Stuck purchase %s has no processor intent", purchase_id)
                continue
            try:
                state: IntentState = self.processor.retrieve(intent_id, intent_type)
                outcome = self.settle_from_intent(
                    intent_id, state.status, now, error_code=state.error_code
                )
            except ChargeProcessorError:
                logger.exception("Could not sync stuck purchase %s", purchase_id)
                continue
            if outcome in (SettlementOutcome.SUCCEEDED, SettlementOutcome.FAILED):
                settled += 1

        logger.info("Synced %d of %d stuck purchases", settled, len(candidates))
        return settled
