"""Recurring charge orchestration for subscriptions."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.core.config import settings
from chargeflow.models.purchase import (
    RETRYABLE_ERROR_CODES,
    Purchase,
    PurchaseErrorCode,
    PurchaseKind,
    PurchaseState,
)
from chargeflow.models.subscription import Subscription
from chargeflow.repositories.purchase_repository import PurchaseRepository
from chargeflow.repositories.subscription_repository import SubscriptionRepository
from chargeflow.services.authentication_window import schedule_abandonment_check
from chargeflow.services.charge_eligibility import (
    EligibilityReason,
    evaluate_charge_eligibility,
)
from chargeflow.services.charge_processor import (
    ChargeOutcome,
    ChargeProcessorBase,
    ChargeResult,
)
from chargeflow.services.dunning_service import DunningService, dunning_threshold
from chargeflow.services.job_scheduler import JobScheduler, unit_of_work
from chargeflow.services.plan_change_applier import PlanChangeApplier
from chargeflow.services.purchase_failure import PurchaseFailureService
from chargeflow.services.subscription_ledger import SubscriptionLedger

logger = logging.getLogger(__name__)


class RecurringChargeStatus(str, Enum):
    SKIPPED = "skipped"
    CHARGED = "charged"
    PENDING_CONFIRMATION = "pending_confirmation"
    FAILED = "failed"
    AWAITING_DUNNING = "awaiting_dunning"
    UNSUBSCRIBED = "unsubscribed"


@dataclass
class RecurringChargeResult:
    status: RecurringChargeStatus
    reason: EligibilityReason | None = None
    purchase_id: UUID | None = None
    error_code: str | None = None


class RecurringChargeService:
    """Charges subscriptions whose paid period has run out."""

    def __init__(self, db: Session, processor: ChargeProcessorBase, scheduler: JobScheduler):
        self.db = db
        self.processor = processor
        self.scheduler = scheduler
        self.subscription_repo = SubscriptionRepository(db)
        self.purchase_repo = PurchaseRepository(db)
        self.ledger = SubscriptionLedger(db)
        self.plan_change_applier = PlanChangeApplier(db, scheduler)
        self.dunning = DunningService(db, scheduler)
        self.failures = PurchaseFailureService(db, scheduler)

    def perform(
        self,
        subscription_id: UUID,
        now: datetime,
        ignore_consecutive_failures: bool = False,
    ) -> RecurringChargeResult:
        """Charge the subscription if due, or escalate dunning.

        With ``ignore_consecutive_failures`` a subscription whose latest
        charge failed is not charged again; it is failed once it has been
        overdue for the dunning threshold.
        """
        subscription = self.subscription_repo.get_by_id(subscription_id)
        if subscription is None:
            raise ValueError(f"Subscription {subscription_id} not found")

        eligibility = evaluate_charge_eligibility(self.ledger, subscription, now)
        if not eligibility.is_due:
            logger.info(
                "Not charging subscription %s: %s", subscription_id, eligibility.reason.value
            )
            return RecurringChargeResult(
                status=RecurringChargeStatus.SKIPPED, reason=eligibility.reason
            )

        last_purchase = self.ledger.last_purchase(subscription)
        if (
            ignore_consecutive_failures
            and last_purchase is not None
            and last_purchase.purchase_state == PurchaseState.FAILED.value
        ):
            return self._escalate_dunning(subscription_id, now)

        return self._charge(subscription_id, now)

    def _escalate_dunning(self, subscription_id: UUID, now: datetime) -> RecurringChargeResult:
        with unit_of_work(self.db, self.scheduler):
            subscription = self.subscription_repo.get_for_update(subscription_id)
            if subscription is None:
                raise ValueError(f"Subscription {subscription_id} not found")

            # A charge may have settled while this worker waited for the lock
            eligibility = evaluate_charge_eligibility(self.ledger, subscription, now)
            last_purchase = self.ledger.last_purchase(subscription)
            if (
                not eligibility.is_due
                or last_purchase is None
                or last_purchase.purchase_state != PurchaseState.FAILED.value
            ):
                logger.info(
                    "Not escalating dunning for subscription %s: %s",
                    subscription_id,
                    eligibility.reason.value,
                )
                return RecurringChargeResult(
                    status=RecurringChargeStatus.SKIPPED, reason=eligibility.reason
                )

            overdue_seconds = self.ledger.seconds_overdue_for_charge(subscription, now)
            if overdue_seconds < dunning_threshold().total_seconds():
                return RecurringChargeResult(status=RecurringChargeStatus.AWAITING_DUNNING)
            self.dunning.unsubscribe_and_fail(subscription, now)
            return RecurringChargeResult(status=RecurringChargeStatus.UNSUBSCRIBED)

    def _charge(self, subscription_id: UUID, now: datetime) -> RecurringChargeResult:
        with unit_of_work(self.db, self.scheduler):
            subscription = self.subscription_repo.get_for_update(subscription_id)
            if subscription is None:
                raise ValueError(f"Subscription {subscription_id} not found")

            # Another worker may have charged while this one waited for the lock
            eligibility = evaluate_charge_eligibility(self.ledger, subscription, now)
            if not eligibility.is_due:
                return RecurringChargeResult(
                    status=RecurringChargeStatus.SKIPPED, reason=eligibility.reason
                )

            self.plan_change_applier.apply_if_effective(subscription, now)
            purchase = self._build_purchase(subscription, now)

            if not subscription.payment_method_id:
                result = ChargeResult(
                    outcome=ChargeOutcome.DECLINED,
                    error_code=PurchaseErrorCode.PAYMENT_METHOD_MISSING.value,
                )
            else:
                result = self.processor.charge(
                    str(subscription.payment_method_id),
                    int(purchase.price_cents),
                    str(purchase.currency),
                    reference=self.purchase_repo.charge_reference(purchase),
                    off_session=True,
                )
            return self._record_outcome(subscription, purchase, result, now)

    def _build_purchase(self, subscription: Subscription, now: datetime) -> Purchase:
        original = self.ledger.original_purchase(subscription)
        product = self.ledger.product(subscription)
        price_cents = self.ledger.current_subscription_price_cents(subscription)
        discounted = self.ledger.discount_applies_to_next_charge(subscription)
        return self.purchase_repo.create(
            kind=PurchaseKind.RECURRING_CHARGE.value,
            purchase_state=PurchaseState.IN_PROGRESS.value,
            product_id=subscription.product_id,
            subscription_id=subscription.id,
            tier_id=original.tier_id,
            price_id=subscription.price_id,
            offer_code_id=original.offer_code_id if discounted else None,
            email=subscription.email,
            price_cents=price_cents,
            displayed_price_cents=price_cents,
            displayed_price_cents_before_offer_code=original.displayed_price_cents_before_offer_code,
            currency=product.currency,
            payment_method_id=subscription.payment_method_id,
            created_at=now,
        )

    def _record_outcome(
        self,
        subscription: Subscription,
        purchase: Purchase,
        result: ChargeResult,
        now: datetime,
    ) -> RecurringChargeResult:
        purchase.processor_payment_intent_id = result.intent_id  # type: ignore[assignment]
        purchase_id: UUID = purchase.id  # type: ignore[assignment]

        if result.outcome == ChargeOutcome.SUCCEEDED:
            purchase.transition_to(PurchaseState.SUCCESSFUL)
            purchase.succeeded_at = now  # type: ignore[assignment]
            self.db.flush()
            logger.info("Charged subscription %s with purchase %s", subscription.id, purchase_id)
            return RecurringChargeResult(
                status=RecurringChargeStatus.CHARGED, purchase_id=purchase_id
            )

        if result.needs_confirmation:
            self.db.flush()
            schedule_abandonment_check(self.scheduler, purchase)
            logger.info("Purchase %s is waiting for card authentication", purchase_id)
            return RecurringChargeResult(
                status=RecurringChargeStatus.PENDING_CONFIRMATION, purchase_id=purchase_id
            )

        if result.outcome == ChargeOutcome.PROCESSING_ERROR:
            error_code = result.error_code or PurchaseErrorCode.PROCESSING_ERROR.value
            self.failures.mark_failed(purchase, error_code)
            self.scheduler.enqueue(
                "recurring_charge_task",
                str(subscription.id),
                run_at=now + timedelta(minutes=settings.NETWORK_ERROR_RETRY_MINUTES),
            )
            self.dunning.schedule_failure_followups(subscription, now, card_declined=False)
        else:
            error_code = result.error_code or PurchaseErrorCode.CARD_DECLINED.value
            self.failures.mark_failed(purchase, error_code)
            if error_code in RETRYABLE_ERROR_CODES:
                self.scheduler.enqueue(
                    "recurring_charge_task",
                    str(subscription.id),
                    run_at=now + timedelta(hours=settings.RETRYABLE_DECLINE_RETRY_HOURS),
                )
            self.dunning.schedule_failure_followups(subscription, now, card_declined=True)

        logger.info(
            "Charge for subscription %s failed with %s (purchase %s)",
            subscription.id,
            error_code,
            purchase_id,
        )
        return RecurringChargeResult(
            status=RecurringChargeStatus.FAILED,
            purchase_id=purchase_id,
            error_code=error_code,
        )

    def plan_sweep(self, now: datetime) -> int:
        """Fan out one charge job per live subscription, in staggered batches.

        Batch ``k`` starts ``k`` intervals after ``now``; the per-subscription
        job does all the deciding.
        """
        subscription_ids = self.subscription_repo.get_live_ids()
        batch_size = settings.RECURRING_CHARGE_BATCH_SIZE
        interval = timedelta(seconds=settings.RECURRING_CHARGE_BATCH_INTERVAL_SECONDS)

        for index, subscription_id in enumerate(subscription_ids):
            batch = index // batch_size
            self.scheduler.enqueue(
                "recurring_charge_task",
                str(subscription_id),
                True,
                run_at=now + batch * interval,
                job_id=f"recurring_charge:{subscription_id}:{now.date().isoformat()}",
            )
        return len(subscription_ids)
