"""Buyer-initiated membership changes: upgrade, downgrade and restart."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.models.product import Price
from chargeflow.models.purchase import Purchase, PurchaseErrorCode, PurchaseKind, PurchaseState
from chargeflow.models.subscription import Subscription
from chargeflow.repositories.product_repository import ProductRepository
from chargeflow.repositories.purchase_repository import PurchaseRepository
from chargeflow.repositories.subscription_plan_change_repository import (
    SubscriptionPlanChangeRepository,
)
from chargeflow.repositories.subscription_repository import SubscriptionRepository
from chargeflow.services.authentication_window import schedule_abandonment_check
from chargeflow.services.charge_processor import ChargeOutcome, ChargeProcessorBase, ChargeResult
from chargeflow.services.job_scheduler import JobScheduler, unit_of_work
from chargeflow.services.notification_service import NotificationService
from chargeflow.services.purchase_failure import PurchaseFailureService
from chargeflow.services.subscription_ledger import SubscriptionLedger

logger = logging.getLogger(__name__)


class MembershipUpdateStatus(str, Enum):
    UPDATED = "updated"
    PENDING_CONFIRMATION = "pending_confirmation"
    FAILED = "failed"
    SCHEDULED = "scheduled"


@dataclass
class MembershipUpdateResult:
    status: MembershipUpdateStatus
    purchase_id: UUID | None = None
    plan_change_id: UUID | None = None
    error_code: str | None = None


class MembershipUpdateService:
    def __init__(self, db: Session, processor: ChargeProcessorBase, scheduler: JobScheduler):
        self.db = db
        self.processor = processor
        self.scheduler = scheduler
        self.subscription_repo = SubscriptionRepository(db)
        self.purchase_repo = PurchaseRepository(db)
        self.product_repo = ProductRepository(db)
        self.plan_change_repo = SubscriptionPlanChangeRepository(db)
        self.ledger = SubscriptionLedger(db)
        self.failures = PurchaseFailureService(db, scheduler)
        self.notifications = NotificationService(scheduler)

    def _get_subscription(self, subscription_id: UUID) -> Subscription:
        subscription = self.subscription_repo.get_for_update(subscription_id)
        if subscription is None:
            raise ValueError(f"Subscription {subscription_id} not found")
        return subscription

    def _target_price(self, subscription: Subscription, tier_id: UUID, recurrence: str) -> Price:
        tier = self.product_repo.get_tier(tier_id)
        if tier is None or tier.product_id != subscription.product_id or tier.deleted_at is not None:
            raise ValueError(f"Tier {tier_id} is not available for subscription {subscription.id}")
        price = self.product_repo.find_price(
            subscription.product_id, tier_id, recurrence  # type: ignore[arg-type]
        )
        if price is None:
            raise ValueError(f"Tier {tier_id} has no {recurrence} price")
        return price

    def _charge(self, subscription: Subscription, purchase: Purchase) -> ChargeResult:
        if int(purchase.price_cents) == 0:
            return ChargeResult(outcome=ChargeOutcome.SUCCEEDED)
        if not subscription.payment_method_id:
            return ChargeResult(
                outcome=ChargeOutcome.DECLINED,
                error_code=PurchaseErrorCode.PAYMENT_METHOD_MISSING.value,
            )
        # The buyer is present, so the processor may ask for authentication
        return self.processor.charge(
            str(subscription.payment_method_id),
            int(purchase.price_cents),
            str(purchase.currency),
            reference=self.purchase_repo.charge_reference(purchase),
            off_session=False,
        )

    def upgrade(
        self,
        subscription_id: UUID,
        tier_id: UUID,
        recurrence: str,
        perceived_price_cents: int,
        now: datetime,
    ) -> MembershipUpdateResult:
        """Move a live membership to a new tier or recurrence immediately.

        The buyer pays the new price less a credit for the unused part of the
        current period. Any failure restores the previous tier and price.
        """
        with unit_of_work(self.db, self.scheduler):
            subscription = self._get_subscription(subscription_id)
            if not self.ledger.is_alive(subscription, now, include_pending_cancellation=False):
                raise ValueError(f"Subscription {subscription_id} is not active")
            if self.ledger.has_charge_in_progress(subscription):
                raise ValueError(f"Subscription {subscription_id} has a charge in progress")

            price = self._target_price(subscription, tier_id, recurrence)
            current = self.ledger.original_purchase(subscription)
            credit_cents = self.ledger.prorated_discount_price_cents(subscription, now)
            tier_changed = current.tier_id != tier_id

            current.is_archived_original_subscription_purchase = True  # type: ignore[assignment]
            self.db.flush()
            new_original = self.purchase_repo.create(
                kind=current.kind,
                purchase_state=PurchaseState.NOT_CHARGED.value,
                product_id=subscription.product_id,
                subscription_id=subscription.id,
                tier_id=tier_id,
                price_id=price.id,
                email=subscription.email,
                is_original_subscription_purchase=True,
                price_cents=perceived_price_cents,
                displayed_price_cents=perceived_price_cents,
                displayed_price_cents_before_offer_code=perceived_price_cents,
                currency=current.currency,
                payment_method_id=subscription.payment_method_id,
                created_at=now,
            )
            subscription.price_id = price.id
            self.plan_change_repo.mark_deleted(subscription.id, now)  # type: ignore[arg-type]

            purchase = self.purchase_repo.create(
                kind=PurchaseKind.MEMBERSHIP_UPGRADE.value,
                purchase_state=PurchaseState.IN_PROGRESS.value,
                product_id=subscription.product_id,
                subscription_id=subscription.id,
                tier_id=tier_id,
                price_id=price.id,
                email=subscription.email,
                price_cents=max(perceived_price_cents - credit_cents, 0),
                displayed_price_cents=perceived_price_cents,
                currency=current.currency,
                payment_method_id=subscription.payment_method_id,
                replaced_original_purchase_id=current.id,
                created_at=now,
            )
            result = self._charge(subscription, purchase)
            outcome = self._record_outcome(purchase, result, now)
            if outcome.status == MembershipUpdateStatus.UPDATED and tier_changed:
                self.notifications.schedule_tier_workflows(tier_id, new_original.id)  # type: ignore[arg-type]
            return outcome

    def restart(self, subscription_id: UUID, now: datetime) -> MembershipUpdateResult:
        """Restart a cancelled or failed membership on its current plan."""
        with unit_of_work(self.db, self.scheduler):
            subscription = self._get_subscription(subscription_id)
            if subscription.ended_at is not None or self.ledger.charges_completed(subscription):
                raise ValueError(f"Subscription {subscription_id} has ended")
            if self.ledger.is_alive(subscription, now, include_pending_cancellation=False):
                raise ValueError(f"Subscription {subscription_id} is already active")

            if self.ledger.is_alive(subscription, now):
                # Pending cancellation: the paid period is still running
                subscription.cancelled_at = None  # type: ignore[assignment]
                subscription.cancelled_by_buyer = False  # type: ignore[assignment]
                self.db.flush()
                return MembershipUpdateResult(status=MembershipUpdateStatus.UPDATED)

            original = self.ledger.original_purchase(subscription)
            subscription.is_resubscription_pending_confirmation = True  # type: ignore[assignment]
            price_cents = self.ledger.current_subscription_price_cents(subscription)
            purchase = self.purchase_repo.create(
                kind=PurchaseKind.MEMBERSHIP_RESTART.value,
                purchase_state=PurchaseState.IN_PROGRESS.value,
                product_id=subscription.product_id,
                subscription_id=subscription.id,
                tier_id=original.tier_id,
                price_id=subscription.price_id,
                email=subscription.email,
                price_cents=price_cents,
                displayed_price_cents=price_cents,
                currency=original.currency,
                payment_method_id=subscription.payment_method_id,
                created_at=now,
            )
            result = self._charge(subscription, purchase)
            return self._record_outcome(purchase, result, now)

    def confirm_restart(self, subscription: Subscription) -> None:
        """Bring a restarted subscription back to life once its charge succeeded."""
        subscription.cancelled_at = None  # type: ignore[assignment]
        subscription.cancelled_by_buyer = False  # type: ignore[assignment]
        subscription.failed_at = None  # type: ignore[assignment]
        subscription.deactivated_at = None  # type: ignore[assignment]
        subscription.is_resubscription_pending_confirmation = False  # type: ignore[assignment]
        self.db.flush()
        logger.info("Subscription %s restarted", subscription.id)

    def _record_outcome(
        self,
        purchase: Purchase,
        result: ChargeResult,
        now: datetime,
    ) -> MembershipUpdateResult:
        purchase.processor_payment_intent_id = result.intent_id  # type: ignore[assignment]
        purchase_id: UUID = purchase.id  # type: ignore[assignment]

        if result.outcome == ChargeOutcome.SUCCEEDED:
            purchase.transition_to(PurchaseState.SUCCESSFUL)
            purchase.succeeded_at = now  # type: ignore[assignment]
            self.db.flush()
            if purchase.kind == PurchaseKind.MEMBERSHIP_RESTART.value:
                subscription = self.subscription_repo.get_by_id(purchase.subscription_id)  # type: ignore[arg-type]
                if subscription is not None:
                    self.confirm_restart(subscription)
            return MembershipUpdateResult(
                status=MembershipUpdateStatus.UPDATED, purchase_id=purchase_id
            )

        if result.needs_confirmation:
            self.db.flush()
            schedule_abandonment_check(self.scheduler, purchase)
            return MembershipUpdateResult(
                status=MembershipUpdateStatus.PENDING_CONFIRMATION, purchase_id=purchase_id
            )

        error_code = result.error_code or PurchaseErrorCode.CARD_DECLINED.value
        self.failures.mark_items_failed(purchase, now, error_code)
        return MembershipUpdateResult(
            status=MembershipUpdateStatus.FAILED,
            purchase_id=purchase_id,
            error_code=error_code,
        )

    def downgrade(
        self,
        subscription_id: UUID,
        tier_id: UUID,
        recurrence: str,
        perceived_price_cents: int,
        now: datetime,
    ) -> MembershipUpdateResult:
        """Schedule a tier or recurrence change for the next charge."""
        with unit_of_work(self.db, self.scheduler):
            subscription = self._get_subscription(subscription_id)
            if not self.ledger.is_alive(subscription, now):
                raise ValueError(f"Subscription {subscription_id} is not active")
            self._target_price(subscription, tier_id, recurrence)

            self.plan_change_repo.mark_deleted(
                subscription.id, now, for_product_price_change=False  # type: ignore[arg-type]
            )
            plan_change = self.plan_change_repo.create(
                subscription_id=subscription.id,
                tier_id=tier_id,
                recurrence=recurrence,
                perceived_price_cents=perceived_price_cents,
                effective_on=None,
                for_product_price_change=False,
                created_at=now,
            )
            logger.info(
                "Scheduled plan change %s for subscription %s", plan_change.id, subscription_id
            )
            return MembershipUpdateResult(
                status=MembershipUpdateStatus.SCHEDULED,
                plan_change_id=plan_change.id,  # type: ignore[arg-type]
            )
