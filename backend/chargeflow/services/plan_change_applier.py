"""Apply a subscription's scheduled plan change at the billing boundary."""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.models.subscription import Subscription
from chargeflow.repositories.product_repository import ProductRepository
from chargeflow.repositories.subscription_plan_change_repository import (
    SubscriptionPlanChangeRepository,
)
from chargeflow.services.job_scheduler import JobScheduler
from chargeflow.services.notification_service import NotificationService
from chargeflow.services.subscription_ledger import SubscriptionLedger

logger = logging.getLogger(__name__)


class PlanChangeRejected(Exception):
    """The plan change cannot be applied; the enclosing unit of work must roll back."""


class PlanChangeStatus(str, Enum):
    APPLIED = "applied"
    APPLIED_PRICE_UNCHANGED = "applied_price_unchanged"
    NOT_APPLICABLE = "not_applicable"


@dataclass
class PlanChangeResult:
    status: PlanChangeStatus
    plan_change_id: UUID | None = None
    tier_changed: bool = False
    price_cents: int | None = None


class PlanChangeApplier:
    """Consumes the latest live plan change whose effective date has arrived.

    Must run inside the caller's unit of work; nothing here commits.
    """

    def __init__(self, db: Session, scheduler: JobScheduler):
        self.db = db
        self.plan_change_repo = SubscriptionPlanChangeRepository(db)
        self.product_repo = ProductRepository(db)
        self.ledger = SubscriptionLedger(db)
        self.notifications = NotificationService(scheduler)

    def apply_if_effective(self, subscription: Subscription, now: datetime) -> PlanChangeResult:
        plan_change = self.plan_change_repo.get_latest_applicable(
            subscription.id, now.date()  # type: ignore[arg-type]
        )
        if plan_change is None:
            return PlanChangeResult(status=PlanChangeStatus.NOT_APPLICABLE)

        original = self.ledger.original_purchase(subscription)
        target_tier_id = plan_change.tier_id or original.tier_id
        if target_tier_id is not None:
            tier = self.product_repo.get_tier(target_tier_id)  # type: ignore[arg-type]
            if tier is None or tier.product_id != subscription.product_id:
                raise PlanChangeRejected(
                    f"Plan change {plan_change.id} targets tier {target_tier_id} "
                    f"outside product {subscription.product_id}"
                )

        # Deleted tiers and prices still honour plan changes made before deletion
        price = self.product_repo.find_price(
            subscription.product_id,  # type: ignore[arg-type]
            target_tier_id,  # type: ignore[arg-type]
            str(plan_change.recurrence),
            include_deleted=True,
        )
        if price is None:
            raise PlanChangeRejected(
                f"No {plan_change.recurrence} price for plan change {plan_change.id}"
            )

        nominal_cents = int(price.price_cents)
        discount_cents = 0
        offer_code = self.ledger.offer_code(subscription)
        if offer_code is not None and self.ledger.discount_applies_to_next_charge(subscription):
            discount_cents = offer_code.discount_cents(nominal_cents)

        if plan_change.perceived_price_cents is not None:
            agreed_cents = int(plan_change.perceived_price_cents)
        else:
            agreed_cents = nominal_cents - discount_cents

        price_unchanged = agreed_cents == int(original.displayed_price_cents)
        tier_changed = target_tier_id != original.tier_id

        original.tier_id = target_tier_id
        original.price_id = price.id
        if not price_unchanged:
            original.displayed_price_cents = agreed_cents  # type: ignore[assignment]
            original.displayed_price_cents_before_offer_code = agreed_cents + discount_cents  # type: ignore[assignment]
        subscription.price_id = price.id
        subscription.flat_fee_applicable = True  # type: ignore[assignment]

        plan_change.applied = True  # type: ignore[assignment]
        plan_change.deleted_at = now  # type: ignore[assignment]
        self.db.flush()
        self.plan_change_repo.mark_deleted(subscription.id, now)  # type: ignore[arg-type]

        if tier_changed and target_tier_id is not None:
            self.notifications.schedule_tier_workflows(target_tier_id, original.id)  # type: ignore[arg-type]

        if price_unchanged:
            logger.warning(
                "Applied plan change %s without a price change - subscription_id: %s - "
                "reason: price has not changed",
                plan_change.id,
                subscription.id,
            )
            status = PlanChangeStatus.APPLIED_PRICE_UNCHANGED
        else:
            logger.info(
                "Applied plan change %s to subscription %s at %d cents",
                plan_change.id,
                subscription.id,
                agreed_cents,
            )
            status = PlanChangeStatus.APPLIED

        return PlanChangeResult(
            status=status,
            plan_change_id=plan_change.id,  # type: ignore[arg-type]
            tier_changed=tier_changed,
            price_cents=agreed_cents,
        )
