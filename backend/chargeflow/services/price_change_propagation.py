"""Propagate a tier's new prices to existing memberships as scheduled plan changes."""

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.core.config import settings
from chargeflow.models.product import Tier
from chargeflow.models.subscription import Subscription
from chargeflow.models.subscription_plan_change import SubscriptionPlanChange
from chargeflow.repositories.product_repository import ProductRepository
from chargeflow.repositories.subscription_plan_change_repository import (
    SubscriptionPlanChangeRepository,
)
from chargeflow.repositories.subscription_repository import SubscriptionRepository
from chargeflow.services.job_scheduler import JobScheduler, unit_of_work
from chargeflow.services.notification_service import Notification, NotificationService
from chargeflow.services.subscription_dates import SubscriptionDatesService
from chargeflow.services.subscription_ledger import SubscriptionLedger

logger = logging.getLogger(__name__)


@dataclass
class PriceUpdateSummary:
    scheduled: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0


class PriceChangePropagationService:
    def __init__(self, db: Session, scheduler: JobScheduler):
        self.db = db
        self.scheduler = scheduler
        self.subscription_repo = SubscriptionRepository(db)
        self.product_repo = ProductRepository(db)
        self.plan_change_repo = SubscriptionPlanChangeRepository(db)
        self.ledger = SubscriptionLedger(db)
        self.dates = SubscriptionDatesService()
        self.notifications = NotificationService(scheduler)

    def schedule_price_updates(self, tier_id: UUID, now: datetime) -> PriceUpdateSummary:
        """Record a price-change plan change for every live membership on the tier.

        Each subscription is handled in its own unit of work; one that fails
        is logged and rolled back without affecting the others.
        """
        tier = self.product_repo.get_tier(tier_id)
        if tier is None:
            raise ValueError(f"Tier {tier_id} not found")

        summary = PriceUpdateSummary()
        subscription_ids = [s.id for s in self.subscription_repo.get_on_tier(tier_id)]
        effective_date = self._effective_date(tier, now)

        for subscription_id in subscription_ids:
            try:
                with unit_of_work(self.db, self.scheduler):
                    outcome = self._schedule_for_subscription(
                        subscription_id, tier_id, effective_date, now  # type: ignore[arg-type]
                    )
            except Exception:
                logger.exception(
                    "Failed to schedule price change for subscription %s on tier %s",
                    subscription_id,
                    tier_id,
                )
                summary.failed += 1
                continue

            if outcome == "scheduled":
                summary.scheduled += 1
            elif outcome == "unchanged":
                summary.unchanged += 1
            else:
                summary.skipped += 1

        logger.info(
            "Price change for tier %s: %d scheduled, %d unchanged, %d skipped, %d failed",
            tier_id,
            summary.scheduled,
            summary.unchanged,
            summary.skipped,
            summary.failed,
        )
        return summary

    def _effective_date(self, tier: Tier, now: datetime) -> date:
        earliest = (now + timedelta(days=settings.PRICE_CHANGE_NOTICE_DAYS)).date()
        configured = tier.subscription_price_change_effective_date
        if configured is None:
            return earliest
        return max(configured, earliest)  # type: ignore[no-any-return]

    def _schedule_for_subscription(
        self,
        subscription_id: UUID,
        tier_id: UUID,
        effective_date: date,
        now: datetime,
    ) -> str:
        subscription = self.subscription_repo.get_for_update(subscription_id)
        if subscription is None or not self.ledger.is_alive(subscription, now):
            return "skipped"
        if self.ledger.charges_completed(subscription):
            return "skipped"

        live_changes = self.plan_change_repo.get_live(subscription.id)  # type: ignore[arg-type]
        latest = live_changes[0] if live_changes else None
        if latest is not None and latest.tier_id is not None and latest.tier_id != tier_id:
            return "skipped"

        recurrence = str(latest.recurrence) if latest is not None else self.ledger.recurrence(subscription)
        price = self.product_repo.find_price(
            subscription.product_id, tier_id, recurrence  # type: ignore[arg-type]
        )
        if price is None:
            logger.warning(
                "Not adding a plan change for membership price change - subscription_id: %s - "
                "reason: tier has no %s price",
                subscription.id,
                recurrence,
            )
            return "skipped"

        new_price_cents = self._discounted_price(subscription, int(price.price_cents))
        if new_price_cents == self._agreed_price(subscription, latest):
            logger.warning(
                "Not adding a plan change for membership price change - subscription_id: %s - "
                "reason: price has not changed",
                subscription.id,
            )
            return "unchanged"

        self.plan_change_repo.mark_deleted(
            subscription.id, now, for_product_price_change=True  # type: ignore[arg-type]
        )
        boundary = self.dates.first_boundary_on_or_after(
            self.ledger.end_time_of_subscription(subscription), recurrence, effective_date
        )
        plan_change = self.plan_change_repo.create(
            subscription_id=subscription.id,
            tier_id=tier_id,
            recurrence=recurrence,
            perceived_price_cents=new_price_cents,
            effective_on=boundary.date(),
            for_product_price_change=True,
            created_at=now,
        )
        self.notifications.notify(Notification.SUBSCRIPTION_PRICE_CHANGE, plan_change.id)  # type: ignore[arg-type]
        return "scheduled"

    def _discounted_price(self, subscription: Subscription, nominal_cents: int) -> int:
        offer_code = self.ledger.offer_code(subscription)
        if offer_code is None or not self.ledger.discount_applies_to_next_charge(subscription):
            return nominal_cents
        return nominal_cents - offer_code.discount_cents(nominal_cents)

    def _agreed_price(
        self, subscription: Subscription, latest: SubscriptionPlanChange | None
    ) -> int:
        if latest is not None and latest.perceived_price_cents is not None:
            return int(latest.perceived_price_cents)
        return self.ledger.current_subscription_price_cents(subscription)
