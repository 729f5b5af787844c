from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from chargeflow.core.database import lock_for_update
from chargeflow.models.purchase import Purchase
from chargeflow.models.subscription import Subscription
from chargeflow.models.subscription_plan_change import SubscriptionPlanChange


class SubscriptionRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, subscription_id: UUID) -> Subscription | None:
        return self.db.query(Subscription).filter(Subscription.id == subscription_id).first()

    def get_for_update(self, subscription_id: UUID) -> Subscription | None:
        """Load a subscription holding a row lock until the transaction ends."""
        query = self.db.query(Subscription).filter(Subscription.id == subscription_id)
        subscription: Subscription | None = lock_for_update(self.db, query).first()
        if subscription is not None:
            self.db.refresh(subscription)
        return subscription

    def get_live_ids(self) -> list[UUID]:
        """Ids of subscriptions without a failed or ended marker.

        Cancelled subscriptions are included; whether a pending cancellation
        is still chargeable is decided per subscription.
        """
        rows = (
            self.db.query(Subscription.id)
            .filter(
                Subscription.failed_at.is_(None),
                Subscription.ended_at.is_(None),
                Subscription.deactivated_at.is_(None),
            )
            .order_by(Subscription.created_at, Subscription.id)
            .all()
        )
        return [row[0] for row in rows]

    def get_on_tier(self, tier_id: UUID) -> list[Subscription]:
        """Live subscriptions on a tier or with a live plan change to it."""
        on_tier = (
            select(Purchase.subscription_id)
            .where(
                Purchase.tier_id == tier_id,
                Purchase.is_original_subscription_purchase.is_(True),
                Purchase.is_archived_original_subscription_purchase.is_(False),
            )
        )
        changing_to_tier = (
            select(SubscriptionPlanChange.subscription_id)
            .where(
                SubscriptionPlanChange.tier_id == tier_id,
                SubscriptionPlanChange.deleted_at.is_(None),
                SubscriptionPlanChange.applied.is_(False),
            )
        )
        return (
            self.db.query(Subscription)
            .filter(
                or_(
                    Subscription.id.in_(on_tier),
                    Subscription.id.in_(changing_to_tier),
                ),
                Subscription.failed_at.is_(None),
                Subscription.ended_at.is_(None),
                Subscription.deactivated_at.is_(None),
            )
            .order_by(Subscription.created_at)
            .all()
        )
