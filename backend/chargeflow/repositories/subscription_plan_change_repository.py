from datetime import date, datetime
from typing import Any
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from chargeflow.models.subscription_plan_change import SubscriptionPlanChange


class SubscriptionPlanChangeRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, plan_change_id: UUID) -> SubscriptionPlanChange | None:
        return (
            self.db.query(SubscriptionPlanChange)
            .filter(SubscriptionPlanChange.id == plan_change_id)
            .first()
        )

    def get_live(self, subscription_id: UUID) -> list[SubscriptionPlanChange]:
        """Plan changes that are neither applied nor deleted, newest first."""
        return (
            self.db.query(SubscriptionPlanChange)
            .filter(
                SubscriptionPlanChange.subscription_id == subscription_id,
                SubscriptionPlanChange.deleted_at.is_(None),
                SubscriptionPlanChange.applied.is_(False),
            )
            .order_by(SubscriptionPlanChange.created_at.desc())
            .all()
        )

    def get_latest_applicable(
        self, subscription_id: UUID, on: date
    ) -> SubscriptionPlanChange | None:
        return (
            self.db.query(SubscriptionPlanChange)
            .filter(
                SubscriptionPlanChange.subscription_id == subscription_id,
                SubscriptionPlanChange.deleted_at.is_(None),
                SubscriptionPlanChange.applied.is_(False),
                or_(
                    SubscriptionPlanChange.effective_on.is_(None),
                    SubscriptionPlanChange.effective_on <= on,
                ),
            )
            .order_by(SubscriptionPlanChange.created_at.desc())
            .first()
        )

    def create(self, **fields: Any) -> SubscriptionPlanChange:
        plan_change = SubscriptionPlanChange(**fields)
        self.db.add(plan_change)
        self.db.flush()
        return plan_change

    def mark_deleted(
        self,
        subscription_id: UUID,
        deleted_at: datetime,
        for_product_price_change: bool | None = None,
    ) -> int:
        """Soft-delete live plan changes, optionally only one origin."""
        count = 0
        for plan_change in self.get_live(subscription_id):
            if (
                for_product_price_change is not None
                and bool(plan_change.for_product_price_change) != for_product_price_change
            ):
                continue
            plan_change.deleted_at = deleted_at  # type: ignore[assignment]
            count += 1
        self.db.flush()
        return count
