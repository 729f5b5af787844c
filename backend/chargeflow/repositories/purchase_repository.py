from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import or_
from sqlalchemy.orm import Session

from chargeflow.core.database import lock_for_update
from chargeflow.models.purchase import Purchase, PurchaseKind, PurchaseState


class PurchaseRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, purchase_id: UUID) -> Purchase | None:
        return self.db.query(Purchase).filter(Purchase.id == purchase_id).first()

    def get_for_update(self, purchase_id: UUID) -> Purchase | None:
        query = self.db.query(Purchase).filter(Purchase.id == purchase_id)
        purchase: Purchase | None = lock_for_update(self.db, query).first()
        if purchase is not None:
            self.db.refresh(purchase)
        return purchase

    def get_by_intent_id(self, intent_id: str) -> Purchase | None:
        return (
            self.db.query(Purchase)
            .filter(
                or_(
                    Purchase.processor_payment_intent_id == intent_id,
                    Purchase.processor_setup_intent_id == intent_id,
                )
            )
            .first()
        )

    def create(self, **fields: Any) -> Purchase:
        purchase = Purchase(**fields)
        self.db.add(purchase)
        self.db.flush()
        return purchase

    def charge_reference(self, purchase: Purchase) -> str:
        """Idempotency reference for charging a flushed ``purchase``.

        Numbered by the purchase's position among its owner's purchases of the
        same kind, so a charge replayed after a rolled back transaction reuses
        the processor's earlier intent while a persisted attempt moves on.
        """
        if purchase.preorder_id is not None:
            owner_column, owner_id = Purchase.preorder_id, purchase.preorder_id
        else:
            owner_column, owner_id = Purchase.subscription_id, purchase.subscription_id
        sequence = (
            self.db.query(Purchase)
            .filter(owner_column == owner_id, Purchase.kind == purchase.kind)
            .count()
        )
        return f"{purchase.kind}:{owner_id}:{sequence}"

    def get_original_purchase(self, subscription_id: UUID) -> Purchase | None:
        return (
            self.db.query(Purchase)
            .filter(
                Purchase.subscription_id == subscription_id,
                Purchase.is_original_subscription_purchase.is_(True),
                Purchase.is_archived_original_subscription_purchase.is_(False),
            )
            .order_by(Purchase.created_at.desc())
            .first()
        )

    def get_last_archived_original_purchase(self, subscription_id: UUID) -> Purchase | None:
        """Newest archived original that is still a valid plan to fall back to."""
        return (
            self.db.query(Purchase)
            .filter(
                Purchase.subscription_id == subscription_id,
                Purchase.is_archived_original_subscription_purchase.is_(True),
                Purchase.purchase_state != PurchaseState.FAILED.value,
            )
            .order_by(Purchase.created_at.desc())
            .first()
        )

    def get_for_subscription(self, subscription_id: UUID) -> list[Purchase]:
        """All purchases of a subscription, oldest first."""
        return (
            self.db.query(Purchase)
            .filter(Purchase.subscription_id == subscription_id)
            .order_by(Purchase.created_at, Purchase.id)
            .all()
        )

    def get_for_preorder(self, preorder_id: UUID) -> list[Purchase]:
        return (
            self.db.query(Purchase)
            .filter(Purchase.preorder_id == preorder_id)
            .order_by(Purchase.created_at, Purchase.id)
            .all()
        )

    def get_stuck_in_progress(self, created_after: datetime, created_before: datetime) -> list[Purchase]:
        return (
            self.db.query(Purchase)
            .filter(
                Purchase.purchase_state == PurchaseState.IN_PROGRESS.value,
                Purchase.created_at >= created_after,
                Purchase.created_at <= created_before,
                Purchase.kind != PurchaseKind.PREORDER_AUTHORIZATION.value,
            )
            .order_by(Purchase.created_at)
            .all()
        )
