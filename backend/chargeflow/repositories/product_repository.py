from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.models.product import Price, Product, Tier


class ProductRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, product_id: UUID) -> Product | None:
        return self.db.query(Product).filter(Product.id == product_id).first()

    def get_tier(self, tier_id: UUID) -> Tier | None:
        return self.db.query(Tier).filter(Tier.id == tier_id).first()

    def get_price(self, price_id: UUID) -> Price | None:
        return self.db.query(Price).filter(Price.id == price_id).first()

    def find_price(
        self,
        product_id: UUID,
        tier_id: UUID | None,
        recurrence: str,
        include_deleted: bool = False,
    ) -> Price | None:
        """Find the price for a tier and recurrence, newest live row first."""
        query = self.db.query(Price).filter(
            Price.product_id == product_id,
            Price.recurrence == recurrence,
        )
        if tier_id is None:
            query = query.filter(Price.tier_id.is_(None))
        else:
            query = query.filter(Price.tier_id == tier_id)
        if not include_deleted:
            query = query.filter(Price.deleted_at.is_(None))
        return query.order_by(Price.deleted_at.isnot(None), Price.created_at.desc()).first()
