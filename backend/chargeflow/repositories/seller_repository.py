from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.models.product import Product
from chargeflow.models.seller import Seller


class SellerRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, seller_id: UUID) -> Seller | None:
        return self.db.query(Seller).filter(Seller.id == seller_id).first()

    def get_for_product(self, product_id: UUID) -> Seller | None:
        return (
            self.db.query(Seller)
            .join(Product, Product.seller_id == Seller.id)
            .filter(Product.id == product_id)
            .first()
        )
