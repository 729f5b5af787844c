from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.core.database import lock_for_update
from chargeflow.models.preorder import Preorder, PreorderState


class PreorderRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, preorder_id: UUID) -> Preorder | None:
        return self.db.query(Preorder).filter(Preorder.id == preorder_id).first()

    def get_authorized_for_product(self, product_id: UUID) -> list[Preorder]:
        return (
            self.db.query(Preorder)
            .filter(
                Preorder.product_id == product_id,
                Preorder.state == PreorderState.AUTHORIZATION_SUCCESSFUL.value,
            )
            .order_by(Preorder.created_at)
            .all()
        )

    def get_for_update(self, preorder_id: UUID) -> Preorder | None:
        query = self.db.query(Preorder).filter(Preorder.id == preorder_id)
        preorder: Preorder | None = lock_for_update(self.db, query).first()
        if preorder is not None:
            self.db.refresh(preorder)
        return preorder
