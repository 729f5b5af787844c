from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.models.offer_code import OfferCode


class OfferCodeRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_by_id(self, offer_code_id: UUID) -> OfferCode | None:
        return self.db.query(OfferCode).filter(OfferCode.id == offer_code_id).first()
