import uuid

from sqlalchemy import Column, DateTime, Integer, String, func

from chargeflow.core.database import Base
from chargeflow.models.shared import UUIDType


class OfferCode(Base):
    __tablename__ = "offer_codes"

    id = Column(UUIDType, primary_key=True, default=lambda: uuid.uuid4())
    code = Column(String(100), nullable=False, index=True)
    amount_cents = Column(Integer, nullable=True)
    amount_percentage = Column(Integer, nullable=True)
    # NULL means the discount applies to every billing cycle
    duration_in_billing_cycles = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    def discount_cents(self, price_cents: int) -> int:
        """Return the discount this code takes off ``price_cents``."""
        if self.amount_cents is not None:
            return min(int(self.amount_cents), price_cents)
        if self.amount_percentage is not None:
            return price_cents * int(self.amount_percentage) // 100
        return 0
