import uuid

from sqlalchemy import Boolean, Column, DateTime, String, func

from chargeflow.core.database import Base
from chargeflow.models.shared import UUIDType


class Seller(Base):
    __tablename__ = "sellers"

    id = Column(UUIDType, primary_key=True, default=lambda: uuid.uuid4())
    email = Column(String(255), nullable=False)
    name = Column(String(255), nullable=True)
    suspended_for_fraud = Column(Boolean, nullable=False, default=False)
    enable_payment_email = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
