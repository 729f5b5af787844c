import uuid

from sqlalchemy import Boolean, Column, Date, DateTime, ForeignKey, Integer, String, func

from chargeflow.core.database import Base
from chargeflow.models.shared import UUIDType


class SubscriptionPlanChange(Base):
    __tablename__ = "subscription_plan_changes"

    id = Column(UUIDType, primary_key=True, default=lambda: uuid.uuid4())
    subscription_id = Column(
        UUIDType,
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tier_id = Column(UUIDType, ForeignKey("tiers.id", ondelete="SET NULL"), nullable=True)
    recurrence = Column(String(20), nullable=False)
    perceived_price_cents = Column(Integer, nullable=True)
    # NULL means the change applies at the next charge
    effective_on = Column(Date, nullable=True)
    applied = Column(Boolean, nullable=False, default=False)
    for_product_price_change = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
