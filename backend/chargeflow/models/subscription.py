import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func

from chargeflow.core.database import Base
from chargeflow.models.shared import UUIDType


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(UUIDType, primary_key=True, default=lambda: uuid.uuid4())
    product_id = Column(
        UUIDType,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    price_id = Column(
        UUIDType,
        ForeignKey("prices.id", ondelete="RESTRICT"),
        nullable=False,
    )
    email = Column(String(255), nullable=False)
    payment_method_id = Column(String(255), nullable=True)
    # Caps the total number of charges for fixed-length plans
    charge_occurrence_count = Column(Integer, nullable=True)
    free_trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by_buyer = Column(Boolean, nullable=False, default=False)
    failed_at = Column(DateTime(timezone=True), nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)
    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    is_test_subscription = Column(Boolean, nullable=False, default=False)
    flat_fee_applicable = Column(Boolean, nullable=False, default=False)
    is_resubscription_pending_confirmation = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
