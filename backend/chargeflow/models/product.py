import uuid
from enum import Enum

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    String,
    func,
)

from chargeflow.core.database import Base
from chargeflow.models.shared import UUIDType


class Recurrence(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    BIANNUALLY = "biannually"
    YEARLY = "yearly"
    EVERY_TWO_YEARS = "every_two_years"


RECURRENCE_MONTHS: dict[Recurrence, int] = {
    Recurrence.MONTHLY: 1,
    Recurrence.QUARTERLY: 3,
    Recurrence.BIANNUALLY: 6,
    Recurrence.YEARLY: 12,
    Recurrence.EVERY_TWO_YEARS: 24,
}


class Product(Base):
    __tablename__ = "products"

    id = Column(UUIDType, primary_key=True, default=lambda: uuid.uuid4())
    seller_id = Column(
        UUIDType,
        ForeignKey("sellers.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    currency = Column(String(3), nullable=False, default="usd")
    is_membership = Column(Boolean, nullable=False, default=False)
    is_in_preorder_state = Column(Boolean, nullable=False, default=False)
    release_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Tier(Base):
    __tablename__ = "tiers"

    id = Column(UUIDType, primary_key=True, default=lambda: uuid.uuid4())
    product_id = Column(
        UUIDType,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name = Column(String(255), nullable=False)
    apply_price_changes_to_existing_memberships = Column(Boolean, nullable=False, default=False)
    subscription_price_change_effective_date = Column(Date, nullable=True)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Price(Base):
    __tablename__ = "prices"

    id = Column(UUIDType, primary_key=True, default=lambda: uuid.uuid4())
    product_id = Column(
        UUIDType,
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    tier_id = Column(
        UUIDType,
        ForeignKey("tiers.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    recurrence = Column(String(20), nullable=False, default=Recurrence.MONTHLY.value)
    price_cents = Column(Integer, nullable=False)
    deleted_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
