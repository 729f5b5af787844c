"""Shared test fixtures for all test modules."""

import contextlib
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any
from unittest.mock import MagicMock

import pytest
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from chargeflow.core import database as db_module
from chargeflow.core.database import Base, get_db
from chargeflow.models.offer_code import OfferCode
from chargeflow.models.product import Price, Product, Recurrence, Tier
from chargeflow.models.purchase import Purchase, PurchaseKind, PurchaseState
from chargeflow.models.seller import Seller
from chargeflow.models.subscription import Subscription
from chargeflow.services.charge_processor import ChargeProcessorBase
from chargeflow.services.job_scheduler import JobScheduler

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

# Fixed clock shared by the billing tests
NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def db_session():
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def scheduler() -> JobScheduler:
    return JobScheduler()


@pytest.fixture
def processor() -> MagicMock:
    """A charge processor whose every call the test decides."""
    return MagicMock(spec=ChargeProcessorBase)


@pytest.fixture
def seller(db_session: Session) -> Seller:
    s = Seller(email="seller@example.com", name="Test Seller")
    db_session.add(s)
    db_session.commit()
    db_session.refresh(s)
    return s


@pytest.fixture
def product(db_session: Session, seller: Seller) -> Product:
    p = Product(seller_id=seller.id, name="Membership", currency="usd", is_membership=True)
    db_session.add(p)
    db_session.commit()
    db_session.refresh(p)
    return p


@pytest.fixture
def tier(db_session: Session, product: Product) -> Tier:
    t = Tier(product_id=product.id, name="Basic")
    db_session.add(t)
    db_session.commit()
    db_session.refresh(t)
    return t


@pytest.fixture
def premium_tier(db_session: Session, product: Product) -> Tier:
    t = Tier(product_id=product.id, name="Premium")
    db_session.add(t)
    db_session.commit()
    db_session.refresh(t)
    return t


def _price(db: Session, product: Product, tier: Tier, recurrence: Recurrence, cents: int) -> Price:
    p = Price(product_id=product.id, tier_id=tier.id, recurrence=recurrence.value, price_cents=cents)
    db.add(p)
    db.commit()
    db.refresh(p)
    return p


@pytest.fixture
def monthly_price(db_session: Session, product: Product, tier: Tier) -> Price:
    return _price(db_session, product, tier, Recurrence.MONTHLY, 1000)


@pytest.fixture
def yearly_price(db_session: Session, product: Product, tier: Tier) -> Price:
    return _price(db_session, product, tier, Recurrence.YEARLY, 10000)


@pytest.fixture
def premium_monthly_price(db_session: Session, product: Product, premium_tier: Tier) -> Price:
    return _price(db_session, product, premium_tier, Recurrence.MONTHLY, 2500)


@pytest.fixture
def make_offer_code(db_session: Session) -> Callable[..., OfferCode]:
    def _make(**fields: Any) -> OfferCode:
        code = OfferCode(code=fields.pop("code", "SAVE"), **fields)
        db_session.add(code)
        db_session.commit()
        db_session.refresh(code)
        return code

    return _make


@pytest.fixture
def make_subscription(
    db_session: Session,
    product: Product,
    tier: Tier,
    monthly_price: Price,
) -> Callable[..., Subscription]:
    """Build a subscription with a successful original purchase made at ``charged_at``."""

    def _make(
        charged_at: datetime,
        price: Price | None = None,
        price_cents: int | None = None,
        offer_code: OfferCode | None = None,
        before_offer_cents: int | None = None,
        original_state: PurchaseState = PurchaseState.SUCCESSFUL,
        **fields: Any,
    ) -> Subscription:
        price = price or monthly_price
        cents = int(price.price_cents) if price_cents is None else price_cents
        fields.setdefault("payment_method_id", "pm_card_visa")
        sub = Subscription(
            product_id=product.id,
            price_id=price.id,
            email="buyer@example.com",
            created_at=charged_at,
            **fields,
        )
        db_session.add(sub)
        db_session.flush()

        original = Purchase(
            kind=PurchaseKind.CLASSIC.value,
            purchase_state=original_state.value,
            product_id=product.id,
            subscription_id=sub.id,
            tier_id=price.tier_id or tier.id,
            price_id=price.id,
            offer_code_id=offer_code.id if offer_code else None,
            email=sub.email,
            is_original_subscription_purchase=True,
            is_free_trial_purchase=original_state == PurchaseState.NOT_CHARGED,
            price_cents=cents,
            displayed_price_cents=cents,
            displayed_price_cents_before_offer_code=(
                before_offer_cents if before_offer_cents is not None else cents
            ),
            currency="usd",
            payment_method_id=sub.payment_method_id,
            succeeded_at=charged_at if original_state == PurchaseState.SUCCESSFUL else None,
            created_at=charged_at,
        )
        db_session.add(original)
        db_session.commit()
        db_session.refresh(sub)
        return sub

    return _make


@pytest.fixture
def add_purchase(db_session: Session) -> Callable[..., Purchase]:
    """Attach another purchase to a subscription."""

    def _add(
        subscription: Subscription,
        created_at: datetime,
        state: PurchaseState = PurchaseState.SUCCESSFUL,
        kind: PurchaseKind = PurchaseKind.RECURRING_CHARGE,
        **fields: Any,
    ) -> Purchase:
        fields.setdefault("price_cents", 1000)
        fields.setdefault("displayed_price_cents", fields["price_cents"])
        purchase = Purchase(
            kind=kind.value,
            purchase_state=state.value,
            product_id=subscription.product_id,
            subscription_id=subscription.id,
            price_id=subscription.price_id,
            email=subscription.email,
            currency="usd",
            succeeded_at=created_at if state == PurchaseState.SUCCESSFUL else None,
            created_at=created_at,
            **fields,
        )
        db_session.add(purchase)
        db_session.commit()
        db_session.refresh(purchase)
        return purchase

    return _add
