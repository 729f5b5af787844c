import uuid
from enum import Enum

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, func

from chargeflow.core.database import Base
from chargeflow.models.shared import UUIDType


class PurchaseKind(str, Enum):
    CLASSIC = "classic"
    RECURRING_CHARGE = "recurring_charge"
    PREORDER_AUTHORIZATION = "preorder_authorization"
    PREORDER_CHARGE = "preorder_charge"
    MEMBERSHIP_UPGRADE = "membership_upgrade"
    MEMBERSHIP_RESTART = "membership_restart"


class PurchaseState(str, Enum):
    IN_PROGRESS = "in_progress"
    SUCCESSFUL = "successful"
    FAILED = "failed"
    NOT_CHARGED = "not_charged"
    PREORDER_AUTHORIZATION_SUCCESSFUL = "preorder_authorization_successful"
    PREORDER_AUTHORIZATION_FAILED = "preorder_authorization_failed"
    PREORDER_CONCLUDED_SUCCESSFULLY = "preorder_concluded_successfully"
    PREORDER_CONCLUDED_UNSUCCESSFULLY = "preorder_concluded_unsuccessfully"


class PurchaseErrorCode(str, Enum):
    PROCESSING_ERROR = "processing_error"
    PROCESSOR_UNAVAILABLE = "processor_unavailable"
    CARD_DECLINED = "card_declined"
    CARD_DECLINED_INSUFFICIENT_FUNDS = "card_declined_insufficient_funds"
    AUTHENTICATION_ABANDONED = "authentication_abandoned"
    PAYMENT_METHOD_MISSING = "payment_method_missing"


RETRYABLE_ERROR_CODES = frozenset({PurchaseErrorCode.CARD_DECLINED_INSUFFICIENT_FUNDS.value})


class IntentType(str, Enum):
    PAYMENT_INTENT = "payment_intent"
    SETUP_INTENT = "setup_intent"


class AbandonmentAction(str, Enum):
    MARK_FAILED = "mark_failed"
    MARK_PREORDER_AUTHORIZATION_FAILED = "mark_preorder_authorization_failed"
    MARK_ITEMS_FAILED = "mark_items_failed"


ABANDONMENT_ACTIONS: dict[PurchaseKind, AbandonmentAction] = {
    PurchaseKind.CLASSIC: AbandonmentAction.MARK_FAILED,
    PurchaseKind.RECURRING_CHARGE: AbandonmentAction.MARK_FAILED,
    PurchaseKind.PREORDER_CHARGE: AbandonmentAction.MARK_FAILED,
    PurchaseKind.PREORDER_AUTHORIZATION: AbandonmentAction.MARK_PREORDER_AUTHORIZATION_FAILED,
    PurchaseKind.MEMBERSHIP_UPGRADE: AbandonmentAction.MARK_ITEMS_FAILED,
    PurchaseKind.MEMBERSHIP_RESTART: AbandonmentAction.MARK_ITEMS_FAILED,
}

INTENT_TYPES: dict[PurchaseKind, IntentType] = {
    PurchaseKind.CLASSIC: IntentType.PAYMENT_INTENT,
    PurchaseKind.RECURRING_CHARGE: IntentType.PAYMENT_INTENT,
    PurchaseKind.PREORDER_CHARGE: IntentType.PAYMENT_INTENT,
    PurchaseKind.PREORDER_AUTHORIZATION: IntentType.SETUP_INTENT,
    PurchaseKind.MEMBERSHIP_UPGRADE: IntentType.PAYMENT_INTENT,
    PurchaseKind.MEMBERSHIP_RESTART: IntentType.PAYMENT_INTENT,
}

PURCHASE_TRANSITIONS: dict[PurchaseState, frozenset[PurchaseState]] = {
    PurchaseState.IN_PROGRESS: frozenset(
        {
            PurchaseState.SUCCESSFUL,
            PurchaseState.FAILED,
            PurchaseState.PREORDER_AUTHORIZATION_SUCCESSFUL,
            PurchaseState.PREORDER_AUTHORIZATION_FAILED,
        }
    ),
    PurchaseState.NOT_CHARGED: frozenset({PurchaseState.FAILED}),
    PurchaseState.PREORDER_AUTHORIZATION_SUCCESSFUL: frozenset(
        {
            PurchaseState.PREORDER_CONCLUDED_SUCCESSFULLY,
            PurchaseState.PREORDER_CONCLUDED_UNSUCCESSFULLY,
        }
    ),
    PurchaseState.SUCCESSFUL: frozenset(),
    PurchaseState.FAILED: frozenset(),
    PurchaseState.PREORDER_AUTHORIZATION_FAILED: frozenset(),
    PurchaseState.PREORDER_CONCLUDED_SUCCESSFULLY: frozenset(),
    PurchaseState.PREORDER_CONCLUDED_UNSUCCESSFULLY: frozenset(),
}


class InvalidPurchaseTransition(Exception):
    """Raised when a purchase is moved to a state its current state cannot reach."""


class Purchase(Base):
    __tablename__ = "purchases"

    id = Column(UUIDType, primary_key=True, default=lambda: uuid.uuid4())
    kind = Column(String(30), nullable=False, default=PurchaseKind.CLASSIC.value)
    purchase_state = Column(
        String(40), nullable=False, default=PurchaseState.IN_PROGRESS.value, index=True
    )
    product_id = Column(
        UUIDType,
        ForeignKey("products.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    subscription_id = Column(
        UUIDType,
        ForeignKey("subscriptions.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    preorder_id = Column(
        UUIDType,
        ForeignKey("preorders.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    tier_id = Column(UUIDType, ForeignKey("tiers.id", ondelete="SET NULL"), nullable=True)
    price_id = Column(UUIDType, ForeignKey("prices.id", ondelete="SET NULL"), nullable=True)
    offer_code_id = Column(
        UUIDType, ForeignKey("offer_codes.id", ondelete="SET NULL"), nullable=True
    )
    replaced_original_purchase_id = Column(
        UUIDType, ForeignKey("purchases.id", ondelete="SET NULL"), nullable=True
    )
    email = Column(String(255), nullable=True)
    is_original_subscription_purchase = Column(Boolean, nullable=False, default=False)
    is_archived_original_subscription_purchase = Column(Boolean, nullable=False, default=False)
    is_free_trial_purchase = Column(Boolean, nullable=False, default=False)
    price_cents = Column(Integer, nullable=False, default=0)
    displayed_price_cents = Column(Integer, nullable=False, default=0)
    displayed_price_cents_before_offer_code = Column(Integer, nullable=True)
    currency = Column(String(3), nullable=False, default="usd")
    payment_method_id = Column(String(255), nullable=True)
    processor_payment_intent_id = Column(String(255), nullable=True, index=True)
    processor_setup_intent_id = Column(String(255), nullable=True, index=True)
    error_code = Column(String(50), nullable=True)
    succeeded_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def purchase_kind(self) -> PurchaseKind:
        return PurchaseKind(self.kind)

    @property
    def intent_type(self) -> IntentType:
        return INTENT_TYPES[self.purchase_kind]

    @property
    def intent_id(self) -> str | None:
        if self.intent_type == IntentType.SETUP_INTENT:
            return self.processor_setup_intent_id  # type: ignore[return-value]
        return self.processor_payment_intent_id  # type: ignore[return-value]

    def transition_to(self, state: PurchaseState) -> None:
        """Move the purchase to ``state``, enforcing the transition table."""
        current = PurchaseState(self.purchase_state)
        if state not in PURCHASE_TRANSITIONS[current]:
            raise InvalidPurchaseTransition(
                f"Purchase {self.id} cannot move from {current.value} to {state.value}"
            )
        self.purchase_state = state.value  # type: ignore[assignment]
