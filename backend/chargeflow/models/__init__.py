from chargeflow.models.offer_code import OfferCode
from chargeflow.models.preorder import InvalidPreorderTransition, Preorder, PreorderState
from chargeflow.models.product import RECURRENCE_MONTHS, Price, Product, Recurrence, Tier
from chargeflow.models.purchase import (
    ABANDONMENT_ACTIONS,
    AbandonmentAction,
    IntentType,
    InvalidPurchaseTransition,
    Purchase,
    PurchaseErrorCode,
    PurchaseKind,
    PurchaseState,
)
from chargeflow.models.seller import Seller
from chargeflow.models.subscription import Subscription
from chargeflow.models.subscription_plan_change import SubscriptionPlanChange

__all__ = [
    "ABANDONMENT_ACTIONS",
    "AbandonmentAction",
    "IntentType",
    "InvalidPreorderTransition",
    "InvalidPurchaseTransition",
    "OfferCode",
    "Preorder",
    "PreorderState",
    "Price",
    "Product",
    "Purchase",
    "PurchaseErrorCode",
    "PurchaseKind",
    "PurchaseState",
    "RECURRENCE_MONTHS",
    "Recurrence",
    "Seller",
    "Subscription",
    "SubscriptionPlanChange",
    "Tier",
]
