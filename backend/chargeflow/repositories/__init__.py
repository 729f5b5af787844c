from chargeflow.repositories.offer_code_repository import OfferCodeRepository
from chargeflow.repositories.preorder_repository import PreorderRepository
from chargeflow.repositories.product_repository import ProductRepository
from chargeflow.repositories.purchase_repository import PurchaseRepository
from chargeflow.repositories.seller_repository import SellerRepository
from chargeflow.repositories.subscription_plan_change_repository import (
    SubscriptionPlanChangeRepository,
)
from chargeflow.repositories.subscription_repository import SubscriptionRepository

__all__ = [
    "OfferCodeRepository",
    "PreorderRepository",
    "ProductRepository",
    "PurchaseRepository",
    "SellerRepository",
    "SubscriptionPlanChangeRepository",
    "SubscriptionRepository",
]
