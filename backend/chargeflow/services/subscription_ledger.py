"""Read-side view over a subscription's purchases and lifecycle markers."""

from datetime import datetime, timedelta

from sqlalchemy.orm import Session

from chargeflow.models.offer_code import OfferCode
from chargeflow.models.product import Price, Product
from chargeflow.models.purchase import Purchase, PurchaseKind, PurchaseState
from chargeflow.models.seller import Seller
from chargeflow.models.shared import as_utc
from chargeflow.models.subscription import Subscription
from chargeflow.repositories.offer_code_repository import OfferCodeRepository
from chargeflow.repositories.product_repository import ProductRepository
from chargeflow.repositories.purchase_repository import PurchaseRepository
from chargeflow.repositories.seller_repository import SellerRepository
from chargeflow.services.subscription_dates import SubscriptionDatesService, add_period


def _charged_at(purchase: Purchase) -> datetime:
    return as_utc(purchase.succeeded_at or purchase.created_at)  # type: ignore[no-any-return]


class SubscriptionLedger:
    """Answers billing questions about a subscription at an explicit instant.

    Every method that depends on the clock takes ``now``; nothing here writes.
    """

    def __init__(self, db: Session):
        self.db = db
        self.purchase_repo = PurchaseRepository(db)
        self.product_repo = ProductRepository(db)
        self.seller_repo = SellerRepository(db)
        self.offer_code_repo = OfferCodeRepository(db)
        self.dates = SubscriptionDatesService()

    def purchases(self, subscription: Subscription) -> list[Purchase]:
        return self.purchase_repo.get_for_subscription(subscription.id)  # type: ignore[arg-type]

    def original_purchase(self, subscription: Subscription) -> Purchase:
        purchase = self.purchase_repo.get_original_purchase(subscription.id)  # type: ignore[arg-type]
        if purchase is None:
            raise ValueError(f"Subscription {subscription.id} has no original purchase")
        return purchase

    def price(self, subscription: Subscription) -> Price:
        price = self.product_repo.get_price(subscription.price_id)  # type: ignore[arg-type]
        if price is None:
            raise ValueError(f"Price {subscription.price_id} not found")
        return price

    def recurrence(self, subscription: Subscription) -> str:
        return str(self.price(subscription).recurrence)

    def product(self, subscription: Subscription) -> Product:
        product = self.product_repo.get_by_id(subscription.product_id)  # type: ignore[arg-type]
        if product is None:
            raise ValueError(f"Product {subscription.product_id} not found")
        return product

    def seller(self, subscription: Subscription) -> Seller | None:
        return self.seller_repo.get_for_product(subscription.product_id)  # type: ignore[arg-type]

    def offer_code(self, subscription: Subscription) -> OfferCode | None:
        original = self.original_purchase(subscription)
        if original.offer_code_id is None:
            return None
        return self.offer_code_repo.get_by_id(original.offer_code_id)  # type: ignore[arg-type]

    def successful_charges(self, subscription: Subscription) -> list[Purchase]:
        """Successful, non-refunded charges, oldest first."""
        return [
            p
            for p in self.purchases(subscription)
            if p.purchase_state == PurchaseState.SUCCESSFUL.value and p.refunded_at is None
        ]

    def last_successful_charge(self, subscription: Subscription) -> Purchase | None:
        charges = self.successful_charges(subscription)
        if not charges:
            return None
        return max(charges, key=_charged_at)

    def last_purchase(self, subscription: Subscription) -> Purchase | None:
        """The most recent purchase, ignoring archived and uncharged originals."""
        purchases = [
            p for p in self.purchases(subscription)
            if not p.is_archived_original_subscription_purchase
            and p.purchase_state != PurchaseState.NOT_CHARGED.value
        ]
        return purchases[-1] if purchases else None

    def charge_count(self, subscription: Subscription) -> int:
        """Number of billing-cycle charges, excluding upgrade top-ups."""
        return sum(
            1
            for p in self.successful_charges(subscription)
            if p.kind != PurchaseKind.MEMBERSHIP_UPGRADE.value
        )

    def is_alive(
        self,
        subscription: Subscription,
        now: datetime,
        include_pending_cancellation: bool = True,
    ) -> bool:
        if subscription.failed_at is not None or subscription.ended_at is not None:
            return False
        if subscription.deactivated_at is not None:
            return False
        if subscription.cancelled_at is None:
            return True
        return include_pending_cancellation and as_utc(subscription.cancelled_at) > now

    def has_charge_in_progress(self, subscription: Subscription) -> bool:
        return any(
            p.purchase_state == PurchaseState.IN_PROGRESS.value
            and not p.is_original_subscription_purchase
            for p in self.purchases(subscription)
        )

    def charges_completed(self, subscription: Subscription) -> bool:
        if subscription.charge_occurrence_count is None:
            return False
        return self.charge_count(subscription) >= int(subscription.charge_occurrence_count)

    def in_free_trial(self, subscription: Subscription, now: datetime) -> bool:
        if subscription.free_trial_ends_at is None:
            return False
        if self.last_successful_charge(subscription) is not None:
            return False
        return as_utc(subscription.free_trial_ends_at) > now

    def discount_applies_to_next_charge(self, subscription: Subscription) -> bool:
        offer_code = self.offer_code(subscription)
        if offer_code is None:
            return False
        if offer_code.duration_in_billing_cycles is None:
            return True
        return self.charge_count(subscription) < int(offer_code.duration_in_billing_cycles)

    def current_subscription_price_cents(self, subscription: Subscription) -> int:
        original = self.original_purchase(subscription)
        if original.offer_code_id is None or self.discount_applies_to_next_charge(subscription):
            return int(original.displayed_price_cents)
        if original.displayed_price_cents_before_offer_code is not None:
            return int(original.displayed_price_cents_before_offer_code)
        return int(original.displayed_price_cents)

    def end_time_of_last_paid_period(self, subscription: Subscription) -> datetime | None:
        last_charge = self.last_successful_charge(subscription)
        if last_charge is not None:
            return add_period(_charged_at(last_charge), self.recurrence(subscription))
        if subscription.free_trial_ends_at is not None:
            return as_utc(subscription.free_trial_ends_at)  # type: ignore[no-any-return]
        return None

    def end_time_of_subscription(self, subscription: Subscription) -> datetime:
        paid_until = self.end_time_of_last_paid_period(subscription)
        if paid_until is not None:
            return paid_until
        original = self.original_purchase(subscription)
        return add_period(_charged_at(original), self.recurrence(subscription))

    def current_period_start(self, subscription: Subscription) -> datetime:
        last_charge = self.last_successful_charge(subscription)
        if last_charge is not None:
            return _charged_at(last_charge)
        return _charged_at(self.original_purchase(subscription))

    def is_overdue_for_charge(self, subscription: Subscription, now: datetime) -> bool:
        return self.end_time_of_subscription(subscription) <= now

    def seconds_overdue_for_charge(self, subscription: Subscription, now: datetime) -> float:
        if not self.is_overdue_for_charge(subscription, now):
            return 0
        return (now - self.end_time_of_subscription(subscription)).total_seconds()

    def termination_deadline(
        self,
        subscription: Subscription,
        now: datetime,
        grace: timedelta,
    ) -> datetime:
        """When an unpaid subscription is failed: paid-through time plus ``grace``.

        Never earlier than one minute from ``now``.
        """
        paid_until = self.end_time_of_last_paid_period(subscription) or now
        return max(paid_until + grace, now + timedelta(minutes=1))

    def prorated_discount_price_cents(self, subscription: Subscription, now: datetime) -> int:
        """Credit for the unused part of the current paid period."""
        last_charge = self.last_successful_charge(subscription)
        if last_charge is None:
            return 0
        period_start = _charged_at(last_charge)
        period_end = add_period(period_start, self.recurrence(subscription))
        return self.dates.prorate_remaining(
            self.current_subscription_price_cents(subscription),
            period_start,
            period_end,
            now,
        )

