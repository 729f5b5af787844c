"""Decide whether a subscription should be charged right now."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

from chargeflow.models.subscription import Subscription
from chargeflow.services.subscription_ledger import SubscriptionLedger


class ChargeDecision(str, Enum):
    DUE = "due"
    NOT_DUE = "not_due"
    BLOCKED = "blocked"
    TERMINAL = "terminal"


class EligibilityReason(str, Enum):
    PERIOD_ELAPSED = "period_elapsed"
    TEST_SUBSCRIPTION = "test_subscription"
    FREE_SUBSCRIPTION = "free_subscription"
    IN_FREE_TRIAL = "in_free_trial"
    CHARGED_THIS_PERIOD = "charged_this_period"
    CHARGE_IN_PROGRESS = "charge_in_progress"
    SELLER_SUSPENDED = "seller_suspended"
    NOT_ALIVE = "not_alive"
    CHARGES_COMPLETED = "charges_completed"


@dataclass(frozen=True)
class ChargeEligibility:
    decision: ChargeDecision
    reason: EligibilityReason

    @property
    def is_due(self) -> bool:
        return self.decision == ChargeDecision.DUE


def _result(decision: ChargeDecision, reason: EligibilityReason) -> ChargeEligibility:
    return ChargeEligibility(decision=decision, reason=reason)


def evaluate_charge_eligibility(
    ledger: SubscriptionLedger,
    subscription: Subscription,
    now: datetime,
) -> ChargeEligibility:
    """Classify a subscription as due, not due, blocked or terminal at ``now``.

    Pending cancellations are not charged even though the subscription is
    still alive until its cancellation date. A price discounted to zero by an
    offer code that has run its course is charged at the undiscounted price.
    """
    seller = ledger.seller(subscription)
    if seller is not None and seller.suspended_for_fraud:
        return _result(ChargeDecision.BLOCKED, EligibilityReason.SELLER_SUSPENDED)
    if not ledger.is_alive(subscription, now, include_pending_cancellation=False):
        return _result(ChargeDecision.TERMINAL, EligibilityReason.NOT_ALIVE)
    if subscription.is_test_subscription:
        return _result(ChargeDecision.NOT_DUE, EligibilityReason.TEST_SUBSCRIPTION)
    if ledger.charges_completed(subscription):
        return _result(ChargeDecision.TERMINAL, EligibilityReason.CHARGES_COMPLETED)
    if ledger.current_subscription_price_cents(subscription) == 0:
        return _result(ChargeDecision.NOT_DUE, EligibilityReason.FREE_SUBSCRIPTION)
    if ledger.in_free_trial(subscription, now):
        return _result(ChargeDecision.NOT_DUE, EligibilityReason.IN_FREE_TRIAL)
    if ledger.has_charge_in_progress(subscription):
        return _result(ChargeDecision.BLOCKED, EligibilityReason.CHARGE_IN_PROGRESS)
    if not ledger.is_overdue_for_charge(subscription, now):
        return _result(ChargeDecision.NOT_DUE, EligibilityReason.CHARGED_THIS_PERIOD)
    return _result(ChargeDecision.DUE, EligibilityReason.PERIOD_ELAPSED)
