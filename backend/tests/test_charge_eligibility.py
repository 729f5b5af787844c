"""Tests for the subscription ledger predicates and charge eligibility."""

from datetime import UTC, datetime, timedelta

import pytest

from chargeflow.models.purchase import PurchaseKind, PurchaseState
from chargeflow.services.charge_eligibility import (
    ChargeDecision,
    EligibilityReason,
    evaluate_charge_eligibility,
)
from chargeflow.services.subscription_ledger import SubscriptionLedger

# One month before the shared test clock (2026-10-19 12:00 UTC)
T0 = datetime(2026, 9, 19, 12, 0, tzinfo=UTC)


@pytest.fixture
def ledger(db_session):
    return SubscriptionLedger(db_session)


class TestSubscriptionLedger:
    def test_end_time_follows_calendar_months(self, ledger, make_subscription):
        sub = make_subscription(datetime(2026, 1, 30, 9, 0, tzinfo=UTC))
        assert ledger.end_time_of_subscription(sub) == datetime(2026, 2, 28, 9, 0, tzinfo=UTC)

    def test_end_time_uses_latest_successful_charge(self, ledger, make_subscription, add_purchase, now):
        sub = make_subscription(T0 - timedelta(days=31))
        add_purchase(sub, T0)
        assert ledger.end_time_of_subscription(sub) == now

    def test_failed_charge_does_not_extend_period(self, ledger, make_subscription, add_purchase, now):
        sub = make_subscription(T0)
        add_purchase(sub, now, state=PurchaseState.FAILED)
        assert ledger.end_time_of_subscription(sub) == now

    def test_refunded_charge_does_not_count(self, ledger, make_subscription, add_purchase, now):
        sub = make_subscription(T0)
        add_purchase(sub, now, refunded_at=now)
        assert ledger.last_successful_charge(sub).kind == PurchaseKind.CLASSIC.value

    def test_free_trial_end_is_end_of_subscription(self, ledger, make_subscription, now):
        trial_end = now + timedelta(days=3)
        sub = make_subscription(
            now - timedelta(days=4),
            original_state=PurchaseState.NOT_CHARGED,
            free_trial_ends_at=trial_end,
        )
        assert ledger.end_time_of_subscription(sub) == trial_end
        assert ledger.in_free_trial(sub, now)

    def test_is_alive_with_pending_cancellation(self, ledger, make_subscription, now):
        sub = make_subscription(T0, cancelled_at=now + timedelta(days=1))
        assert ledger.is_alive(sub, now)
        assert not ledger.is_alive(sub, now, include_pending_cancellation=False)

    def test_not_alive_after_cancellation_date(self, ledger, make_subscription, now):
        sub = make_subscription(T0, cancelled_at=now - timedelta(minutes=1))
        assert not ledger.is_alive(sub, now)

    def test_not_alive_when_deactivated(self, ledger, make_subscription, now):
        sub = make_subscription(T0, deactivated_at=now)
        assert not ledger.is_alive(sub, now)

    def test_seconds_overdue(self, ledger, make_subscription, now):
        sub = make_subscription(T0)
        assert ledger.seconds_overdue_for_charge(sub, now - timedelta(hours=1)) == 0
        assert ledger.seconds_overdue_for_charge(sub, now + timedelta(hours=2)) == 7200

    def test_termination_deadline(self, ledger, make_subscription, now):
        sub = make_subscription(T0)
        assert ledger.termination_deadline(sub, now, timedelta(days=5)) == now + timedelta(days=5)

    def test_termination_deadline_at_least_a_minute_away(self, ledger, make_subscription, now):
        sub = make_subscription(T0)
        later = now + timedelta(days=30)
        assert ledger.termination_deadline(sub, later, timedelta(days=5)) == later + timedelta(minutes=1)

    def test_last_purchase_skips_uncharged_originals(self, ledger, make_subscription, add_purchase, now):
        sub = make_subscription(T0)
        failed = add_purchase(sub, now, state=PurchaseState.FAILED)
        add_purchase(
            sub,
            now + timedelta(seconds=1),
            state=PurchaseState.NOT_CHARGED,
            kind=PurchaseKind.CLASSIC,
            is_original_subscription_purchase=True,
        )
        assert ledger.last_purchase(sub).id == failed.id

    def test_discount_with_limited_duration(self, ledger, make_subscription, make_offer_code, add_purchase, now):
        code = make_offer_code(amount_percentage=50, duration_in_billing_cycles=2)
        sub = make_subscription(T0, price_cents=500, before_offer_cents=1000, offer_code=code)
        assert ledger.discount_applies_to_next_charge(sub)
        assert ledger.current_subscription_price_cents(sub) == 500

        add_purchase(sub, now, price_cents=500)
        assert not ledger.discount_applies_to_next_charge(sub)
        assert ledger.current_subscription_price_cents(sub) == 1000

    def test_prorated_discount(self, ledger, make_subscription, now):
        # Period 2026-10-04 to 2026-11-04 is 31 days; 16 remain
        sub = make_subscription(now - timedelta(days=15))
        assert ledger.prorated_discount_price_cents(sub, now) == 516

    def test_charges_completed(self, ledger, make_subscription, add_purchase, now):
        sub = make_subscription(T0, charge_occurrence_count=2)
        assert not ledger.charges_completed(sub)
        add_purchase(sub, now)
        assert ledger.charges_completed(sub)


class TestEvaluateChargeEligibility:
    def test_due_exactly_at_period_end(self, ledger, make_subscription, now):
        sub = make_subscription(T0)
        result = evaluate_charge_eligibility(ledger, sub, now)
        assert result.is_due
        assert result.reason == EligibilityReason.PERIOD_ELAPSED

    def test_not_due_a_day_before_period_end(self, ledger, make_subscription, now):
        sub = make_subscription(T0)
        result = evaluate_charge_eligibility(ledger, sub, now - timedelta(days=1))
        assert result.decision == ChargeDecision.NOT_DUE
        assert result.reason == EligibilityReason.CHARGED_THIS_PERIOD

    def test_due_long_after_period_end(self, ledger, make_subscription, now):
        sub = make_subscription(T0)
        assert evaluate_charge_eligibility(ledger, sub, now + timedelta(days=365)).is_due

    def test_charge_in_progress_blocks(self, ledger, make_subscription, add_purchase, now):
        sub = make_subscription(T0)
        add_purchase(sub, now - timedelta(minutes=5), state=PurchaseState.IN_PROGRESS)
        for when in (now, now + timedelta(days=60)):
            result = evaluate_charge_eligibility(ledger, sub, when)
            assert result.decision == ChargeDecision.BLOCKED
            assert result.reason == EligibilityReason.CHARGE_IN_PROGRESS

    def test_test_subscription(self, ledger, make_subscription, now):
        sub = make_subscription(T0, is_test_subscription=True)
        assert evaluate_charge_eligibility(ledger, sub, now).reason == EligibilityReason.TEST_SUBSCRIPTION

    def test_pending_cancellation_is_not_charged(self, ledger, make_subscription, now):
        sub = make_subscription(T0, cancelled_at=now + timedelta(days=2))
        result = evaluate_charge_eligibility(ledger, sub, now)
        assert result.decision == ChargeDecision.TERMINAL
        assert result.reason == EligibilityReason.NOT_ALIVE

    def test_failed_subscription(self, ledger, make_subscription, now):
        sub = make_subscription(T0, failed_at=now - timedelta(days=1))
        assert evaluate_charge_eligibility(ledger, sub, now).reason == EligibilityReason.NOT_ALIVE

    def test_seller_suspended_for_fraud(self, db_session, ledger, make_subscription, seller, now):
        seller.suspended_for_fraud = True
        db_session.commit()
        sub = make_subscription(T0)
        result = evaluate_charge_eligibility(ledger, sub, now)
        assert result.decision == ChargeDecision.BLOCKED
        assert result.reason == EligibilityReason.SELLER_SUSPENDED

    def test_fixed_length_subscription_completed(self, ledger, make_subscription, now):
        sub = make_subscription(T0, charge_occurrence_count=1)
        result = evaluate_charge_eligibility(ledger, sub, now)
        assert result.decision == ChargeDecision.TERMINAL
        assert result.reason == EligibilityReason.CHARGES_COMPLETED

    def test_free_subscription(self, ledger, make_subscription, now):
        sub = make_subscription(T0, price_cents=0)
        assert evaluate_charge_eligibility(ledger, sub, now).reason == EligibilityReason.FREE_SUBSCRIPTION

    def test_forever_free_offer_code(self, ledger, make_subscription, make_offer_code, now):
        code = make_offer_code(amount_percentage=100)
        sub = make_subscription(T0, price_cents=0, before_offer_cents=1000, offer_code=code)
        assert evaluate_charge_eligibility(ledger, sub, now).reason == EligibilityReason.FREE_SUBSCRIPTION

    def test_elapsed_free_offer_code_is_due(self, ledger, make_subscription, make_offer_code, now):
        code = make_offer_code(amount_percentage=100, duration_in_billing_cycles=1)
        sub = make_subscription(T0, price_cents=0, before_offer_cents=1000, offer_code=code)
        assert evaluate_charge_eligibility(ledger, sub, now).is_due

    def test_in_free_trial(self, ledger, make_subscription, now):
        sub = make_subscription(
            now - timedelta(days=4),
            original_state=PurchaseState.NOT_CHARGED,
            free_trial_ends_at=now + timedelta(days=3),
        )
        assert evaluate_charge_eligibility(ledger, sub, now).reason == EligibilityReason.IN_FREE_TRIAL

    def test_due_when_free_trial_ended(self, ledger, make_subscription, now):
        sub = make_subscription(
            now - timedelta(days=7),
            original_state=PurchaseState.NOT_CHARGED,
            free_trial_ends_at=now - timedelta(hours=1),
        )
        assert evaluate_charge_eligibility(ledger, sub, now).is_due
