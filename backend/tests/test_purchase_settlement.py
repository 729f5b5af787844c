"""Tests for settling purchases from processor webhooks and the stuck purchase sync."""

import logging
from datetime import UTC, datetime, timedelta

import pytest

from chargeflow.models.preorder import Preorder, PreorderState
from chargeflow.models.purchase import IntentType, Purchase, PurchaseKind, PurchaseState
from chargeflow.models.subscription import Subscription
from chargeflow.services.charge_processor import (
    ChargeOutcome,
    ChargeProcessorError,
    ChargeResult,
    IntentState,
    IntentStatus,
    RefundResult,
    WebhookResult,
)
from chargeflow.services.purchase_settlement import (
    PurchaseSettlementService,
    SettlementOutcome,
)

T0 = datetime(2026, 9, 19, 12, 0, tzinfo=UTC)


@pytest.fixture
def service(db_session, processor, scheduler):
    return PurchaseSettlementService(db_session, processor, scheduler)


@pytest.fixture
def pending_charge(make_subscription, add_purchase, now):
    sub = make_subscription(T0)
    return add_purchase(
        sub,
        now - timedelta(minutes=10),
        state=PurchaseState.IN_PROGRESS,
        processor_payment_intent_id="pi_pending",
    )


@pytest.fixture
def make_preorder_purchase(db_session, product, now):
    def _make(kind, preorder_state, intent_id):
        preorder = Preorder(
            product_id=product.id,
            email="fan@example.com",
            state=preorder_state.value,
            payment_method_id="pm_card_visa",
        )
        db_session.add(preorder)
        db_session.flush()
        if kind == PurchaseKind.PREORDER_CHARGE:
            db_session.add(
                Purchase(
                    kind=PurchaseKind.PREORDER_AUTHORIZATION.value,
                    purchase_state=PurchaseState.PREORDER_AUTHORIZATION_SUCCESSFUL.value,
                    product_id=product.id,
                    preorder_id=preorder.id,
                    created_at=now - timedelta(days=30),
                )
            )
        intent_field = (
            "processor_setup_intent_id"
            if kind == PurchaseKind.PREORDER_AUTHORIZATION
            else "processor_payment_intent_id"
        )
        purchase = Purchase(
            kind=kind.value,
            purchase_state=PurchaseState.IN_PROGRESS.value,
            product_id=product.id,
            preorder_id=preorder.id,
            price_cents=1500,
            created_at=now - timedelta(minutes=5),
            **{intent_field: intent_id},
        )
        db_session.add(purchase)
        db_session.commit()
        return preorder.id, purchase.id

    return _make


def _reload(db, model, record_id):
    return db.query(model).filter(model.id == record_id).one()


class TestSettleWebhook:
    def test_event_without_intent_is_ignored(self, service, now):
        event = WebhookResult(event_type="customer.created")
        assert service.settle_webhook(event, now) == SettlementOutcome.IGNORED

    def test_unknown_intent(self, service, now, caplog):
        event = WebhookResult(
            event_type="payment_intent.succeeded", intent_id="pi_unknown", status=IntentStatus.SUCCEEDED
        )
        with caplog.at_level(logging.WARNING, logger="chargeflow.services.purchase_settlement"):
            assert service.settle_webhook(event, now) == SettlementOutcome.NOT_FOUND
        assert "pi_unknown" in caplog.text

    def test_succeeded_marks_purchase_successful(self, db_session, service, pending_charge, now):
        purchase_id = pending_charge.id
        event = WebhookResult(
            event_type="payment_intent.succeeded", intent_id="pi_pending", status=IntentStatus.SUCCEEDED
        )

        assert service.settle_webhook(event, now) == SettlementOutcome.SUCCEEDED

        purchase = _reload(db_session, Purchase, purchase_id)
        assert purchase.purchase_state == PurchaseState.SUCCESSFUL.value
        assert purchase.succeeded_at is not None

    def test_redelivered_event_is_a_no_op(self, service, pending_charge, now):
        event = WebhookResult(
            event_type="payment_intent.succeeded", intent_id="pi_pending", status=IntentStatus.SUCCEEDED
        )
        service.settle_webhook(event, now)
        assert service.settle_webhook(event, now) == SettlementOutcome.ALREADY_SETTLED

    def test_failed_recurring_charge_starts_dunning(self, db_session, service, scheduler, pending_charge, now):
        purchase_id = pending_charge.id
        event = WebhookResult(
            event_type="payment_intent.payment_failed",
            intent_id="pi_pending",
            status=IntentStatus.REQUIRES_PAYMENT_METHOD,
            error_code="card_declined_insufficient_funds",
        )

        assert service.settle_webhook(event, now) == SettlementOutcome.FAILED

        purchase = _reload(db_session, Purchase, purchase_id)
        assert purchase.purchase_state == PurchaseState.FAILED.value
        assert purchase.error_code == "card_declined_insufficient_funds"
        assert len(scheduler.jobs_for("unsubscribe_and_fail_task")) == 1
        assert len(scheduler.jobs_for("charge_declined_reminder_task")) == 1

    def test_processing_status_leaves_purchase_in_progress(self, db_session, service, pending_charge, now):
        purchase_id = pending_charge.id
        event = WebhookResult(
            event_type="payment_intent.processing", intent_id="pi_pending", status=IntentStatus.PROCESSING
        )

        assert service.settle_webhook(event, now) == SettlementOutcome.UNCHANGED
        assert _reload(db_session, Purchase, purchase_id).purchase_state == PurchaseState.IN_PROGRESS.value


class TestRequiresCapture:
    def test_captures_authorized_intent(self, service, processor, pending_charge, now):
        processor.capture.return_value = ChargeResult(outcome=ChargeOutcome.SUCCEEDED, intent_id="pi_pending")

        outcome = service.settle_from_intent("pi_pending", IntentStatus.REQUIRES_CAPTURE, now)

        assert outcome == SettlementOutcome.SUCCEEDED
        processor.capture.assert_called_once_with("pi_pending")

    def test_declined_capture_fails_purchase(self, db_session, service, processor, pending_charge, now):
        purchase_id = pending_charge.id
        processor.capture.return_value = ChargeResult(
            outcome=ChargeOutcome.DECLINED, intent_id="pi_pending", error_code="card_declined"
        )

        assert service.settle_from_intent("pi_pending", IntentStatus.REQUIRES_CAPTURE, now) == SettlementOutcome.FAILED
        assert _reload(db_session, Purchase, purchase_id).error_code == "card_declined"

    def test_capture_still_processing(self, service, processor, pending_charge, now):
        processor.capture.return_value = ChargeResult(outcome=ChargeOutcome.PROCESSING, intent_id="pi_pending")
        assert service.settle_from_intent("pi_pending", IntentStatus.REQUIRES_CAPTURE, now) == SettlementOutcome.UNCHANGED


class TestDuplicateCharges:
    def test_late_charge_is_refunded_when_period_already_paid(
        self, db_session, service, processor, make_subscription, add_purchase, now
    ):
        sub = make_subscription(T0)
        late = add_purchase(
            sub,
            now - timedelta(hours=5),
            state=PurchaseState.IN_PROGRESS,
            processor_payment_intent_id="pi_late",
        )
        add_purchase(sub, now - timedelta(hours=1), processor_payment_intent_id="pi_paid")
        late_id = late.id
        processor.refund.return_value = RefundResult(refund_id="re_1", status="succeeded")

        assert service.settle_from_intent("pi_late", IntentStatus.SUCCEEDED, now) == SettlementOutcome.SUCCEEDED

        processor.refund.assert_called_once_with("pi_late")
        assert _reload(db_session, Purchase, late_id).refunded_at is not None

    def test_only_charge_is_not_refunded(self, service, processor, pending_charge, now):
        service.settle_from_intent("pi_pending", IntentStatus.SUCCEEDED, now)
        processor.refund.assert_not_called()


class TestMembershipPurchases:
    def test_restart_confirmed_by_webhook(self, db_session, service, make_subscription, add_purchase, now):
        sub = make_subscription(
            T0 - timedelta(days=60),
            failed_at=T0,
            deactivated_at=T0,
            is_resubscription_pending_confirmation=True,
        )
        sub_id = sub.id
        add_purchase(
            sub,
            now - timedelta(minutes=5),
            state=PurchaseState.IN_PROGRESS,
            kind=PurchaseKind.MEMBERSHIP_RESTART,
            processor_payment_intent_id="pi_restart",
        )

        assert service.settle_from_intent("pi_restart", IntentStatus.SUCCEEDED, now) == SettlementOutcome.SUCCEEDED

        restored = _reload(db_session, Subscription, sub_id)
        assert restored.failed_at is None
        assert restored.deactivated_at is None
        assert restored.is_resubscription_pending_confirmation is False

    def test_failed_restart_rolls_back(self, db_session, service, scheduler, make_subscription, add_purchase, now):
        sub = make_subscription(
            T0, cancelled_at=now - timedelta(days=1), is_resubscription_pending_confirmation=True
        )
        sub_id = sub.id
        add_purchase(
            sub,
            now - timedelta(minutes=5),
            state=PurchaseState.IN_PROGRESS,
            kind=PurchaseKind.MEMBERSHIP_RESTART,
            processor_payment_intent_id="pi_restart",
        )

        assert service.settle_from_intent("pi_restart", IntentStatus.CANCELED, now) == SettlementOutcome.FAILED

        stored = _reload(db_session, Subscription, sub_id)
        assert stored.is_resubscription_pending_confirmation is False
        assert stored.deactivated_at is not None
        assert [job.args[0] for job in scheduler.jobs_for("deliver_notification_task")] == [
            "membership_update_failed"
        ]


class TestPreorderPurchases:
    def test_authorization_succeeded(self, db_session, service, make_preorder_purchase, now):
        preorder_id, purchase_id = make_preorder_purchase(
            PurchaseKind.PREORDER_AUTHORIZATION, PreorderState.IN_PROGRESS, "seti_1"
        )

        assert service.settle_from_intent("seti_1", IntentStatus.SUCCEEDED, now) == SettlementOutcome.SUCCEEDED

        assert _reload(db_session, Preorder, preorder_id).state == PreorderState.AUTHORIZATION_SUCCESSFUL.value
        assert (
            _reload(db_session, Purchase, purchase_id).purchase_state
            == PurchaseState.PREORDER_AUTHORIZATION_SUCCESSFUL.value
        )

    def test_authorization_failed(self, db_session, service, make_preorder_purchase, now):
        preorder_id, _ = make_preorder_purchase(
            PurchaseKind.PREORDER_AUTHORIZATION, PreorderState.IN_PROGRESS, "seti_2"
        )

        assert service.settle_from_intent("seti_2", IntentStatus.CANCELED, now) == SettlementOutcome.FAILED
        assert _reload(db_session, Preorder, preorder_id).state == PreorderState.AUTHORIZATION_FAILED.value

    def test_charge_succeeded(self, db_session, service, make_preorder_purchase, now):
        preorder_id, _ = make_preorder_purchase(
            PurchaseKind.PREORDER_CHARGE, PreorderState.AUTHORIZATION_SUCCESSFUL, "pi_pre"
        )

        assert service.settle_from_intent("pi_pre", IntentStatus.SUCCEEDED, now) == SettlementOutcome.SUCCEEDED
        assert _reload(db_session, Preorder, preorder_id).state == PreorderState.CHARGE_SUCCESSFUL.value

    def test_charge_declined_schedules_cancellation(self, db_session, service, scheduler, make_preorder_purchase, now):
        preorder_id, _ = make_preorder_purchase(
            PurchaseKind.PREORDER_CHARGE, PreorderState.AUTHORIZATION_SUCCESSFUL, "pi_pre"
        )

        assert (
            service.settle_from_intent("pi_pre", IntentStatus.REQUIRES_PAYMENT_METHOD, now)
            == SettlementOutcome.FAILED
        )
        assert _reload(db_session, Preorder, preorder_id).state == PreorderState.AUTHORIZATION_SUCCESSFUL.value
        assert [job.run_at for job in scheduler.jobs_for("cancel_preorder_task")] == [now + timedelta(days=14)]


class TestSyncStuckPurchases:
    def test_settles_purchases_in_the_window(
        self, db_session, service, processor, make_subscription, add_purchase, now, caplog
    ):
        sub = make_subscription(T0)
        succeeded = add_purchase(
            sub, now - timedelta(hours=6), state=PurchaseState.IN_PROGRESS, processor_payment_intent_id="pi_a"
        )
        add_purchase(
            sub, now - timedelta(hours=5), state=PurchaseState.IN_PROGRESS, processor_payment_intent_id="pi_b"
        )
        add_purchase(sub, now - timedelta(hours=4, minutes=30), state=PurchaseState.IN_PROGRESS)
        add_purchase(
            sub, now - timedelta(hours=1), state=PurchaseState.IN_PROGRESS, processor_payment_intent_id="pi_new"
        )
        add_purchase(
            sub, now - timedelta(days=4), state=PurchaseState.IN_PROGRESS, processor_payment_intent_id="pi_old"
        )
        succeeded_id = succeeded.id
        processor.retrieve.side_effect = [
            IntentState("pi_a", IntentType.PAYMENT_INTENT, IntentStatus.SUCCEEDED),
            ChargeProcessorError("timeout"),
        ]

        with caplog.at_level(logging.INFO, logger="chargeflow.services.purchase_settlement"):
            settled = service.sync_stuck_purchases(now)

        assert settled == 1
        assert [c.args[0] for c in processor.retrieve.call_args_list] == ["pi_a", "pi_b"]
        assert _reload(db_session, Purchase, succeeded_id).purchase_state == PurchaseState.SUCCESSFUL.value
        assert "has no processor intent" in caplog.text
        assert "Could not sync stuck purchase" in caplog.text
        assert "Synced 1 of 3 stuck purchases" in caplog.text

    def test_nothing_stuck(self, service, processor, now):
        assert service.sync_stuck_purchases(now) == 0
        processor.retrieve.assert_not_called()
