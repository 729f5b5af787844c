"""Stripe implementation of the charge processor contract."""

import logging
from typing import Any

from chargeflow.core.config import settings
from chargeflow.models.purchase import IntentType, PurchaseErrorCode
from chargeflow.services.charge_processor import (
    CancelOutcome,
    ChargeOutcome,
    ChargeProcessorBase,
    ChargeProcessorError,
    ChargeResult,
    IntentState,
    IntentStatus,
    RefundResult,
    WebhookResult,
)

logger = logging.getLogger(__name__)

_INTENT_OUTCOMES: dict[str, ChargeOutcome] = {
    "succeeded": ChargeOutcome.SUCCEEDED,
    "requires_capture": ChargeOutcome.AUTHORIZED,
    "requires_action": ChargeOutcome.REQUIRES_ACTION,
    "requires_confirmation": ChargeOutcome.REQUIRES_ACTION,
    "processing": ChargeOutcome.PROCESSING,
    "requires_payment_method": ChargeOutcome.DECLINED,
}

_WEBHOOK_STATUSES: dict[str, tuple[IntentType, IntentStatus]] = {
    "payment_intent.succeeded": (IntentType.PAYMENT_INTENT, IntentStatus.SUCCEEDED),
    "payment_intent.amount_capturable_updated": (
        IntentType.PAYMENT_INTENT,
        IntentStatus.REQUIRES_CAPTURE,
    ),
    "payment_intent.payment_failed": (
        IntentType.PAYMENT_INTENT,
        IntentStatus.REQUIRES_PAYMENT_METHOD,
    ),
    "payment_intent.canceled": (IntentType.PAYMENT_INTENT, IntentStatus.CANCELED),
    "payment_intent.processing": (IntentType.PAYMENT_INTENT, IntentStatus.PROCESSING),
    "payment_intent.requires_action": (IntentType.PAYMENT_INTENT, IntentStatus.REQUIRES_ACTION),
    "setup_intent.succeeded": (IntentType.SETUP_INTENT, IntentStatus.SUCCEEDED),
    "setup_intent.setup_failed": (IntentType.SETUP_INTENT, IntentStatus.REQUIRES_PAYMENT_METHOD),
    "setup_intent.canceled": (IntentType.SETUP_INTENT, IntentStatus.CANCELED),
    "setup_intent.requires_action": (IntentType.SETUP_INTENT, IntentStatus.REQUIRES_ACTION),
}


def _decline_code(error: Any) -> str:
    code = getattr(error, "code", None)
    decline_code = getattr(error, "decline_code", None)
    if decline_code == "insufficient_funds":
        return PurchaseErrorCode.CARD_DECLINED_INSUFFICIENT_FUNDS.value
    if code == PurchaseErrorCode.PROCESSING_ERROR.value:
        return PurchaseErrorCode.PROCESSING_ERROR.value
    return str(code or PurchaseErrorCode.CARD_DECLINED.value)


class StripeChargeProcessor(ChargeProcessorBase):
    """Stripe payment and setup intents."""

    def __init__(self, api_key: str | None = None, webhook_secret: str | None = None):
        self.api_key = api_key or settings.stripe_api_key
        self.webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self._stripe: Any = None

    @property
    def stripe(self) -> Any:
        """Lazy-load stripe module."""
        if self._stripe is None:
            import stripe

            stripe.api_key = self.api_key
            self._stripe = stripe
        return self._stripe

    @property
    def processor_name(self) -> str:
        return "stripe"

    def _intent_api(self, intent_type: IntentType) -> Any:
        if intent_type == IntentType.SETUP_INTENT:
            return self.stripe.SetupIntent
        return self.stripe.PaymentIntent

    def _result_from_intent(self, intent: Any) -> ChargeResult:
        outcome = _INTENT_OUTCOMES.get(intent.status)
        if outcome is None:
            raise ChargeProcessorError(f"Unexpected intent status {intent.status} for {intent.id}")
        error_code = None
        if outcome == ChargeOutcome.DECLINED:
            last_error = getattr(intent, "last_payment_error", None) or getattr(
                intent, "last_setup_error", None
            )
            error_code = _decline_code(last_error) if last_error else PurchaseErrorCode.CARD_DECLINED.value
        return ChargeResult(outcome=outcome, intent_id=intent.id, error_code=error_code)

    def _result_from_error(self, error: Exception, intent_id: str | None = None) -> ChargeResult:
        """Translate expected Stripe errors into outcomes; re-raise the rest."""
        stripe = self.stripe
        if isinstance(error, stripe.CardError):
            error_intent = getattr(getattr(error, "error", None), "payment_intent", None)
            error_intent_id = getattr(error_intent, "id", None) or intent_id
            if error.code == "authentication_required":
                return ChargeResult(
                    outcome=ChargeOutcome.REQUIRES_ACTION,
                    intent_id=error_intent_id,
                    error_message=error.user_message,
                )
            code = _decline_code(error)
            outcome = (
                ChargeOutcome.PROCESSING_ERROR
                if code == PurchaseErrorCode.PROCESSING_ERROR.value
                else ChargeOutcome.DECLINED
            )
            return ChargeResult(
                outcome=outcome,
                intent_id=error_intent_id,
                error_code=code,
                error_message=error.user_message,
            )
        if isinstance(error, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)):
            logger.warning("Stripe unavailable: %s", error)
            return ChargeResult(
                outcome=ChargeOutcome.PROCESSING_ERROR,
                intent_id=intent_id,
                error_code=PurchaseErrorCode.PROCESSOR_UNAVAILABLE.value,
                error_message=str(error),
            )
        raise ChargeProcessorError(str(error), code=getattr(error, "code", None)) from error

    def authorize(
        self,
        payment_method_id: str,
        amount_cents: int,
        currency: str,
        reference: str,
        off_session: bool = True,
    ) -> ChargeResult:
        params: dict[str, Any] = {
            "amount": amount_cents,
            "currency": currency.lower(),
            "payment_method": payment_method_id,
            "payment_method_types": ["card"],
            "capture_method": "manual",
            "confirm": True,
            "metadata": {"reference": reference},
        }
        if off_session:
            params["off_session"] = True
        try:
            intent = self.stripe.PaymentIntent.create(
                **params, idempotency_key=f"{reference}-authorize"
            )
        except self.stripe.StripeError as e:
            return self._result_from_error(e)
        return self._result_from_intent(intent)

    def capture(self, intent_id: str) -> ChargeResult:
        try:
            intent = self.stripe.PaymentIntent.capture(
                intent_id, idempotency_key=f"{intent_id}-capture"
            )
        except self.stripe.StripeError as e:
            return self._result_from_error(e, intent_id=intent_id)
        return self._result_from_intent(intent)

    def setup(
        self,
        payment_method_id: str,
        reference: str,
        off_session: bool = False,
    ) -> ChargeResult:
        try:
            intent = self.stripe.SetupIntent.create(
                payment_method=payment_method_id,
                payment_method_types=["card"],
                usage="off_session",
                confirm=True,
                metadata={"reference": reference},
                idempotency_key=f"{reference}-setup",
            )
        except self.stripe.StripeError as e:
            return self._result_from_error(e)
        return self._result_from_intent(intent)

    def cancel_intent(self, intent_id: str, intent_type: IntentType) -> CancelOutcome:
        try:
            self._intent_api(intent_type).cancel(intent_id)
            return CancelOutcome.CANCELED
        except self.stripe.StripeError as e:
            # Cancel fails once the intent is terminal; the intent's own status
            # tells which terminal state won.
            state = self.retrieve(intent_id, intent_type)
            if state.status == IntentStatus.CANCELED:
                return CancelOutcome.ALREADY_CANCELED
            if state.status == IntentStatus.SUCCEEDED:
                return CancelOutcome.ALREADY_SUCCEEDED
            raise ChargeProcessorError(str(e), code=getattr(e, "code", None)) from e

    def retrieve(self, intent_id: str, intent_type: IntentType) -> IntentState:
        try:
            intent = self._intent_api(intent_type).retrieve(intent_id)
        except self.stripe.StripeError as e:
            raise ChargeProcessorError(str(e), code=getattr(e, "code", None)) from e
        error_code = None
        last_error = getattr(intent, "last_payment_error", None) or getattr(
            intent, "last_setup_error", None
        )
        if last_error:
            error_code = _decline_code(last_error)
        return IntentState(
            intent_id=intent.id,
            intent_type=intent_type,
            status=IntentStatus(intent.status),
            error_code=error_code,
        )

    def refund(self, intent_id: str, amount_cents: int | None = None) -> RefundResult:
        params: dict[str, Any] = {"payment_intent": intent_id}
        if amount_cents is not None:
            params["amount"] = amount_cents
        try:
            refund = self.stripe.Refund.create(**params, idempotency_key=f"{intent_id}-refund")
        except self.stripe.StripeError as e:
            raise ChargeProcessorError(str(e), code=getattr(e, "code", None)) from e
        return RefundResult(refund_id=refund.id, status=refund.status, amount_cents=refund.amount)

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify Stripe webhook signature."""
        if not self.webhook_secret:
            return False
        try:
            self.stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
            return True
        except (ValueError, self.stripe.SignatureVerificationError):
            return False

    def parse_webhook(self, payload: dict[str, Any]) -> WebhookResult:
        """Parse Stripe webhook payload."""
        event_type = payload.get("type", "")
        data_object = payload.get("data", {}).get("object", {})

        result = WebhookResult(
            event_type=event_type,
            metadata=data_object.get("metadata"),
        )

        mapped = _WEBHOOK_STATUSES.get(event_type)
        if mapped is None:
            return result

        result.intent_id = data_object.get("id")
        result.intent_type, result.status = mapped
        last_error = data_object.get("last_payment_error") or data_object.get("last_setup_error")
        if last_error:
            if last_error.get("decline_code") == "insufficient_funds":
                result.error_code = PurchaseErrorCode.CARD_DECLINED_INSUFFICIENT_FUNDS.value
            else:
                result.error_code = last_error.get("code") or PurchaseErrorCode.CARD_DECLINED.value
        return result
