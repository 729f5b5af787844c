"""Charge processor abstraction layer.

Only the operations the billing core needs are modelled: authorize and
capture card charges, set up cards for future off-session charges, cancel
abandoned intents, refund, and retrieve intent state idempotently by id.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any

from chargeflow.core.config import settings
from chargeflow.models.purchase import IntentType


class ChargeOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    AUTHORIZED = "authorized"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    DECLINED = "declined"
    PROCESSING_ERROR = "processing_error"


class IntentStatus(str, Enum):
    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


class CancelOutcome(str, Enum):
    CANCELED = "canceled"
    ALREADY_CANCELED = "already_canceled"
    ALREADY_SUCCEEDED = "already_succeeded"


@dataclass
class ChargeResult:
    """Result of an authorize, capture or setup call."""

    outcome: ChargeOutcome
    intent_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None

    @property
    def needs_confirmation(self) -> bool:
        return self.outcome in (ChargeOutcome.REQUIRES_ACTION, ChargeOutcome.PROCESSING)


@dataclass
class IntentState:
    intent_id: str
    intent_type: IntentType
    status: IntentStatus
    error_code: str | None = None


@dataclass
class RefundResult:
    refund_id: str
    status: str
    amount_cents: int | None = None


@dataclass
class WebhookResult:
    """Result of parsing a processor callback."""

    event_type: str
    intent_id: str | None = None
    intent_type: IntentType | None = None
    status: IntentStatus | None = None
    error_code: str | None = None
    metadata: dict[str, Any] | None = None


class ChargeProcessorError(Exception):
    """An unexpected processor failure that callers should not absorb."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class ChargeProcessorBase(ABC):
    """Abstract base class for charge processors."""

    @property
    @abstractmethod
    def processor_name(self) -> str:
        """Return the processor identifier."""
        pass  # pragma: no cover

    @abstractmethod
    def authorize(
        self,
        payment_method_id: str,
        amount_cents: int,
        currency: str,
        reference: str,
        off_session: bool = True,
    ) -> ChargeResult:
        """Create and confirm a payment intent held for capture."""
        pass  # pragma: no cover

    @abstractmethod
    def capture(self, intent_id: str) -> ChargeResult:
        """Capture a previously authorized payment intent."""
        pass  # pragma: no cover

    @abstractmethod
    def setup(
        self,
        payment_method_id: str,
        reference: str,
        off_session: bool = False,
    ) -> ChargeResult:
        """Save a card for future off-session charges via a setup intent."""
        pass  # pragma: no cover

    @abstractmethod
    def cancel_intent(self, intent_id: str, intent_type: IntentType) -> CancelOutcome:
        """Cancel an open intent.

        Returns ``ALREADY_CANCELED`` or ``ALREADY_SUCCEEDED`` when the intent
        reached a terminal state first; raises ``ChargeProcessorError`` for
        anything else.
        """
        pass  # pragma: no cover

    @abstractmethod
    def retrieve(self, intent_id: str, intent_type: IntentType) -> IntentState:
        pass  # pragma: no cover

    @abstractmethod
    def refund(self, intent_id: str, amount_cents: int | None = None) -> RefundResult:
        pass  # pragma: no cover

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        pass  # pragma: no cover

    @abstractmethod
    def parse_webhook(self, payload: dict[str, Any]) -> WebhookResult:
        pass  # pragma: no cover

    def charge(
        self,
        payment_method_id: str,
        amount_cents: int,
        currency: str,
        reference: str,
        off_session: bool = True,
    ) -> ChargeResult:
        """Authorize and, when the authorization holds, capture in one go."""
        result = self.authorize(
            payment_method_id, amount_cents, currency, reference, off_session=off_session
        )
        if result.outcome != ChargeOutcome.AUTHORIZED or result.intent_id is None:
            return result
        captured = self.capture(result.intent_id)
        if captured.intent_id is None:
            captured.intent_id = result.intent_id
        return captured


def get_charge_processor(name: str | None = None) -> ChargeProcessorBase:
    """Factory function to get the configured charge processor."""
    from chargeflow.services.charge_processors.stripe import StripeChargeProcessor

    processors: dict[str, type[ChargeProcessorBase]] = {
        "stripe": StripeChargeProcessor,
    }

    processor_class = processors.get(name or settings.CHARGE_PROCESSOR)
    if not processor_class:
        raise ValueError(f"Unsupported charge processor: {name or settings.CHARGE_PROCESSOR}")

    return processor_class()
