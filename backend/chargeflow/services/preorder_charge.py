"""Preorder authorization, release-time charging with bounded retries, and cancellation."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from uuid import UUID

from sqlalchemy.orm import Session

from chargeflow.core.config import settings
from chargeflow.models.preorder import Preorder, PreorderState
from chargeflow.models.product import Product
from chargeflow.models.purchase import Purchase, PurchaseErrorCode, PurchaseKind, PurchaseState
from chargeflow.repositories.preorder_repository import PreorderRepository
from chargeflow.repositories.product_repository import ProductRepository
from chargeflow.repositories.purchase_repository import PurchaseRepository
from chargeflow.services.authentication_window import schedule_abandonment_check
from chargeflow.services.charge_processor import ChargeOutcome, ChargeProcessorBase, ChargeResult
from chargeflow.services.job_scheduler import JobScheduler, unit_of_work
from chargeflow.services.notification_service import Notification, NotificationService
from chargeflow.services.purchase_failure import PurchaseFailureService
from chargeflow.services.retry_schedule import RetrySchedule

logger = logging.getLogger(__name__)


class PreorderNotChargeable(Exception):
    """The preorder is in no state to be charged; retrying will not help."""


class PreorderChargeStatus(str, Enum):
    AUTHORIZED = "authorized"
    CHARGED = "charged"
    PENDING_CONFIRMATION = "pending_confirmation"
    RETRY_SCHEDULED = "retry_scheduled"
    RETRIES_EXHAUSTED = "retries_exhausted"
    DECLINED = "declined"


@dataclass
class PreorderChargeResult:
    status: PreorderChargeStatus
    purchase_id: UUID | None = None
    attempt: int = 1
    next_attempt_at: datetime | None = None
    error_code: str | None = None


def authorization_purchase(purchases: list[Purchase]) -> Purchase | None:
    """The preorder's first purchase is always its authorization purchase."""
    for purchase in purchases:
        if purchase.kind == PurchaseKind.PREORDER_AUTHORIZATION.value:
            return purchase
    return None


class PreorderChargeService:
    def __init__(
        self,
        db: Session,
        processor: ChargeProcessorBase,
        scheduler: JobScheduler,
        retry_schedule: RetrySchedule | None = None,
    ):
        self.db = db
        self.processor = processor
        self.scheduler = scheduler
        self.retry_schedule = retry_schedule or RetrySchedule.for_preorder_charges()
        self.preorder_repo = PreorderRepository(db)
        self.product_repo = ProductRepository(db)
        self.purchase_repo = PurchaseRepository(db)
        self.failures = PurchaseFailureService(db, scheduler)
        self.notifications = NotificationService(scheduler)

    def _get_preorder(self, preorder_id: UUID, for_update: bool = False) -> Preorder:
        if for_update:
            preorder = self.preorder_repo.get_for_update(preorder_id)
        else:
            preorder = self.preorder_repo.get_by_id(preorder_id)
        if preorder is None:
            raise ValueError(f"Preorder {preorder_id} not found")
        return preorder

    def _get_product(self, preorder: Preorder) -> Product:
        product = self.product_repo.get_by_id(preorder.product_id)  # type: ignore[arg-type]
        if product is None:
            raise ValueError(f"Product {preorder.product_id} not found")
        return product

    def _authorization_purchase(self, preorder: Preorder) -> Purchase:
        purchase = authorization_purchase(self.purchase_repo.get_for_preorder(preorder.id))  # type: ignore[arg-type]
        if purchase is None:
            raise ValueError(f"Preorder {preorder.id} has no authorization purchase")
        return purchase

    def mark_authorization_successful(self, preorder: Preorder, purchase: Purchase) -> None:
        purchase.transition_to(PurchaseState.PREORDER_AUTHORIZATION_SUCCESSFUL)
        preorder.transition_to(PreorderState.AUTHORIZATION_SUCCESSFUL)
        self.db.flush()

    def mark_authorization_failed(
        self,
        preorder: Preorder,
        purchase: Purchase,
        error_code: str | None = None,
    ) -> None:
        purchase.transition_to(PurchaseState.PREORDER_AUTHORIZATION_FAILED)
        if error_code is not None:
            purchase.error_code = error_code  # type: ignore[assignment]
        preorder.transition_to(PreorderState.AUTHORIZATION_FAILED)
        self.db.flush()

    def mark_charge_successful(self, preorder: Preorder, purchase: Purchase, now: datetime) -> None:
        purchase.transition_to(PurchaseState.SUCCESSFUL)
        purchase.succeeded_at = now  # type: ignore[assignment]
        preorder.transition_to(PreorderState.CHARGE_SUCCESSFUL)
        self._authorization_purchase(preorder).transition_to(
            PurchaseState.PREORDER_CONCLUDED_SUCCESSFULLY
        )
        self.db.flush()
        logger.info("Charged preorder %s with purchase %s", preorder.id, purchase.id)

    def authorize_preorder(self, preorder_id: UUID, now: datetime) -> PreorderChargeResult:
        """Save the buyer's card for the release-time charge."""
        with unit_of_work(self.db, self.scheduler):
            preorder = self._get_preorder(preorder_id, for_update=True)
            purchase = self._authorization_purchase(preorder)
            if purchase.purchase_state != PurchaseState.IN_PROGRESS.value:
                raise ValueError(f"Preorder {preorder_id} authorization already settled")

            if not preorder.payment_method_id:
                result = ChargeResult(
                    outcome=ChargeOutcome.DECLINED,
                    error_code=PurchaseErrorCode.PAYMENT_METHOD_MISSING.value,
                )
            else:
                result = self.processor.setup(
                    str(preorder.payment_method_id), reference=str(purchase.id), off_session=False
                )
            purchase.processor_setup_intent_id = result.intent_id  # type: ignore[assignment]
            purchase_id: UUID = purchase.id  # type: ignore[assignment]

            if result.outcome == ChargeOutcome.SUCCEEDED:
                self.mark_authorization_successful(preorder, purchase)
                return PreorderChargeResult(
                    status=PreorderChargeStatus.AUTHORIZED, purchase_id=purchase_id
                )
            if result.needs_confirmation:
                self.db.flush()
                schedule_abandonment_check(self.scheduler, purchase)
                return PreorderChargeResult(
                    status=PreorderChargeStatus.PENDING_CONFIRMATION, purchase_id=purchase_id
                )

            error_code = result.error_code or PurchaseErrorCode.CARD_DECLINED.value
            self.mark_authorization_failed(preorder, purchase, error_code)
            return PreorderChargeResult(
                status=PreorderChargeStatus.DECLINED,
                purchase_id=purchase_id,
                error_code=error_code,
            )

    def _create_charge_purchase(self, preorder: Preorder, now: datetime) -> Purchase:
        product = self._get_product(preorder)
        if product.is_in_preorder_state:
            raise PreorderNotChargeable(f"Product {product.id} has not been released yet")
        if preorder.state != PreorderState.AUTHORIZATION_SUCCESSFUL.value:
            raise PreorderNotChargeable(
                f"Preorder {preorder.id} is {preorder.state}, not authorization_successful"
            )

        purchases = self.purchase_repo.get_for_preorder(preorder.id)  # type: ignore[arg-type]
        for existing in purchases:
            if existing.kind == PurchaseKind.PREORDER_CHARGE.value and existing.purchase_state in (
                PurchaseState.IN_PROGRESS.value,
                PurchaseState.SUCCESSFUL.value,
            ):
                raise PreorderNotChargeable(
                    f"Preorder {preorder.id} already has charge {existing.id} ({existing.purchase_state})"
                )

        authorization = authorization_purchase(purchases)
        if authorization is None:
            raise ValueError(f"Preorder {preorder.id} has no authorization purchase")

        return self.purchase_repo.create(
            kind=PurchaseKind.PREORDER_CHARGE.value,
            purchase_state=PurchaseState.IN_PROGRESS.value,
            product_id=preorder.product_id,
            preorder_id=preorder.id,
            email=preorder.email,
            price_cents=authorization.price_cents,
            displayed_price_cents=authorization.displayed_price_cents,
            displayed_price_cents_before_offer_code=authorization.displayed_price_cents_before_offer_code,
            offer_code_id=authorization.offer_code_id,
            currency=authorization.currency,
            payment_method_id=preorder.payment_method_id,
            created_at=now,
        )

    def charge_preorder(
        self,
        preorder_id: UUID,
        now: datetime,
        attempt: int = 1,
    ) -> PreorderChargeResult:
        """Charge an authorized preorder once its product is released.

        A processing error schedules the next attempt until attempts
        run out; a decline notifies the buyer and cancels the preorder later.
        The preorder stays ``authorization_successful`` after any failure.

        Raises:
            PreorderNotChargeable: if the preorder cannot be charged now.
        """
        with unit_of_work(self.db, self.scheduler):
            preorder = self._get_preorder(preorder_id, for_update=True)
            purchase = self._create_charge_purchase(preorder, now)
            purchase_id: UUID = purchase.id  # type: ignore[assignment]

            if not preorder.payment_method_id:
                result = ChargeResult(
                    outcome=ChargeOutcome.DECLINED,
                    error_code=PurchaseErrorCode.PAYMENT_METHOD_MISSING.value,
                )
            else:
                result = self.processor.charge(
                    str(preorder.payment_method_id),
                    int(purchase.price_cents),
                    str(purchase.currency),
                    reference=self.purchase_repo.charge_reference(purchase),
                    off_session=True,
                )
            purchase.processor_payment_intent_id = result.intent_id  # type: ignore[assignment]

            if result.outcome == ChargeOutcome.SUCCEEDED:
                self.mark_charge_successful(preorder, purchase, now)
                return PreorderChargeResult(
                    status=PreorderChargeStatus.CHARGED, purchase_id=purchase_id, attempt=attempt
                )

            if result.needs_confirmation:
                self.db.flush()
                schedule_abandonment_check(self.scheduler, purchase)
                return PreorderChargeResult(
                    status=PreorderChargeStatus.PENDING_CONFIRMATION,
                    purchase_id=purchase_id,
                    attempt=attempt,
                )

            if result.outcome == ChargeOutcome.PROCESSING_ERROR:
                return self._handle_processing_error(preorder, purchase, attempt, now, result.error_code)

            error_code = result.error_code or PurchaseErrorCode.CARD_DECLINED.value
            self.record_charge_decline(preorder, purchase, error_code, now)
            return PreorderChargeResult(
                status=PreorderChargeStatus.DECLINED,
                purchase_id=purchase_id,
                attempt=attempt,
                error_code=error_code,
            )

    def record_charge_decline(
        self,
        preorder: Preorder,
        purchase: Purchase,
        error_code: str,
        now: datetime,
    ) -> None:
        """Fail a declined charge and give the buyer time to update their card."""
        self.failures.mark_failed(purchase, error_code)
        self.notifications.notify(Notification.PREORDER_CARD_DECLINED, preorder.id)  # type: ignore[arg-type]
        self.scheduler.enqueue(
            "cancel_preorder_task",
            str(preorder.id),
            run_at=now + timedelta(days=settings.PREORDER_DECLINE_CANCEL_DAYS),
        )
        logger.info("Preorder %s card declined: %s", preorder.id, error_code)

    def _handle_processing_error(
        self,
        preorder: Preorder,
        purchase: Purchase,
        attempt: int,
        now: datetime,
        error_code: str | None = None,
    ) -> PreorderChargeResult:
        error_code = error_code or PurchaseErrorCode.PROCESSING_ERROR.value
        self.failures.mark_failed(purchase, error_code)
        purchase_id: UUID = purchase.id  # type: ignore[assignment]

        next_attempt_at = self.retry_schedule.next_run(attempt, now)
        if next_attempt_at is None:
            logger.error(
                "Gave up charging preorder %s after %d attempts (%s)",
                preorder.id,
                attempt,
                error_code,
            )
            return PreorderChargeResult(
                status=PreorderChargeStatus.RETRIES_EXHAUSTED,
                purchase_id=purchase_id,
                attempt=attempt,
                error_code=error_code,
            )

        self.scheduler.enqueue(
            "charge_preorder_task",
            str(preorder.id),
            attempt + 1,
            run_at=next_attempt_at,
            job_id=f"charge_preorder:{preorder.id}:{attempt + 1}",
        )
        logger.info(
            "Preorder %s charge attempt %d hit a processing error; retrying at %s",
            preorder.id,
            attempt,
            next_attempt_at.isoformat(),
        )
        return PreorderChargeResult(
            status=PreorderChargeStatus.RETRY_SCHEDULED,
            purchase_id=purchase_id,
            attempt=attempt,
            next_attempt_at=next_attempt_at,
            error_code=error_code,
        )

    def cancel_preorder(
        self,
        preorder_id: UUID,
        now: datetime,
        auto_cancelled: bool = True,
    ) -> bool:
        """Cancel an authorized preorder; a no-op once it has been charged or cancelled."""
        with unit_of_work(self.db, self.scheduler):
            preorder = self._get_preorder(preorder_id, for_update=True)
            if preorder.state != PreorderState.AUTHORIZATION_SUCCESSFUL.value:
                return False

            preorder.transition_to(PreorderState.CANCELLED)
            preorder.auto_cancelled = auto_cancelled  # type: ignore[assignment]
            self._authorization_purchase(preorder).transition_to(
                PurchaseState.PREORDER_CONCLUDED_UNSUCCESSFULLY
            )
            self.db.flush()

            if not auto_cancelled:
                self.notifications.notify(Notification.PREORDER_CANCELLED, preorder_id)
                self.notifications.notify(Notification.SELLER_PREORDER_CANCELLED, preorder_id)
            logger.info("Cancelled preorder %s at %s", preorder_id, now.isoformat())
            return True

    def release_product(self, product_id: UUID, now: datetime) -> int:
        """Release a preorder product and queue a charge for every authorized preorder."""
        with unit_of_work(self.db, self.scheduler):
            product = self.product_repo.get_by_id(product_id)
            if product is None:
                raise ValueError(f"Product {product_id} not found")
            product.is_in_preorder_state = False  # type: ignore[assignment]
            if product.release_at is None:
                product.release_at = now  # type: ignore[assignment]
            self.db.flush()

            preorders = self.preorder_repo.get_authorized_for_product(product_id)
            for preorder in preorders:
                self.scheduler.enqueue(
                    "charge_preorder_task",
                    str(preorder.id),
                    1,
                    job_id=f"charge_preorder:{preorder.id}:1",
                )
            logger.info("Released product %s with %d preorders to charge", product_id, len(preorders))
            return len(preorders)
