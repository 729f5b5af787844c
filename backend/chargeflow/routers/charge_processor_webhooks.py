import logging

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from chargeflow.core.database import get_db
from chargeflow.models.shared import utc_now
from chargeflow.schemas.charge_processor_webhook import WebhookAck
from chargeflow.services.charge_processor import get_charge_processor
from chargeflow.services.job_scheduler import JobScheduler
from chargeflow.services.purchase_settlement import PurchaseSettlementService
from chargeflow.tasks import enqueue_scheduled_jobs

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook/{processor}", response_model=WebhookAck)
async def handle_webhook(
    processor: str,
    request: Request,
    stripe_signature: str | None = Header(None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
) -> WebhookAck:
    """Settle the purchase behind a payment or setup intent event.

    Events for intents this system does not know are acknowledged and
    ignored so the processor stops redelivering them.
    """
    payload = await request.body()

    try:
        charge_processor = get_charge_processor(processor)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid processor") from None

    signature = stripe_signature or request.headers.get("X-Webhook-Signature", "")
    if not charge_processor.verify_webhook_signature(payload, signature):
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload_json = await request.json()
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid JSON payload") from None

    event = charge_processor.parse_webhook(payload_json)
    scheduler = JobScheduler()
    service = PurchaseSettlementService(db, charge_processor, scheduler)
    outcome = service.settle_webhook(event, utc_now())

    jobs = scheduler.drain()
    if jobs:
        await enqueue_scheduled_jobs(jobs)

    logger.info("Processor event %s settled as %s", event.event_type, outcome.value)
    return WebhookAck(status=outcome.value, event_type=event.event_type, intent_id=event.intent_id)
