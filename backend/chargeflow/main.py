from fastapi import FastAPI

from chargeflow.core.config import settings
from chargeflow.routers import charge_processor_webhooks
from chargeflow.schemas.charge_processor_webhook import StatusResponse

OPENAPI_TAGS = [
    {
        "name": "Charge Processor",
        "description": "Receive payment and setup intent events from the charge processor.",
    },
]

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.version,
    description="Recurring subscription and preorder billing.",
    openapi_tags=OPENAPI_TAGS,
)

app.include_router(
    charge_processor_webhooks.router,
    prefix="/v1/charge_processor",
    tags=["Charge Processor"],
)


@app.get("/", response_model=StatusResponse)
async def root() -> StatusResponse:
    return StatusResponse(name=settings.APP_NAME, version=settings.version)
