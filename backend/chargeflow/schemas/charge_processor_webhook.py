"""Charge processor webhook schemas."""

from pydantic import BaseModel, ConfigDict, Field


class WebhookAck(BaseModel):
    """Acknowledgement returned to the processor for every accepted event."""

    model_config = ConfigDict(use_enum_values=True)

    status: str = Field(..., description="Settlement outcome for the event")
    event_type: str
    intent_id: str | None = None


class StatusResponse(BaseModel):
    name: str
    version: str
    status: str = "ok"
