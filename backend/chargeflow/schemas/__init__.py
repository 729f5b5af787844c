from chargeflow.schemas.charge_processor_webhook import StatusResponse, WebhookAck

__all__ = [
    "StatusResponse",
    "WebhookAck",
]
