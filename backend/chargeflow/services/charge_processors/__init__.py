from chargeflow.services.charge_processors.stripe import StripeChargeProcessor

__all__ = ["StripeChargeProcessor"]
