"""Build the configured gateway adapter (called once per application lifespan)."""

from config.settings import Settings
from src.kb_payments.domain.gateway import PaymentGatewayProtocol
from src.kb_payments.infrastructure.paystack import PaystackGateway
from src.kb_payments.infrastructure.simulated import SimulatedGateway


def build_gateway(settings: Settings) -> PaymentGatewayProtocol:
    if settings.GATEWAY_MODE == "paystack":
        return PaystackGateway(
            secret_key=settings.GATEWAY_SECRET_KEY,
            webhook_secret=settings.GATEWAY_WEBHOOK_SECRET,
            base_url=settings.GATEWAY_BASE_URL,
            timeout=settings.GATEWAY_TIMEOUT_SECONDS,
        )
    if settings.GATEWAY_MODE == "simulated":
        return SimulatedGateway(webhook_secret=settings.GATEWAY_WEBHOOK_SECRET)
    raise ValueError(f"Unknown GATEWAY_MODE: {settings.GATEWAY_MODE}")
