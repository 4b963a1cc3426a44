"""Stripe client configuration and singleton."""

import logging

import stripe

from src.core.config import get_settings

logger = logging.getLogger(__name__)


def configure_stripe() -> None:
    """Configure Stripe SDK with API key from settings.

    This should be called once at application startup.
    If Stripe keys are not configured, gateway operations fail with PaymentGatewayError.
    """
    settings = get_settings()
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key
        if settings.is_production and settings.is_stripe_test_mode:
            logger.warning("Production environment is using a Stripe test key")
    else:
        logger.warning("Stripe secret key not configured. Online payments will not work.")


def get_stripe() -> stripe:
    """Get the configured Stripe module.

    Stripe SDK uses module-level configuration, so this returns the stripe
    module itself. Tests patch this function to swap in a mock.
    """
    return stripe


async def check_stripe_configuration() -> dict:
    """Report whether the gateway keys needed for checkout are present."""
    settings = get_settings()
    missing = [
        name
        for name, value in (
            ("STRIPE_SECRET_KEY", settings.stripe_secret_key),
            ("STRIPE_WEBHOOK_SECRET", settings.stripe_webhook_secret),
        )
        if not value
    ]
    if missing:
        return {"healthy": False, "error": f"Missing {', '.join(missing)}"}
    return {"healthy": True}
