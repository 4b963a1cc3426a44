"""Stripe PaymentIntent gateway wrapper.

All Stripe SDK calls go through :class:`PaymentGateway` so the rest of the
code base deals in plain values and ``PaymentGatewayError`` instead of SDK
exceptions.
"""

import logging
from datetime import datetime, timezone
from typing import Any

import stripe

from src.api.middleware.error_handler import PaymentGatewayError
from src.core.config import get_settings
from src.core.stripe import get_stripe
from src.models.order import PaymentDetails

logger = logging.getLogger(__name__)


def stripe_field(obj: Any, key: str, default: Any = None) -> Any:
    """Read ``key`` from a Stripe object or a plain dict."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


def _from_timestamp(value: int | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


def extract_payment_details(charge: Any) -> PaymentDetails:
    """Build a PaymentDetails snapshot from a Stripe Charge.

    Args:
        charge: Charge object or dict, ideally with ``balance_transaction``
            expanded so the fee is known.

    Returns:
        PaymentDetails: Method, card/wallet info, fee and failure data.
    """
    method_details = stripe_field(charge, "payment_method_details") or {}
    method_type = stripe_field(method_details, "type")
    card = stripe_field(method_details, "card") or {}
    wallet = stripe_field(card, "wallet")

    balance_transaction = stripe_field(charge, "balance_transaction")
    fee = stripe_field(balance_transaction, "fee") if not isinstance(balance_transaction, str) else None

    outcome = stripe_field(charge, "outcome") or {}
    failed = stripe_field(charge, "status") == "failed"
    created_at = _from_timestamp(stripe_field(charge, "created"))

    return PaymentDetails(
        method=method_type,
        amount_cents=stripe_field(charge, "amount"),
        currency=stripe_field(charge, "currency"),
        card_brand=stripe_field(card, "brand"),
        card_last4=stripe_field(card, "last4"),
        card_funding=stripe_field(card, "funding"),
        wallet=stripe_field(wallet, "type"),
        fee_cents=fee,
        receipt_url=stripe_field(charge, "receipt_url"),
        error_code=stripe_field(charge, "failure_code"),
        decline_code=stripe_field(outcome, "reason") if failed else None,
        error_description=stripe_field(charge, "failure_message"),
        failed_at=created_at if failed else None,
        captured_at=created_at if stripe_field(charge, "captured") else None,
    )


class PaymentGateway:
    """Thin service around the Stripe SDK."""

    def __init__(self) -> None:
        self.stripe = get_stripe()
        self.settings = get_settings()

    def _require_configured(self) -> None:
        if not self.settings.stripe_secret_key:
            raise PaymentGatewayError(
                "Online payments are not configured. Please set STRIPE_SECRET_KEY environment variable."
            )

    async def create_payment_intent(
        self,
        amount_cents: int,
        currency: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Create a PaymentIntent for an order.

        Args:
            amount_cents: Amount to collect in minor units.
            currency: Lowercase ISO currency code.
            metadata: Order references stored on the intent.
            idempotency_key: Key that makes retried creates return the same intent.

        Returns:
            dict: id, client_secret, status and amount of the intent.

        Raises:
            PaymentGatewayError: Stripe not configured or the call failed.
        """
        self._require_configured()
        try:
            intent = self.stripe.PaymentIntent.create(
                amount=amount_cents,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe error creating payment intent: %s", str(e))
            raise PaymentGatewayError("Failed to create payment") from e

        logger.info("Created payment intent %s for %d %s", intent.id, amount_cents, currency)
        return {
            "id": intent.id,
            "client_secret": intent.client_secret,
            "status": intent.status,
            "amount": intent.amount,
        }

    async def retrieve_payment_intent(self, payment_intent_id: str) -> Any:
        """Fetch a PaymentIntent with its latest charge expanded."""
        self._require_configured()
        try:
            return self.stripe.PaymentIntent.retrieve(payment_intent_id, expand=["latest_charge"])
        except stripe.InvalidRequestError as e:
            logger.warning("Payment intent %s not retrievable: %s", payment_intent_id, str(e))
            raise PaymentGatewayError("Payment not found at gateway") from e
        except stripe.StripeError as e:
            logger.error("Stripe error retrieving payment intent %s: %s", payment_intent_id, str(e))
            raise PaymentGatewayError("Failed to fetch payment status") from e

    async def retrieve_charge(self, charge_id: str) -> Any:
        """Fetch a Charge with its balance transaction expanded for the fee."""
        self._require_configured()
        try:
            return self.stripe.Charge.retrieve(charge_id, expand=["balance_transaction"])
        except stripe.StripeError as e:
            logger.error("Stripe error retrieving charge %s: %s", charge_id, str(e))
            raise PaymentGatewayError("Failed to fetch payment details") from e

    async def cancel_payment_intent(self, payment_intent_id: str) -> None:
        """Cancel an unpaid PaymentIntent so it can no longer be confirmed."""
        self._require_configured()
        try:
            self.stripe.PaymentIntent.cancel(payment_intent_id)
        except stripe.StripeError as e:
            raise PaymentGatewayError(f"Failed to cancel payment {payment_intent_id}") from e
        logger.info("Cancelled payment intent %s", payment_intent_id)

    async def create_refund(
        self,
        payment_intent_id: str,
        amount_cents: int,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        """Refund (part of) a captured payment.

        Returns:
            dict: id, amount and status of the refund.

        Raises:
            PaymentGatewayError: The refund was rejected.
        """
        self._require_configured()
        try:
            refund = self.stripe.Refund.create(
                payment_intent=payment_intent_id,
                amount=amount_cents,
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except stripe.StripeError as e:
            logger.error("Stripe error refunding %s: %s", payment_intent_id, str(e))
            raise PaymentGatewayError(f"Refund failed: {getattr(e, 'user_message', None) or str(e)}") from e

        logger.info("Created refund %s of %d for %s", refund.id, amount_cents, payment_intent_id)
        return {"id": refund.id, "amount": refund.amount, "status": refund.status}

    def verify_webhook_signature(self, payload: bytes, sig_header: str) -> Any:
        """Verify Stripe webhook signature and return event.

        Args:
            payload: Raw webhook payload bytes.
            sig_header: Stripe-Signature header value.

        Returns:
            Verified Stripe event.

        Raises:
            ValueError: If signature is invalid or the webhook secret is missing.
        """
        if not self.settings.stripe_webhook_secret:
            raise ValueError(
                "Stripe webhook secret is not configured. Please set STRIPE_WEBHOOK_SECRET environment variable."
            )

        try:
            return self.stripe.Webhook.construct_event(payload, sig_header, self.settings.stripe_webhook_secret)
        except stripe.SignatureVerificationError as e:
            logger.warning("Invalid webhook signature: %s", str(e))
            raise ValueError("Invalid webhook signature") from e
