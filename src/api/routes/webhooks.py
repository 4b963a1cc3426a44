"""Webhook API routes for external service integrations."""

import logging
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status

from src.services.payment_gateway import PaymentGateway
from src.services.payment_service import PaymentService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post(
    "/stripe",
    status_code=status.HTTP_200_OK,
    summary="Handle Stripe webhooks",
    description="Receives and processes Stripe webhook events. Requires valid signature.",
)
async def stripe_webhook(request: Request) -> dict[str, Any]:
    """Handle Stripe webhook events.

    The signature is verified against the raw body before anything is
    parsed or changed.

    Handles:
    - payment_intent.succeeded: confirms the order (idempotent)
    - payment_intent.processing: marks the payment authorized
    - payment_intent.payment_failed: records the failure
    - refund.created / refund.updated: credits refunds once per refund id

    Other events are acknowledged and ignored.

    Raises:
        HTTPException: 400 if the signature header is missing or invalid.
    """
    payload = await request.body()

    sig_header = request.headers.get("stripe-signature")
    if not sig_header:
        logger.error("Missing Stripe-Signature header in webhook request")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe-Signature header",
        )

    try:
        event = PaymentGateway().verify_webhook_signature(payload, sig_header)
    except ValueError as e:
        logger.error("Rejected webhook: %s", str(e))
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature",
        ) from e

    result = await PaymentService().handle_event(event)

    # Acknowledge every verified event so Stripe stops redelivering it
    return {"status": "received", **result}
