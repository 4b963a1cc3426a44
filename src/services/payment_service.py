"""Payment confirmation, failure, refund and expiry handling.

Both the signed webhook and the client verification endpoint funnel into
:meth:`PaymentService.confirm_payment`, which is idempotent: replaying the
same success leaves the order exactly as one delivery would.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import UUID

from src.api.middleware.error_handler import PaymentGatewayError
from src.core.config import get_settings
from src.models.order import (
    Actor,
    AttemptOutcome,
    Order,
    OrderStatus,
    PaymentDetails,
    PaymentStatus,
    RefundState,
)
from src.services.inventory_service import InventoryService
from src.services.order_repository import OrderRepository
from src.services.order_state import (
    apply_refund_update,
    apply_status_transition,
    failed_attempt_count,
    has_successful_payment,
    is_payment_window_valid,
    record_payment_attempt,
)
from src.services.payment_gateway import PaymentGateway, extract_payment_details, stripe_field

logger = logging.getLogger(__name__)

PAYMENT_WINDOW_EXPIRED = "PAYMENT_WINDOW_EXPIRED"
AMOUNT_MISMATCH = "AMOUNT_MISMATCH"

# Status from which a confirmed payment moves the order to CONFIRMED
_CONFIRMABLE = frozenset({OrderStatus.PLACED, OrderStatus.PAYMENT_PENDING})

# Statuses in which a success is only accepted inside the payment window
_WINDOW_BOUND = _CONFIRMABLE | {OrderStatus.PAYMENT_FAILED}

_REFUND_STATES = {
    "pending": RefundState.PENDING,
    "requires_action": RefundState.PENDING,
    "succeeded": RefundState.SUCCEEDED,
    "failed": RefundState.FAILED,
    "canceled": RefundState.FAILED,
}


class ConfirmationOutcome(str, Enum):
    """What confirm_payment did with a reported success."""

    CONFIRMED = "confirmed"
    ALREADY_PAID = "already_paid"
    DUPLICATE = "duplicate"
    EXPIRED = "expired"
    AMOUNT_MISMATCH = "amount_mismatch"
    PAID_ON_CLOSED_ORDER = "paid_on_closed_order"


@dataclass
class ConfirmationResult:
    outcome: ConfirmationOutcome
    order: Order


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentService:
    """Applies gateway-reported payment events to orders."""

    def __init__(
        self,
        repository: OrderRepository | None = None,
        inventory: InventoryService | None = None,
        gateway: PaymentGateway | None = None,
    ) -> None:
        self.repository = repository or OrderRepository()
        self.inventory = inventory or InventoryService()
        self.gateway = gateway or PaymentGateway()
        self.settings = get_settings()

    async def _order_for_intent(self, intent: Any) -> Order | None:
        metadata = stripe_field(intent, "metadata") or {}
        order_id = stripe_field(metadata, "order_id")
        if order_id:
            order = await self.repository.get(order_id)
            if order is not None:
                return order
        return await self.repository.get_by_payment_intent(stripe_field(intent, "id"))

    async def _charge_details(self, charge: Any) -> PaymentDetails:
        """Details for a charge that may be an id or an expanded object."""
        if charge is None:
            return PaymentDetails()
        if isinstance(charge, str):
            try:
                charge = await self.gateway.retrieve_charge(charge)
            except PaymentGatewayError as e:
                logger.warning("Could not fetch charge details: %s", e.message)
                return PaymentDetails()
        return extract_payment_details(charge)

    async def confirm_payment(
        self,
        order_id: UUID | str,
        intent: Any,
        now: datetime | None = None,
    ) -> ConfirmationResult:
        """Apply a succeeded PaymentIntent to an order.

        Args:
            order_id: Order the intent belongs to.
            intent: Succeeded PaymentIntent object or dict.
            now: Clock override for tests.

        Returns:
            ConfirmationResult: The outcome and the persisted order.
        """
        now = now or _utcnow()
        intent_id = stripe_field(intent, "id")
        charge = stripe_field(intent, "latest_charge")
        charge_id = charge if isinstance(charge, str) else stripe_field(charge, "id")
        amount = stripe_field(intent, "amount_received") or stripe_field(intent, "amount")
        currency = stripe_field(intent, "currency")
        details = await self._charge_details(charge)
        payment_key = charge_id or intent_id

        outcome: dict[str, ConfirmationOutcome] = {}

        def apply(order: Order) -> Order | None:
            if has_successful_payment(order):
                if order.stripe_charge_id == charge_id or any(
                    a.stripe_payment_id == payment_key and a.outcome == AttemptOutcome.SUCCESS
                    for a in order.payment_attempts
                ):
                    outcome["value"] = ConfirmationOutcome.ALREADY_PAID
                else:
                    outcome["value"] = ConfirmationOutcome.DUPLICATE
                return None

            rejected = next(
                (
                    a
                    for a in order.payment_attempts
                    if a.stripe_payment_id == payment_key
                    and a.outcome == AttemptOutcome.FAILED
                    and a.error_code in (PAYMENT_WINDOW_EXPIRED, AMOUNT_MISMATCH)
                ),
                None,
            )
            if rejected is not None:
                outcome["value"] = (
                    ConfirmationOutcome.EXPIRED
                    if rejected.error_code == PAYMENT_WINDOW_EXPIRED
                    else ConfirmationOutcome.AMOUNT_MISMATCH
                )
                return None

            if amount != order.total_cents or (currency and currency.lower() != order.currency):
                outcome["value"] = ConfirmationOutcome.AMOUNT_MISMATCH
                record_payment_attempt(
                    order,
                    payment_key,
                    AttemptOutcome.FAILED,
                    method=details.method,
                    error_code=AMOUNT_MISMATCH,
                    error_description=f"Paid {amount} {currency}, expected {order.total_cents} {order.currency}",
                    now=now,
                )
                return order

            if not is_payment_window_valid(order, now) and order.status in _WINDOW_BOUND:
                outcome["value"] = ConfirmationOutcome.EXPIRED
                record_payment_attempt(
                    order,
                    payment_key,
                    AttemptOutcome.FAILED,
                    method=details.method,
                    error_code=PAYMENT_WINDOW_EXPIRED,
                    error_description="Payment succeeded after the payment window closed",
                    now=now,
                )
                return order

            record_payment_attempt(order, payment_key, AttemptOutcome.SUCCESS, method=details.method, now=now)
            order.payment_status = PaymentStatus.PAID
            order.stripe_payment_intent_id = intent_id
            order.stripe_charge_id = charge_id
            order.payment_details = details.model_copy(update={"captured_at": details.captured_at or now})

            if order.status in _CONFIRMABLE:
                apply_status_transition(order, OrderStatus.CONFIRMED, Actor.system(), note="Payment confirmed", now=now)
                outcome["value"] = ConfirmationOutcome.CONFIRMED
            else:
                outcome["value"] = ConfirmationOutcome.PAID_ON_CLOSED_ORDER
            return order

        result = await self.repository.mutate(order_id, apply)
        order = result.order

        match outcome["value"]:
            case ConfirmationOutcome.CONFIRMED:
                logger.info("Order %s confirmed by payment %s", order.order_number, payment_key)
            case ConfirmationOutcome.ALREADY_PAID:
                logger.info("Payment %s already applied to order %s", payment_key, order.order_number)
            case ConfirmationOutcome.DUPLICATE:
                logger.warning(
                    "Duplicate payment %s for already paid order %s (paid by %s)",
                    payment_key,
                    order.order_number,
                    order.stripe_charge_id,
                )
            case ConfirmationOutcome.EXPIRED:
                logger.warning("Late payment %s for order %s rejected", payment_key, order.order_number)
            case ConfirmationOutcome.AMOUNT_MISMATCH:
                logger.error("Payment %s amount does not match order %s", payment_key, order.order_number)
            case ConfirmationOutcome.PAID_ON_CLOSED_ORDER:
                logger.warning(
                    "Payment %s captured for order %s in status %s; refund required",
                    payment_key,
                    order.order_number,
                    order.status.value,
                )

        return ConfirmationResult(outcome=outcome["value"], order=order)

    async def mark_authorized(self, order_id: UUID | str, intent: Any, now: datetime | None = None) -> Order:
        """Record that the gateway is processing or holding the payment."""
        now = now or _utcnow()
        intent_id = stripe_field(intent, "id")

        def apply(order: Order) -> Order | None:
            if order.payment_status != PaymentStatus.PENDING:
                return None
            order.payment_status = PaymentStatus.AUTHORIZED
            record_payment_attempt(order, intent_id, AttemptOutcome.INITIATED, now=now)
            return order

        result = await self.repository.mutate(order_id, apply)
        if result.changed:
            logger.info("Payment for order %s authorized", result.order.order_number)
        return result.order

    async def record_failure(
        self,
        order_id: UUID | str,
        intent: Any,
        event_id: str | None = None,
        now: datetime | None = None,
    ) -> Order:
        """Record a failed charge and fail the order after too many failures.

        Failures are keyed by charge id (or the event id when the gateway
        failed before creating a charge) so redelivered events count once.
        """
        now = now or _utcnow()
        error = stripe_field(intent, "last_payment_error") or {}
        charge = stripe_field(error, "charge") or stripe_field(intent, "latest_charge")
        charge_id = charge if isinstance(charge, str) or charge is None else stripe_field(charge, "id")
        payment_key = charge_id or event_id or stripe_field(intent, "id")
        method = stripe_field(stripe_field(error, "payment_method"), "type")
        max_failures = self.settings.max_failed_payment_attempts

        def apply(order: Order) -> Order | None:
            if has_successful_payment(order):
                logger.info("Ignoring failure %s for paid order %s", payment_key, order.order_number)
                return None
            if any(
                a.stripe_payment_id == payment_key and a.outcome == AttemptOutcome.FAILED
                for a in order.payment_attempts
            ):
                return None

            record_payment_attempt(
                order,
                payment_key,
                AttemptOutcome.FAILED,
                method=method,
                error_code=stripe_field(error, "code"),
                error_description=stripe_field(error, "message"),
                now=now,
            )
            order.payment_details = order.payment_details.model_copy(
                update={
                    "error_code": stripe_field(error, "code"),
                    "decline_code": stripe_field(error, "decline_code"),
                    "error_description": stripe_field(error, "message"),
                    "failed_at": now,
                }
            )
            if order.payment_status == PaymentStatus.AUTHORIZED:
                order.payment_status = PaymentStatus.PENDING

            # An expired window is the expiry sweep's business
            if (
                order.status == OrderStatus.PAYMENT_PENDING
                and is_payment_window_valid(order, now)
                and failed_attempt_count(order) >= max_failures
            ):
                apply_status_transition(
                    order,
                    OrderStatus.PAYMENT_FAILED,
                    Actor.system(),
                    note=f"Payment failed {max_failures} times",
                    now=now,
                )
                order.payment_status = PaymentStatus.FAILED
                order.stock_reserved = False
            return order

        result = await self.repository.mutate(order_id, apply)
        if result.changed:
            logger.info(
                "Payment failure %s recorded for order %s (%d failed)",
                payment_key,
                result.order.order_number,
                failed_attempt_count(result.order),
            )
            await self.inventory.release_if_unreserved(result)
            if result.order.status == OrderStatus.PAYMENT_FAILED and result.previous.status != OrderStatus.PAYMENT_FAILED:
                await self._cancel_intent_quietly(result.order)
        return result.order

    async def apply_refund(self, refund: Any, now: datetime | None = None) -> Order | None:
        """Apply a gateway refund report to its order."""
        refund_id = stripe_field(refund, "id")
        status = stripe_field(refund, "status")
        state = _REFUND_STATES.get(status)
        if state is None:
            logger.info("Ignoring refund %s in status %s", refund_id, status)
            return None

        payment_intent_id = stripe_field(refund, "payment_intent")
        order = await self.repository.get_by_payment_intent(payment_intent_id) if payment_intent_id else None
        if order is None:
            logger.warning("No order for refund %s (payment %s)", refund_id, payment_intent_id)
            return None

        metadata = stripe_field(refund, "metadata") or {}
        reason = stripe_field(metadata, "reason") or stripe_field(refund, "reason")
        now = now or _utcnow()

        def apply(current: Order) -> Order | None:
            changed = apply_refund_update(
                current,
                refund_id,
                stripe_field(refund, "amount"),
                state,
                reason=reason,
                now=now,
            )
            return current if changed else None

        result = await self.repository.mutate(order.id, apply)
        if result.changed:
            logger.info(
                "Refund %s (%s) applied to order %s; refunded %s of %d",
                refund_id,
                state.value,
                result.order.order_number,
                result.order.refund_amount_cents or 0,
                result.order.total_cents,
            )
        return result.order

    async def handle_event(self, event: Any) -> dict[str, Any]:
        """Dispatch a verified gateway event.

        Returns:
            dict: ``handled`` flag plus the outcome, for the webhook response.
        """
        event_type = stripe_field(event, "type")
        event_id = stripe_field(event, "id")
        obj = stripe_field(stripe_field(event, "data"), "object")
        logger.info("Processing gateway event %s (%s)", event_type, event_id)

        if event_type in ("refund.created", "refund.updated", "charge.refund.updated"):
            order = await self.apply_refund(obj)
            return {"handled": order is not None}

        if not event_type or not event_type.startswith("payment_intent."):
            logger.info("Unhandled event type: %s", event_type)
            return {"handled": False}

        order = await self._order_for_intent(obj)
        if order is None:
            logger.warning("No order for payment intent %s", stripe_field(obj, "id"))
            return {"handled": False}

        match event_type:
            case "payment_intent.succeeded":
                result = await self.confirm_payment(order.id, obj)
                return {"handled": True, "outcome": result.outcome.value}
            case "payment_intent.processing" | "payment_intent.amount_capturable_updated":
                await self.mark_authorized(order.id, obj)
                return {"handled": True}
            case "payment_intent.payment_failed":
                await self.record_failure(order.id, obj, event_id=event_id)
                return {"handled": True}

        logger.info("Unhandled event type: %s", event_type)
        return {"handled": False}

    async def _cancel_intent_quietly(self, order: Order) -> None:
        """Cancel a failed order's PaymentIntent so the customer cannot still pay it."""
        if not order.stripe_payment_intent_id:
            return
        try:
            await self.gateway.cancel_payment_intent(order.stripe_payment_intent_id)
        except PaymentGatewayError as e:
            logger.warning("Could not cancel payment for order %s: %s", order.order_number, e.message)

    async def expire_unpaid_order(self, order_id: UUID | str, now: datetime | None = None) -> bool:
        """Fail an order whose payment window lapsed and return its stock.

        Returns:
            bool: True if this call expired the order.
        """
        now = now or _utcnow()

        def apply(order: Order) -> Order | None:
            if (
                order.status != OrderStatus.PAYMENT_PENDING
                or order.payment_status != PaymentStatus.PENDING
                or is_payment_window_valid(order, now)
            ):
                return None
            apply_status_transition(
                order, OrderStatus.PAYMENT_FAILED, Actor.system(), note="Payment window expired", now=now
            )
            order.payment_status = PaymentStatus.FAILED
            order.stock_reserved = False
            order.payment_details = order.payment_details.model_copy(update={"failed_at": now})
            return order

        result = await self.repository.mutate(order_id, apply)
        if not result.changed:
            return False

        await self.inventory.release_if_unreserved(result)
        await self._cancel_intent_quietly(result.order)

        logger.info("Order %s expired unpaid", result.order.order_number)
        return True
