"""Order placement, customer order operations and admin order management."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID, uuid4

from src.api.middleware.error_handler import (
    ConflictError,
    NotFoundError,
    PaymentGatewayError,
    ValidationError,
)
from src.core.config import get_settings
from src.core.supabase import get_supabase_client
from src.models.order import (
    ActorRole,
    DeliveryAddress,
    Order,
    OrderItem,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    ProductSnapshot,
    QuantityOptionSnapshot,
    RefundState,
    StatusHistoryEntry,
)
from src.models.product import primary_image_url
from src.schemas.common import Pagination
from src.services.audit_service import AuditService
from src.services.cart_service import CartService, CartValidation
from src.services.inventory_service import InventoryService, stock_lines_for, stock_lines_for_items
from src.services.order_repository import OrderRepository
from src.services.order_state import (
    InvalidTransitionError,
    actor_for_admin,
    actor_for_user,
    apply_refund_update,
    apply_status_transition,
    can_be_cancelled_by_admin,
    can_be_cancelled_by_user,
    can_transition,
    has_successful_payment,
    is_payment_window_valid,
    refundable_amount,
)
from src.services.payment_gateway import PaymentGateway, stripe_field
from src.services.payment_service import ConfirmationOutcome, PaymentService

logger = logging.getLogger(__name__)

DEFAULT_USER_CANCEL_REASON = "Cancelled by customer"

# Statuses an admin may not set directly through a status update
_REFUND_FLOW_STATUSES = frozenset(
    {OrderStatus.REFUND_INITIATED, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED}
)

_REFUNDABLE_PAYMENT_STATUSES = frozenset(
    {PaymentStatus.PAID, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUND_INITIATED}
)

_RETRYABLE_STATUSES = frozenset({OrderStatus.PAYMENT_PENDING, OrderStatus.PAYMENT_FAILED})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_retry_payment(order: Order) -> bool:
    """Whether the customer may start a new payment for ``order``."""
    return (
        order.payment_method == PaymentMethod.STRIPE
        and order.status in _RETRYABLE_STATUSES
        and order.payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED)
    )


def calculate_delivery_charge(subtotal_cents: int) -> int:
    """Flat delivery charge, waived from the free-delivery threshold."""
    settings = get_settings()
    if subtotal_cents >= settings.free_delivery_threshold_cents:
        return 0
    return settings.delivery_charge_cents


def build_order_items(validation: CartValidation) -> list[OrderItem]:
    """Snapshot validated cart lines into order items."""
    items = []
    for line in validation.valid:
        product = line.product
        option = line.option
        items.append(
            OrderItem(
                product_id=product["id"],
                quantity_option_id=option["id"],
                product_snapshot=ProductSnapshot(
                    name=product["name"],
                    slug=product.get("slug"),
                    image=primary_image_url(product),
                    category_id=product.get("category_id"),
                ),
                quantity_option_snapshot=QuantityOptionSnapshot(
                    label=option["label"],
                    price_cents=option["price_cents"],
                    selling_price_cents=option["selling_price_cents"],
                    discount_percent=option.get("discount_percent") or 0,
                    discount_flat_cents=option.get("discount_flat_cents") or 0,
                ),
                quantity=line.quantity,
                subtotal_cents=line.subtotal_cents,
            )
        )
    return items


class OrderService:
    """Service for order placement and order management."""

    def __init__(
        self,
        repository: OrderRepository | None = None,
        inventory: InventoryService | None = None,
        gateway: PaymentGateway | None = None,
        cart_service: CartService | None = None,
        payment_service: PaymentService | None = None,
        audit: AuditService | None = None,
    ) -> None:
        self.client = get_supabase_client()
        self.settings = get_settings()
        self.repository = repository or OrderRepository()
        self.inventory = inventory or InventoryService()
        self.gateway = gateway or PaymentGateway()
        self.cart_service = cart_service or CartService()
        self.payment_service = payment_service or PaymentService(
            repository=self.repository, inventory=self.inventory, gateway=self.gateway
        )
        self.audit = audit or AuditService()

    async def _get_delivery_address(self, user_id: UUID, address_id: UUID) -> DeliveryAddress:
        response = (
            self.client.table("addresses")
            .select("*")
            .eq("id", str(address_id))
            .eq("user_id", str(user_id))
            .maybe_single()
            .execute()
        )
        if not response or not response.data:
            raise NotFoundError("Delivery address not found")

        address = response.data
        return DeliveryAddress(
            label=address.get("label"),
            house_number=address.get("house_number"),
            street=address.get("street"),
            colony=address.get("colony"),
            landmark=address.get("landmark"),
            latitude=address.get("latitude"),
            longitude=address.get("longitude"),
        )

    async def create_order(
        self,
        user_id: UUID,
        address_id: UUID,
        payment_method: PaymentMethod,
        order_notes: str | None = None,
    ) -> dict[str, Any]:
        """Place an order from the user's cart.

        Prices are re-read from the catalog, stock is reserved, and for
        online payment a PaymentIntent is created with the payment window
        starting now.

        Args:
            user_id: Customer placing the order.
            address_id: Saved address to deliver to.
            payment_method: STRIPE or COD.
            order_notes: Optional note from the customer.

        Returns:
            dict: ``order`` plus ``client_secret`` for online payment.

        Raises:
            ValidationError: Cart empty, items unavailable or out of stock.
            NotFoundError: Address not found.
            PaymentGatewayError: The PaymentIntent could not be created.
        """
        validation = await self.cart_service.validate_for_order(user_id)
        delivery_address = await self._get_delivery_address(user_id, address_id)

        items = build_order_items(validation)
        subtotal = sum(item.subtotal_cents for item in items)
        delivery_charge = calculate_delivery_charge(subtotal)
        discount = 0

        stock_lines = stock_lines_for_items(items)
        await self.inventory.reserve(stock_lines)

        now = _utcnow()
        actor = actor_for_user(user_id)
        payment_intent: dict[str, Any] | None = None
        try:
            order = Order(
                id=uuid4(),
                order_number=await self.repository.next_order_number(now),
                user_id=user_id,
                items=items,
                delivery_address=delivery_address,
                subtotal_cents=subtotal,
                delivery_charge_cents=delivery_charge,
                discount_cents=discount,
                total_cents=subtotal - discount + delivery_charge,
                currency=self.settings.currency,
                payment_method=payment_method,
                status_history=[
                    StatusHistoryEntry(
                        status=OrderStatus.PLACED,
                        timestamp=now,
                        actor_role=actor.role,
                        actor_id=actor.id,
                        note="Order placed",
                    )
                ],
                stock_reserved=True,
                order_notes=order_notes,
            )

            if payment_method == PaymentMethod.STRIPE:
                payment_intent = await self.gateway.create_payment_intent(
                    amount_cents=order.total_cents,
                    currency=order.currency,
                    metadata={
                        "order_id": str(order.id),
                        "order_number": order.order_number,
                        "user_id": str(user_id),
                    },
                    idempotency_key=f"order-{order.id}",
                )
                order.stripe_payment_intent_id = payment_intent["id"]
                order.payment_expires_at = now + timedelta(minutes=self.settings.payment_window_minutes)
                apply_status_transition(order, OrderStatus.PAYMENT_PENDING, actor, note="Awaiting payment", now=now)

            saved = await self.repository.insert(order)
        except Exception:
            logger.warning("Order placement failed for user %s, releasing stock", user_id)
            await self.inventory.release(stock_lines)
            if payment_intent:
                await self._cancel_intent_quietly(payment_intent["id"])
            raise

        try:
            await self.cart_service.clear(user_id)
        except Exception as e:
            logger.error("Failed to clear cart for user %s after order %s: %s", user_id, saved.order_number, str(e))

        logger.info(
            "Order %s placed by %s (%s, total %d)",
            saved.order_number,
            user_id,
            payment_method.value,
            saved.total_cents,
        )
        return {
            "order": saved,
            "client_secret": payment_intent["client_secret"] if payment_intent else None,
        }

    async def _cancel_intent_quietly(self, payment_intent_id: str) -> None:
        try:
            await self.gateway.cancel_payment_intent(payment_intent_id)
        except PaymentGatewayError as e:
            logger.warning("Could not cancel payment intent %s: %s", payment_intent_id, e.message)

    async def get_order(self, user_id: UUID, order_id: UUID, use_cache: bool = False) -> Order:
        """Get one of the user's orders.

        Raises:
            NotFoundError: Order missing or owned by someone else.
        """
        order = await self.repository.get(order_id, use_cache=use_cache)
        if order is None or order.user_id != user_id:
            raise NotFoundError("Order not found")
        return order

    async def list_orders(
        self,
        user_id: UUID,
        status: OrderStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Order], Pagination]:
        """List the user's orders, newest first."""
        orders, total = await self.repository.list_for_user(
            user_id, status=status.value if status else None, page=page, limit=limit
        )
        return orders, Pagination.build(page, limit, total)

    async def verify_payment(self, user_id: UUID, order_id: UUID, payment_intent_id: str) -> Order:
        """Confirm a payment the client reports as completed.

        The client's claim is never trusted: the PaymentIntent is fetched from
        the gateway and must belong to this order, have succeeded and match
        the order total.

        Raises:
            ValidationError: Payment not for this order, not completed, late
                or for the wrong amount.
            ConflictError: The order was already paid by another payment.
        """
        order = await self.get_order(user_id, order_id)
        if order.payment_method != PaymentMethod.STRIPE:
            raise ValidationError("Order is not paid online")

        if has_successful_payment(order) and order.stripe_payment_intent_id == payment_intent_id:
            return order

        intent = await self.gateway.retrieve_payment_intent(payment_intent_id)
        metadata = stripe_field(intent, "metadata") or {}
        if stripe_field(intent, "id") != payment_intent_id or stripe_field(metadata, "order_id") != str(order.id):
            logger.warning("Payment %s does not belong to order %s", payment_intent_id, order.order_number)
            raise ValidationError("Payment does not belong to this order")

        intent_status = stripe_field(intent, "status")
        if intent_status in ("processing", "requires_capture"):
            return await self.payment_service.mark_authorized(order.id, intent)
        if intent_status != "succeeded":
            raise ValidationError(f"Payment has not completed (status: {intent_status})")

        result = await self.payment_service.confirm_payment(order.id, intent)
        match result.outcome:
            case ConfirmationOutcome.EXPIRED:
                raise ValidationError("Payment window has expired")
            case ConfirmationOutcome.AMOUNT_MISMATCH:
                raise ValidationError("Payment amount does not match order total")
            case ConfirmationOutcome.DUPLICATE:
                raise ConflictError("Order has already been paid")
        return result.order

    async def get_payment_status(self, user_id: UUID, order_id: UUID) -> dict[str, Any]:
        """Return payment state, reconciling a pending payment with the gateway."""
        order = await self.get_order(user_id, order_id, use_cache=True)

        if (
            order.payment_method == PaymentMethod.STRIPE
            and order.status == OrderStatus.PAYMENT_PENDING
            and order.payment_status in (PaymentStatus.PENDING, PaymentStatus.AUTHORIZED)
            and order.stripe_payment_intent_id
        ):
            try:
                intent = await self.gateway.retrieve_payment_intent(order.stripe_payment_intent_id)
            except PaymentGatewayError as e:
                logger.warning("Payment status check failed for %s: %s", order.order_number, e.message)
            else:
                intent_status = stripe_field(intent, "status")
                if intent_status == "succeeded":
                    order = (await self.payment_service.confirm_payment(order.id, intent)).order
                elif intent_status in ("processing", "requires_capture"):
                    order = await self.payment_service.mark_authorized(order.id, intent)

        return {
            "order_id": order.id,
            "order_number": order.order_number,
            "status": order.status,
            "payment_status": order.payment_status,
            "payment_expires_at": order.payment_expires_at,
            "total_cents": order.total_cents,
            "currency": order.currency,
            "can_retry": can_retry_payment(order),
        }

    async def retry_payment(self, user_id: UUID, order_id: UUID) -> dict[str, Any]:
        """Start a fresh payment for an unpaid online order.

        An expired window is extended; a PAYMENT_FAILED order takes its stock
        again and returns to PAYMENT_PENDING.

        Returns:
            dict: ``order`` and the new ``client_secret``.
        """
        order = await self.get_order(user_id, order_id)
        if not can_retry_payment(order):
            raise ValidationError("Payment cannot be retried for this order")

        now = _utcnow()
        reserved_here = False
        if not order.stock_reserved:
            await self.inventory.reserve(stock_lines_for(order))
            reserved_here = True

        try:
            payment_intent = await self.gateway.create_payment_intent(
                amount_cents=order.total_cents,
                currency=order.currency,
                metadata={
                    "order_id": str(order.id),
                    "order_number": order.order_number,
                    "user_id": str(user_id),
                },
                idempotency_key=f"order-{order.id}-v{order.version}",
            )
        except Exception:
            if reserved_here:
                await self.inventory.release_for_order(order)
            raise

        previous_intent_id = order.stripe_payment_intent_id
        took_reservation = {"value": False}
        extension = timedelta(minutes=self.settings.payment_retry_extension_minutes)

        def apply(current: Order) -> Order | None:
            if not can_retry_payment(current):
                raise ConflictError("Order payment state changed, please refresh")
            current.stripe_payment_intent_id = payment_intent["id"]
            if current.status == OrderStatus.PAYMENT_FAILED or not is_payment_window_valid(current, now):
                current.payment_expires_at = now + extension
            if current.status == OrderStatus.PAYMENT_FAILED:
                apply_status_transition(
                    current, OrderStatus.PAYMENT_PENDING, actor_for_user(user_id), note="Payment retried", now=now
                )
            current.payment_status = PaymentStatus.PENDING
            took_reservation["value"] = reserved_here and not current.stock_reserved
            if reserved_here:
                current.stock_reserved = True
            return current

        try:
            result = await self.repository.mutate(order.id, apply)
        except Exception:
            if reserved_here:
                await self.inventory.release_for_order(order)
            await self._cancel_intent_quietly(payment_intent["id"])
            raise

        if reserved_here and not took_reservation["value"]:
            # Someone else re-reserved concurrently
            await self.inventory.release_for_order(order)

        if previous_intent_id and previous_intent_id != payment_intent["id"]:
            await self._cancel_intent_quietly(previous_intent_id)

        logger.info("Payment retried for order %s", result.order.order_number)
        return {"order": result.order, "client_secret": payment_intent["client_secret"]}

    async def cancel_by_user(self, user_id: UUID, order_id: UUID, reason: str | None = None) -> Order:
        """Cancel a cash-on-delivery order that has not been processed yet."""
        await self.get_order(user_id, order_id)
        actor = actor_for_user(user_id)
        reason = reason or DEFAULT_USER_CANCEL_REASON

        def apply(order: Order) -> Order:
            if not can_be_cancelled_by_user(order):
                raise ValidationError("Order cannot be cancelled at this stage")
            apply_status_transition(order, OrderStatus.CANCELLED, actor, note=reason)
            order.cancellation_reason = reason
            order.cancelled_by = ActorRole.USER
            order.stock_reserved = False
            return order

        result = await self.repository.mutate(order_id, apply)
        await self.inventory.release_if_unreserved(result)
        logger.info("Order %s cancelled by customer", result.order.order_number)
        return result.order

    async def admin_list_orders(
        self,
        filters: dict[str, Any],
        page: int = 1,
        limit: int = 20,
        sort: str = "-created_at",
    ) -> tuple[list[Order], Pagination]:
        """List all orders with back-office filters."""
        orders, total = await self.repository.list_admin(filters, page=page, limit=limit, sort=sort)
        return orders, Pagination.build(page, limit, total)

    async def admin_get_order(self, order_id: UUID) -> Order:
        order = await self.repository.get(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        return order

    async def update_status(
        self,
        admin_id: UUID,
        order_id: UUID,
        new_status: OrderStatus,
        note: str | None = None,
    ) -> Order:
        """Move an order along the fulfillment flow.

        Raises:
            ValidationError: Target belongs to the refund flow, or would
                confirm an unpaid online order.
            InvalidTransitionError: Target not reachable from current status.
        """
        if new_status == OrderStatus.CANCELLED:
            return await self.cancel_by_admin(admin_id, order_id, note or "Cancelled by admin", initiate_refund=False)

        actor = actor_for_admin(admin_id)

        def apply(order: Order) -> Order:
            if not can_transition(order.status, new_status):
                raise InvalidTransitionError(order.status, new_status)
            if new_status in _REFUND_FLOW_STATUSES:
                raise ValidationError("Refund statuses are set through the refund endpoint")
            if (
                new_status == OrderStatus.CONFIRMED
                and order.payment_method == PaymentMethod.STRIPE
                and not has_successful_payment(order)
            ):
                raise ValidationError("Online order cannot be confirmed before payment")
            apply_status_transition(order, new_status, actor, note=note)
            if new_status == OrderStatus.PAYMENT_FAILED:
                order.payment_status = PaymentStatus.FAILED
                order.stock_reserved = False
            return order

        result = await self.repository.mutate(order_id, apply)
        await self.inventory.release_if_unreserved(result)
        if (
            new_status == OrderStatus.PAYMENT_FAILED
            and result.changed
            and result.order.stripe_payment_intent_id
        ):
            await self._cancel_intent_quietly(result.order.stripe_payment_intent_id)
        await self.audit.record(
            admin_id,
            "order.status_updated",
            order_id,
            {"from": result.previous.status.value, "to": new_status.value, "note": note},
        )
        logger.info(
            "Order %s moved %s -> %s by admin %s",
            result.order.order_number,
            result.previous.status.value,
            new_status.value,
            admin_id,
        )
        return result.order

    async def cancel_by_admin(
        self,
        admin_id: UUID,
        order_id: UUID,
        reason: str,
        initiate_refund: bool = True,
    ) -> Order:
        """Cancel an order from the back office, refunding it if paid."""
        actor = actor_for_admin(admin_id)

        def apply(order: Order) -> Order:
            if not can_be_cancelled_by_admin(order):
                raise ValidationError(f"Order in status {order.status.value} cannot be cancelled")
            apply_status_transition(order, OrderStatus.CANCELLED, actor, note=reason)
            order.cancellation_reason = reason
            order.cancelled_by = ActorRole.ADMIN
            order.stock_reserved = False
            return order

        result = await self.repository.mutate(order_id, apply)
        await self.inventory.release_if_unreserved(result)
        await self.audit.record(
            admin_id,
            "order.cancelled",
            order_id,
            {"from": result.previous.status.value, "reason": reason},
        )
        logger.info("Order %s cancelled by admin %s", result.order.order_number, admin_id)

        order = result.order
        if (
            initiate_refund
            and order.payment_method == PaymentMethod.STRIPE
            and order.payment_status == PaymentStatus.PAID
        ):
            order = await self.initiate_refund(admin_id, order_id, reason=reason)
        elif (
            order.payment_method == PaymentMethod.STRIPE
            and order.stripe_payment_intent_id
            and not has_successful_payment(order)
        ):
            await self._cancel_intent_quietly(order.stripe_payment_intent_id)
        return order

    async def initiate_refund(
        self,
        admin_id: UUID,
        order_id: UUID,
        amount_cents: int | None = None,
        reason: str | None = None,
    ) -> Order:
        """Refund all or part of an order's captured payment.

        Args:
            admin_id: Admin issuing the refund.
            order_id: Order to refund.
            amount_cents: Amount to refund; defaults to everything refundable.
            reason: Reason recorded with the refund.

        Raises:
            ValidationError: Order not refundable or amount out of range.
            PaymentGatewayError: The gateway rejected the refund.
        """
        order = await self.admin_get_order(order_id)
        if order.payment_method != PaymentMethod.STRIPE or not order.stripe_payment_intent_id:
            raise ValidationError("Only online payments can be refunded")
        if order.payment_status not in _REFUNDABLE_PAYMENT_STATUSES:
            raise ValidationError(f"Payment in status {order.payment_status.value} cannot be refunded")

        available = refundable_amount(order)
        amount = available if amount_cents is None else amount_cents
        if amount <= 0 or amount > available:
            raise ValidationError(f"Refund amount must be between 1 and {available}")

        refund = await self.gateway.create_refund(
            payment_intent_id=order.stripe_payment_intent_id,
            amount_cents=amount,
            metadata={"order_id": str(order.id), "order_number": order.order_number, "reason": reason or ""},
            idempotency_key=f"refund-{order.id}-{len(order.refunds)}-{amount}",
        )
        state = RefundState.SUCCEEDED if refund["status"] == "succeeded" else RefundState.PENDING
        if refund["status"] in ("failed", "canceled"):
            state = RefundState.FAILED
        actor = actor_for_admin(admin_id)

        def apply(current: Order) -> Order | None:
            changed = apply_refund_update(
                current, refund["id"], refund["amount"], state, reason=reason, actor=actor
            )
            return current if changed else None

        result = await self.repository.mutate(order_id, apply)
        await self.audit.record(
            admin_id,
            "order.refund_initiated",
            order_id,
            {"refund_id": refund["id"], "amount_cents": amount, "reason": reason},
        )
        logger.info(
            "Refund %s of %d initiated for order %s by admin %s",
            refund["id"],
            amount,
            result.order.order_number,
            admin_id,
        )
        return result.order
