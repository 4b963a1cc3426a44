"""Customer order API routes."""

from uuid import UUID

from fastapi import APIRouter, Query, status

from src.api.deps import CurrentUser
from src.core.config import get_settings
from src.models.order import OrderStatus
from src.schemas.order import (
    CancelOrderRequest,
    OrderCreate,
    OrderCreateResponse,
    OrderListResponse,
    OrderResponse,
    OrderSummary,
    PaymentStatusResponse,
    RetryPaymentResponse,
    VerifyPaymentRequest,
)
from src.services.order_service import OrderService

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post(
    "",
    response_model=OrderCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Place an order",
    description="Places an order from the cart. Online orders return a Stripe client secret to complete payment.",
)
async def create_order(data: OrderCreate, user: CurrentUser) -> OrderCreateResponse:
    """Place an order from the current user's cart.

    Item prices are re-read from the catalog and stock is reserved before the
    order is written.

    Args:
        data: Address, payment method and optional notes.
        user: Authenticated user.

    Returns:
        OrderCreateResponse: The order, plus payment credentials for STRIPE.
    """
    service = OrderService()
    result = await service.create_order(
        user_id=user.user_id,
        address_id=data.address_id,
        payment_method=data.payment_method,
        order_notes=data.order_notes,
    )
    client_secret = result["client_secret"]
    return OrderCreateResponse(
        order=OrderResponse.from_order(result["order"]),
        client_secret=client_secret,
        publishable_key=get_settings().stripe_publishable_key if client_secret else None,
    )


@router.get(
    "",
    response_model=OrderListResponse,
    summary="List my orders",
    description="Returns the authenticated user's orders, newest first.",
)
async def list_orders(
    user: CurrentUser,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=50),
    order_status: OrderStatus | None = Query(default=None, alias="status"),
) -> OrderListResponse:
    service = OrderService()
    orders, pagination = await service.list_orders(user.user_id, status=order_status, page=page, limit=limit)
    return OrderListResponse(items=[OrderSummary.from_order(o) for o in orders], pagination=pagination)


@router.get(
    "/{order_id}",
    response_model=OrderResponse,
    summary="Get order by ID",
    description="Returns one of the authenticated user's orders.",
)
async def get_order(order_id: UUID, user: CurrentUser) -> OrderResponse:
    service = OrderService()
    order = await service.get_order(user.user_id, order_id)
    return OrderResponse.from_order(order)


@router.post(
    "/{order_id}/verify-payment",
    response_model=OrderResponse,
    summary="Verify a completed payment",
    description="Checks the PaymentIntent with Stripe and confirms the order when it has succeeded.",
)
async def verify_payment(order_id: UUID, data: VerifyPaymentRequest, user: CurrentUser) -> OrderResponse:
    """Confirm a payment the client reports as completed.

    The webhook usually gets there first; this endpoint lets the client
    confirm without waiting for it. Both paths are idempotent.
    """
    service = OrderService()
    order = await service.verify_payment(user.user_id, order_id, data.payment_intent_id)
    return OrderResponse.from_order(order)


@router.get(
    "/{order_id}/payment-status",
    response_model=PaymentStatusResponse,
    summary="Get payment status",
    description="Returns payment state, reconciling a pending payment with Stripe.",
)
async def get_payment_status(order_id: UUID, user: CurrentUser) -> PaymentStatusResponse:
    service = OrderService()
    result = await service.get_payment_status(user.user_id, order_id)
    return PaymentStatusResponse(**result)


@router.post(
    "/{order_id}/retry-payment",
    response_model=RetryPaymentResponse,
    summary="Retry payment",
    description="Starts a new payment for an unpaid online order.",
)
async def retry_payment(order_id: UUID, user: CurrentUser) -> RetryPaymentResponse:
    service = OrderService()
    result = await service.retry_payment(user.user_id, order_id)
    order = result["order"]
    return RetryPaymentResponse(
        order_id=order.id,
        client_secret=result["client_secret"],
        payment_expires_at=order.payment_expires_at,
        publishable_key=get_settings().stripe_publishable_key or None,
    )


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel order",
    description="Cancels a cash-on-delivery order that has not been processed yet.",
)
async def cancel_order(order_id: UUID, user: CurrentUser, data: CancelOrderRequest | None = None) -> OrderResponse:
    service = OrderService()
    order = await service.cancel_by_user(user.user_id, order_id, reason=data.reason if data else None)
    return OrderResponse.from_order(order)
