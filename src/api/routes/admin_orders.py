"""Back-office order management routes."""

from datetime import datetime
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Query

from src.api.deps import AdminUser
from src.models.order import OrderStatus, PaymentMethod, PaymentStatus
from src.schemas.order import (
    AdminCancelRequest,
    AdminOrderListResponse,
    AdminOrderResponse,
    AdminOrderSummary,
    RefundRequest,
    StatusUpdateRequest,
)
from src.services.order_service import OrderService

router = APIRouter(prefix="/admin/orders", tags=["admin"])


@router.get(
    "",
    response_model=AdminOrderListResponse,
    summary="List orders",
    description="Lists all orders with filters, search and sorting.",
)
async def list_orders(
    admin: AdminUser,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    order_status: OrderStatus | None = Query(default=None, alias="status"),
    payment_status: PaymentStatus | None = Query(default=None),
    payment_method: PaymentMethod | None = Query(default=None),
    start_date: datetime | None = Query(default=None, description="Created at or after"),
    end_date: datetime | None = Query(default=None, description="Created at or before"),
    search: str | None = Query(default=None, max_length=50, description="Order number substring"),
    sort: str = Query(default="-created_at", description="Sort field, prefix with - for descending"),
) -> AdminOrderListResponse:
    filters: dict[str, Any] = {
        "status": order_status.value if order_status else None,
        "payment_status": payment_status.value if payment_status else None,
        "payment_method": payment_method.value if payment_method else None,
        "start_date": start_date,
        "end_date": end_date,
        "search": search,
    }
    service = OrderService()
    orders, pagination = await service.admin_list_orders(filters, page=page, limit=limit, sort=sort)
    return AdminOrderListResponse(
        items=[AdminOrderSummary.from_order(o) for o in orders],
        pagination=pagination,
    )


@router.get(
    "/{order_id}",
    response_model=AdminOrderResponse,
    summary="Get order details",
    description="Returns an order with payment information and all payment attempts.",
)
async def get_order(order_id: UUID, admin: AdminUser) -> AdminOrderResponse:
    service = OrderService()
    order = await service.admin_get_order(order_id)
    return AdminOrderResponse.from_order(order)


@router.put(
    "/{order_id}/status",
    response_model=AdminOrderResponse,
    summary="Update order status",
    description="Moves the order to an adjacent status. Non-adjacent targets return 409.",
)
async def update_status(order_id: UUID, data: StatusUpdateRequest, admin: AdminUser) -> AdminOrderResponse:
    service = OrderService()
    order = await service.update_status(admin.user_id, order_id, data.status, note=data.note)
    return AdminOrderResponse.from_order(order)


@router.post(
    "/{order_id}/cancel",
    response_model=AdminOrderResponse,
    summary="Cancel order",
    description="Cancels the order, releases its stock and refunds a captured payment by default.",
)
async def cancel_order(order_id: UUID, data: AdminCancelRequest, admin: AdminUser) -> AdminOrderResponse:
    service = OrderService()
    order = await service.cancel_by_admin(
        admin.user_id, order_id, data.reason, initiate_refund=data.initiate_refund
    )
    return AdminOrderResponse.from_order(order)


@router.post(
    "/{order_id}/refund",
    response_model=AdminOrderResponse,
    summary="Refund order",
    description="Refunds all or part of the captured payment.",
)
async def refund_order(order_id: UUID, data: RefundRequest, admin: AdminUser) -> AdminOrderResponse:
    service = OrderService()
    order = await service.initiate_refund(
        admin.user_id, order_id, amount_cents=data.amount_cents, reason=data.reason
    )
    return AdminOrderResponse.from_order(order)
