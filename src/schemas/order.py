"""Order Pydantic schemas for API request/response models."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from src.models.order import (
    ActorRole,
    DeliveryAddress,
    Order,
    OrderItem,
    OrderStatus,
    PaymentAttempt,
    PaymentDetails,
    PaymentMethod,
    PaymentStatus,
    RefundRecord,
    StatusHistoryEntry,
)
from src.schemas.common import Pagination


class OrderCreate(BaseModel):
    """Schema for placing an order via POST /orders."""

    address_id: UUID = Field(description="Saved delivery address UUID")
    payment_method: PaymentMethod = Field(description="STRIPE for online payment or COD")
    order_notes: str | None = Field(default=None, max_length=500, description="Note for the store")


class VerifyPaymentRequest(BaseModel):
    """Client report of a completed payment."""

    payment_intent_id: str = Field(min_length=1, description="Stripe PaymentIntent ID returned to the client")


class CancelOrderRequest(BaseModel):
    """Customer cancellation request."""

    reason: str | None = Field(default=None, max_length=500, description="Why the order is cancelled")


class OrderResponse(BaseModel):
    """Order as shown to its customer."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(description="Order unique identifier")
    order_number: str = Field(description="Human-readable order number")
    items: list[OrderItem] = Field(description="Ordered items with price snapshots")
    delivery_address: DeliveryAddress = Field(description="Delivery address snapshot")
    subtotal_cents: int = Field(description="Sum of item subtotals")
    delivery_charge_cents: int = Field(description="Delivery charge")
    discount_cents: int = Field(description="Order discount")
    total_cents: int = Field(description="Amount payable")
    currency: str = Field(description="Currency code")
    payment_method: PaymentMethod
    payment_status: PaymentStatus
    payment_expires_at: datetime | None = Field(default=None, description="Deadline for online payment")
    status: OrderStatus
    status_history: list[StatusHistoryEntry] = Field(description="Status changes, oldest first")
    cancellation_reason: str | None = None
    cancelled_at: datetime | None = None
    refund_amount_cents: int | None = None
    refunded_at: datetime | None = None
    order_notes: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        return cls.model_validate(order, from_attributes=True)


class OrderSummary(BaseModel):
    """Compact order for list views."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: PaymentMethod
    total_cents: int
    currency: str
    item_count: int = Field(description="Number of order lines")
    created_at: datetime | None = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderSummary":
        return cls(
            id=order.id,
            order_number=order.order_number,
            status=order.status,
            payment_status=order.payment_status,
            payment_method=order.payment_method,
            total_cents=order.total_cents,
            currency=order.currency,
            item_count=len(order.items),
            created_at=order.created_at,
        )


class OrderListResponse(BaseModel):
    """Page of the customer's orders."""

    items: list[OrderSummary] = Field(description="Orders on this page")
    pagination: Pagination


class OrderCreateResponse(BaseModel):
    """Result of placing an order."""

    order: OrderResponse
    client_secret: str | None = Field(default=None, description="Stripe client secret for online payment")
    publishable_key: str | None = Field(default=None, description="Stripe publishable key for the client")


class PaymentStatusResponse(BaseModel):
    """Current payment state of an order."""

    order_id: UUID
    order_number: str
    status: OrderStatus
    payment_status: PaymentStatus
    payment_expires_at: datetime | None = None
    total_cents: int
    currency: str
    can_retry: bool = Field(description="Whether a new payment may be started")


class RetryPaymentResponse(BaseModel):
    """New payment started for an order."""

    order_id: UUID
    client_secret: str
    payment_expires_at: datetime | None = None
    publishable_key: str | None = None


class StatusUpdateRequest(BaseModel):
    """Admin status change."""

    status: OrderStatus = Field(description="Target status")
    note: str | None = Field(default=None, max_length=500, description="Note recorded in the status history")


class AdminCancelRequest(BaseModel):
    """Admin cancellation."""

    reason: str = Field(min_length=1, max_length=500, description="Reason shown to the customer")
    initiate_refund: bool = Field(default=True, description="Refund the payment if the order is paid")


class RefundRequest(BaseModel):
    """Admin refund."""

    amount_cents: int | None = Field(default=None, gt=0, description="Amount to refund; everything when omitted")
    reason: str | None = Field(default=None, max_length=500)


class PaymentInfo(BaseModel):
    """Gateway-side view of an order's payment."""

    stripe_payment_intent_id: str | None = None
    stripe_charge_id: str | None = None
    stripe_refund_id: str | None = None
    details: PaymentDetails
    refunds: list[RefundRecord]


class AdminOrderResponse(OrderResponse):
    """Order with back-office fields."""

    user_id: UUID
    cancelled_by: ActorRole | None = None
    admin_notes: str | None = None
    stock_reserved: bool
    payment_info: PaymentInfo
    payment_attempts: list[PaymentAttempt]

    @classmethod
    def from_order(cls, order: Order) -> "AdminOrderResponse":
        data = order.model_dump()
        data["payment_info"] = PaymentInfo(
            stripe_payment_intent_id=order.stripe_payment_intent_id,
            stripe_charge_id=order.stripe_charge_id,
            stripe_refund_id=order.stripe_refund_id,
            details=order.payment_details,
            refunds=order.refunds,
        )
        return cls.model_validate(data)


class AdminOrderSummary(OrderSummary):
    user_id: UUID

    @classmethod
    def from_order(cls, order: Order) -> "AdminOrderSummary":
        return cls(**OrderSummary.from_order(order).model_dump(), user_id=order.user_id)


class AdminOrderListResponse(BaseModel):
    """Page of orders for the back office."""

    items: list[AdminOrderSummary]
    pagination: Pagination
