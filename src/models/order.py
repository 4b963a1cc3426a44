"""Order aggregate and its embedded value objects.

An order row stores its embedded collections (items, status history,
payment attempts, refunds) as JSONB arrays. The models below are the
typed view of one row; ``Order.to_record()`` produces the column payload
written back to the ``orders`` table.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OrderStatus(str, Enum):
    """Fulfillment progress of an order."""

    PLACED = "PLACED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CONFIRMED = "CONFIRMED"
    PACKED = "PACKED"
    READY_TO_DELIVER = "READY_TO_DELIVER"
    HANDED_TO_AGENT = "HANDED_TO_AGENT"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"
    REFUND_INITIATED = "REFUND_INITIATED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"


class PaymentStatus(str, Enum):
    """Monetary settlement of an order, independent of OrderStatus."""

    PENDING = "PENDING"
    AUTHORIZED = "AUTHORIZED"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUND_INITIATED = "REFUND_INITIATED"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    """How the customer pays."""

    STRIPE = "STRIPE"
    COD = "COD"


class ActorRole(str, Enum):
    """Who triggered a transition or cancellation."""

    USER = "USER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class AttemptOutcome(str, Enum):
    """Result of a single interaction with the gateway."""

    INITIATED = "INITIATED"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class RefundState(str, Enum):
    """Gateway-side state of a refund."""

    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"


class Actor(BaseModel):
    """The party performing a mutation."""

    model_config = ConfigDict(frozen=True)

    role: ActorRole
    id: UUID | None = None

    @classmethod
    def system(cls) -> "Actor":
        return cls(role=ActorRole.SYSTEM)


class ProductSnapshot(BaseModel):
    """Product fields captured at order time."""

    name: str
    slug: str | None = None
    image: str | None = None
    category_id: str | None = None


class QuantityOptionSnapshot(BaseModel):
    """Quantity tier and its price captured at order time."""

    label: str
    price_cents: int = Field(ge=0)
    selling_price_cents: int = Field(ge=0)
    discount_percent: float = Field(default=0, ge=0, le=100)
    discount_flat_cents: int = Field(default=0, ge=0)


class OrderItem(BaseModel):
    """A line of an order. Immutable apart from ``is_reviewed``."""

    id: str = Field(default_factory=lambda: str(uuid4()))
    product_id: str
    quantity_option_id: str
    product_snapshot: ProductSnapshot
    quantity_option_snapshot: QuantityOptionSnapshot
    quantity: int = Field(ge=1)
    subtotal_cents: int = Field(ge=0)
    is_reviewed: bool = False


class DeliveryAddress(BaseModel):
    """Snapshot of the address the order ships to."""

    label: str | None = None
    house_number: str | None = None
    street: str | None = None
    colony: str | None = None
    landmark: str | None = None
    latitude: float | None = None
    longitude: float | None = None


class StatusHistoryEntry(BaseModel):
    """One recorded status transition."""

    status: OrderStatus
    timestamp: datetime
    actor_role: ActorRole = ActorRole.SYSTEM
    actor_id: UUID | None = None
    note: str | None = None


class PaymentAttempt(BaseModel):
    """One interaction with the payment gateway."""

    attempted_at: datetime
    stripe_payment_id: str | None = None
    outcome: AttemptOutcome
    method: str | None = None
    error_code: str | None = None
    error_description: str | None = None


class PaymentDetails(BaseModel):
    """Structured snapshot of what the gateway reported about the payment."""

    method: str | None = None
    amount_cents: int | None = None
    currency: str | None = None
    card_brand: str | None = None
    card_last4: str | None = None
    card_funding: str | None = None
    wallet: str | None = None
    fee_cents: int | None = None
    receipt_url: str | None = None
    error_code: str | None = None
    decline_code: str | None = None
    error_description: str | None = None
    failed_at: datetime | None = None
    captured_at: datetime | None = None
    refunded_at: datetime | None = None


class RefundRecord(BaseModel):
    """A refund issued against the order's payment, keyed by gateway refund id."""

    stripe_refund_id: str
    amount_cents: int = Field(ge=0)
    state: RefundState = RefundState.PENDING
    reason: str | None = None
    created_at: datetime
    processed_at: datetime | None = None


class Order(BaseModel):
    """Order aggregate root as stored in the ``orders`` table."""

    model_config = ConfigDict(validate_assignment=True)

    id: UUID = Field(default_factory=uuid4)
    order_number: str
    user_id: UUID
    items: list[OrderItem] = Field(min_length=1)
    delivery_address: DeliveryAddress = Field(default_factory=DeliveryAddress)

    subtotal_cents: int = Field(ge=0)
    delivery_charge_cents: int = Field(default=0, ge=0)
    discount_cents: int = Field(default=0, ge=0)
    total_cents: int = Field(ge=0)
    currency: str = "inr"

    payment_method: PaymentMethod
    payment_status: PaymentStatus = PaymentStatus.PENDING
    stripe_payment_intent_id: str | None = None
    stripe_charge_id: str | None = None
    stripe_refund_id: str | None = None
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    payment_attempts: list[PaymentAttempt] = Field(default_factory=list)
    payment_expires_at: datetime | None = None

    status: OrderStatus = OrderStatus.PLACED
    status_history: list[StatusHistoryEntry] = Field(default_factory=list)

    cancellation_reason: str | None = None
    cancelled_by: ActorRole | None = None
    cancelled_at: datetime | None = None

    refund_amount_cents: int | None = Field(default=None, ge=0)
    refunded_at: datetime | None = None
    refunds: list[RefundRecord] = Field(default_factory=list)

    stock_reserved: bool = False
    order_notes: str | None = None
    admin_notes: str | None = None

    version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "Order":
        """Build an Order from a database row."""
        return cls.model_validate(record)

    def to_record(self) -> dict[str, Any]:
        """Serialize to a JSON-compatible row payload.

        ``created_at``/``updated_at`` are owned by the database.
        """
        return self.model_dump(mode="json", exclude={"created_at", "updated_at"})

    @model_validator(mode="after")
    def _check_totals(self) -> "Order":
        if not self.totals_are_consistent():
            raise ValueError(
                f"total_cents {self.total_cents} != subtotal_cents - discount_cents + delivery_charge_cents"
            )
        return self

    def totals_are_consistent(self) -> bool:
        """Check ``total == subtotal - discount + delivery_charge``."""
        return self.total_cents == self.subtotal_cents - self.discount_cents + self.delivery_charge_cents
