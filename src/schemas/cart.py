"""Cart Pydantic schemas for API request/response models."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from src.services.cart_service import MAX_LINE_QUANTITY


class CartItemAdd(BaseModel):
    """Schema for adding an item via POST /cart/items."""

    product_id: str = Field(min_length=1, description="Product ID")
    quantity_option_id: str = Field(min_length=1, description="Quantity option (tier) ID")
    quantity: int = Field(default=1, ge=1, le=MAX_LINE_QUANTITY, description="Units to add")


class CartItemUpdate(BaseModel):
    """Schema for changing a line's quantity."""

    quantity: int = Field(ge=1, le=MAX_LINE_QUANTITY, description="New quantity")


class CartItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    product_id: str
    quantity_option_id: str
    quantity: int
    added_at: str | None = None


class CartResponse(BaseModel):
    """The user's cart."""

    items: list[CartItemResponse] = Field(default_factory=list)
    item_count: int = Field(description="Total units in the cart")

    @classmethod
    def from_record(cls, cart: dict[str, Any]) -> "CartResponse":
        items = cart.get("items") or []
        return cls(
            items=[CartItemResponse(**item) for item in items],
            item_count=sum(item["quantity"] for item in items),
        )


class ValidatedLineResponse(BaseModel):
    """A cart line priced from the live catalog."""

    cart_item_id: str
    product_id: str
    product_name: str
    quantity_option_id: str
    label: str
    quantity: int
    selling_price_cents: int
    subtotal_cents: int


class InvalidLineResponse(BaseModel):
    cart_item_id: str
    product_name: str | None = None
    reason: str


class CartValidationResponse(BaseModel):
    """Checkout preview of the cart."""

    valid: bool = Field(description="Whether the cart can be ordered as is")
    items: list[ValidatedLineResponse]
    invalid_items: list[InvalidLineResponse]
    subtotal_cents: int
    delivery_charge_cents: int
    total_cents: int
