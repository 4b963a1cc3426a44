"""Cart model type definitions for database operations."""

from datetime import datetime
from typing import TypedDict
from uuid import UUID


class CartItem(TypedDict):
    """Structure for a single line in a cart.

    Stored as part of the carts.items JSONB array.
    """

    id: str
    product_id: str
    quantity_option_id: str
    quantity: int
    added_at: str


class Cart(TypedDict):
    """Carts table row representation. One cart per user."""

    id: UUID
    user_id: UUID
    items: list[CartItem]
    created_at: datetime
    updated_at: datetime
