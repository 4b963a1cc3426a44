"""Catalog model type definitions for database operations.

The catalog is maintained elsewhere; this service only reads it and
adjusts ``stock`` on quantity options.
"""

from datetime import datetime
from typing import Any, TypedDict


class Product(TypedDict):
    """Row of the products table."""

    id: str
    name: str
    slug: str
    category_id: str | None
    images: list[dict[str, Any]]
    is_active: bool
    created_at: datetime
    updated_at: datetime


class QuantityOption(TypedDict):
    """Row of the product_quantity_options table.

    One sellable tier of a product (e.g. "500g") with its own price and stock.
    """

    id: str
    product_id: str
    label: str
    price_cents: int
    discount_percent: float
    discount_flat_cents: int
    selling_price_cents: int
    stock: int


def primary_image_url(product: Product) -> str | None:
    """Return the primary image URL, falling back to the first image."""
    images = product.get("images") or []
    for image in images:
        if image.get("is_primary"):
            return image.get("url")
    return images[0].get("url") if images else None
