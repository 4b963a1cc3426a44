"""Cart business logic service."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from src.api.middleware.error_handler import NotFoundError, ValidationError
from src.core.supabase import get_supabase_client
from src.models.cart import CartItem
from src.models.product import Product, QuantityOption

logger = logging.getLogger(__name__)

MAX_LINE_QUANTITY = 50


@dataclass
class ValidatedLine:
    """A cart line priced from live catalog data."""

    cart_item_id: str
    product: Product
    option: QuantityOption
    quantity: int

    @property
    def subtotal_cents(self) -> int:
        return self.option["selling_price_cents"] * self.quantity


@dataclass
class CartValidation:
    """Result of re-checking a cart against the catalog."""

    valid: list[ValidatedLine] = field(default_factory=list)
    invalid: list[dict[str, Any]] = field(default_factory=list)

    @property
    def subtotal_cents(self) -> int:
        return sum(line.subtotal_cents for line in self.valid)


def find_cart_item(items: list[CartItem], item_id: str) -> CartItem | None:
    """Return the cart line with ``item_id``, or None."""
    return next((item for item in items if item["id"] == item_id), None)


def remove_cart_item(items: list[CartItem], item_id: str) -> list[CartItem]:
    """Return a new list without the line ``item_id``."""
    return [item for item in items if item["id"] != item_id]


class CartService:
    """Service for the per-user shopping cart."""

    def __init__(self) -> None:
        self.client = get_supabase_client()

    async def get_cart(self, user_id: UUID) -> dict[str, Any]:
        """Get the user's cart, or an empty one if none is stored."""
        response = (
            self.client.table("carts")
            .select("*")
            .eq("user_id", str(user_id))
            .maybe_single()
            .execute()
        )
        if response and response.data:
            return response.data
        return {"user_id": str(user_id), "items": []}

    async def _save_items(self, user_id: UUID, items: list[CartItem]) -> dict[str, Any]:
        response = (
            self.client.table("carts")
            .upsert(
                {
                    "user_id": str(user_id),
                    "items": items,
                    "updated_at": datetime.now(timezone.utc).isoformat(),
                },
                on_conflict="user_id",
            )
            .execute()
        )
        return response.data[0] if response.data else {"user_id": str(user_id), "items": items}

    async def add_item(
        self,
        user_id: UUID,
        product_id: str,
        quantity_option_id: str,
        quantity: int,
    ) -> dict[str, Any]:
        """Add a quantity of an option, merging with an existing line.

        Raises:
            NotFoundError: Product or option does not exist.
            ValidationError: Product inactive or not enough stock.
        """
        cart = await self.get_cart(user_id)
        items: list[CartItem] = list(cart.get("items") or [])

        existing = next(
            (item for item in items if item["quantity_option_id"] == quantity_option_id),
            None,
        )
        new_quantity = quantity + (existing["quantity"] if existing else 0)
        await self._check_availability(product_id, quantity_option_id, new_quantity)

        if existing:
            items = [
                {**item, "quantity": new_quantity} if item["id"] == existing["id"] else item
                for item in items
            ]
        else:
            items.append(
                {
                    "id": str(uuid4()),
                    "product_id": product_id,
                    "quantity_option_id": quantity_option_id,
                    "quantity": quantity,
                    "added_at": datetime.now(timezone.utc).isoformat(),
                }
            )

        return await self._save_items(user_id, items)

    async def update_item(self, user_id: UUID, item_id: str, quantity: int) -> dict[str, Any]:
        """Set the quantity of a cart line."""
        cart = await self.get_cart(user_id)
        items: list[CartItem] = list(cart.get("items") or [])
        item = find_cart_item(items, item_id)
        if item is None:
            raise NotFoundError("Cart item not found")

        await self._check_availability(item["product_id"], item["quantity_option_id"], quantity)
        items = [{**i, "quantity": quantity} if i["id"] == item_id else i for i in items]
        return await self._save_items(user_id, items)

    async def remove_item(self, user_id: UUID, item_id: str) -> dict[str, Any]:
        """Remove a line from the cart."""
        cart = await self.get_cart(user_id)
        items: list[CartItem] = list(cart.get("items") or [])
        if find_cart_item(items, item_id) is None:
            raise NotFoundError("Cart item not found")
        return await self._save_items(user_id, remove_cart_item(items, item_id))

    async def clear(self, user_id: UUID) -> None:
        """Empty the cart."""
        self.client.table("carts").update({"items": []}).eq("user_id", str(user_id)).execute()

    async def _check_availability(self, product_id: str, quantity_option_id: str, quantity: int) -> None:
        if quantity > MAX_LINE_QUANTITY:
            raise ValidationError(f"At most {MAX_LINE_QUANTITY} units per item")

        option_response = (
            self.client.table("product_quantity_options")
            .select("*")
            .eq("id", quantity_option_id)
            .maybe_single()
            .execute()
        )
        option = option_response.data if option_response else None
        if not option or option["product_id"] != product_id:
            raise NotFoundError("Product option not found")

        product_response = (
            self.client.table("products")
            .select("id, name, is_active")
            .eq("id", product_id)
            .maybe_single()
            .execute()
        )
        product = product_response.data if product_response else None
        if not product:
            raise NotFoundError("Product not found")
        if not product.get("is_active", False):
            raise ValidationError("Product is no longer available")
        if option["stock"] < quantity:
            raise ValidationError(f"Only {option['stock']} left of {product['name']} ({option['label']})")

    async def validate(self, user_id: UUID) -> CartValidation:
        """Re-price every line from live catalog data.

        Products and options are fetched with one query each rather than
        one per line.
        """
        cart = await self.get_cart(user_id)
        items: list[CartItem] = cart.get("items") or []
        result = CartValidation()
        if not items:
            return result

        product_ids = sorted({item["product_id"] for item in items})
        option_ids = sorted({item["quantity_option_id"] for item in items})

        products_response = self.client.table("products").select("*").in_("id", product_ids).execute()
        options_response = (
            self.client.table("product_quantity_options").select("*").in_("id", option_ids).execute()
        )
        products = {row["id"]: row for row in products_response.data or []}
        options = {row["id"]: row for row in options_response.data or []}

        for item in items:
            product = products.get(item["product_id"])
            option = options.get(item["quantity_option_id"])
            reason = None
            if product is None or not product.get("is_active", False):
                reason = "Product is no longer available"
            elif option is None or option["product_id"] != item["product_id"]:
                reason = "Selected quantity is no longer available"
            elif option["stock"] < item["quantity"]:
                reason = f"Only {option['stock']} in stock"

            if reason:
                result.invalid.append(
                    {
                        "cart_item_id": item["id"],
                        "product_name": product["name"] if product else None,
                        "reason": reason,
                    }
                )
            else:
                result.valid.append(
                    ValidatedLine(
                        cart_item_id=item["id"],
                        product=product,
                        option=option,
                        quantity=item["quantity"],
                    )
                )

        return result

    async def validate_for_order(self, user_id: UUID) -> CartValidation:
        """Validate the cart for checkout.

        Raises:
            ValidationError: Cart is empty or contains unavailable lines.
        """
        validation = await self.validate(user_id)
        if not validation.valid and not validation.invalid:
            raise ValidationError("Cart is empty")
        if validation.invalid:
            raise ValidationError(
                "Some items in your cart are no longer available",
                details=[
                    {
                        "loc": ["items", entry["cart_item_id"]],
                        "msg": entry["reason"],
                        "type": "unavailable_item",
                    }
                    for entry in validation.invalid
                ],
            )
        return validation
