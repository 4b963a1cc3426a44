"""Shopping cart API routes."""

from fastapi import APIRouter, status

from src.api.deps import CurrentUser
from src.schemas.cart import (
    CartItemAdd,
    CartItemUpdate,
    CartResponse,
    CartValidationResponse,
    InvalidLineResponse,
    ValidatedLineResponse,
)
from src.services.cart_service import CartService
from src.services.order_service import calculate_delivery_charge

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("", response_model=CartResponse, summary="Get my cart")
async def get_cart(user: CurrentUser) -> CartResponse:
    service = CartService()
    return CartResponse.from_record(await service.get_cart(user.user_id))


@router.post(
    "/items",
    response_model=CartResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Add item to cart",
    description="Adds units of a quantity option. Adding an option already in the cart increases its quantity.",
)
async def add_item(data: CartItemAdd, user: CurrentUser) -> CartResponse:
    service = CartService()
    cart = await service.add_item(user.user_id, data.product_id, data.quantity_option_id, data.quantity)
    return CartResponse.from_record(cart)


@router.patch("/items/{item_id}", response_model=CartResponse, summary="Change item quantity")
async def update_item(item_id: str, data: CartItemUpdate, user: CurrentUser) -> CartResponse:
    service = CartService()
    cart = await service.update_item(user.user_id, item_id, data.quantity)
    return CartResponse.from_record(cart)


@router.delete("/items/{item_id}", response_model=CartResponse, summary="Remove item from cart")
async def remove_item(item_id: str, user: CurrentUser) -> CartResponse:
    service = CartService()
    cart = await service.remove_item(user.user_id, item_id)
    return CartResponse.from_record(cart)


@router.delete("", status_code=status.HTTP_204_NO_CONTENT, summary="Empty the cart")
async def clear_cart(user: CurrentUser) -> None:
    service = CartService()
    await service.clear(user.user_id)


@router.get(
    "/validate",
    response_model=CartValidationResponse,
    summary="Validate cart for checkout",
    description="Re-prices every line from the live catalog and reports unavailable items.",
)
async def validate_cart(user: CurrentUser) -> CartValidationResponse:
    service = CartService()
    validation = await service.validate(user.user_id)
    subtotal = validation.subtotal_cents
    delivery_charge = calculate_delivery_charge(subtotal) if validation.valid else 0
    return CartValidationResponse(
        valid=bool(validation.valid) and not validation.invalid,
        items=[
            ValidatedLineResponse(
                cart_item_id=line.cart_item_id,
                product_id=line.product["id"],
                product_name=line.product["name"],
                quantity_option_id=line.option["id"],
                label=line.option["label"],
                quantity=line.quantity,
                selling_price_cents=line.option["selling_price_cents"],
                subtotal_cents=line.subtotal_cents,
            )
            for line in validation.valid
        ],
        invalid_items=[InvalidLineResponse(**entry) for entry in validation.invalid],
        subtotal_cents=subtotal,
        delivery_charge_cents=delivery_charge,
        total_cents=subtotal + delivery_charge,
    )
