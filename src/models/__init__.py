"""Database model type definitions."""

from src.models.cart import Cart, CartItem
from src.models.order import (
    Actor,
    ActorRole,
    AttemptOutcome,
    Order,
    OrderItem,
    OrderStatus,
    PaymentAttempt,
    PaymentMethod,
    PaymentStatus,
)
from src.models.product import Product, QuantityOption

__all__ = [
    "Actor",
    "ActorRole",
    "AttemptOutcome",
    "Cart",
    "CartItem",
    "Order",
    "OrderItem",
    "OrderStatus",
    "PaymentAttempt",
    "PaymentMethod",
    "PaymentStatus",
    "Product",
    "QuantityOption",
]
