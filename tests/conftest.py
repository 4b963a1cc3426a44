"""Pytest configuration and fixtures."""

import os
import time
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from typing import Any
from unittest.mock import MagicMock, patch
from uuid import UUID

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing application modules
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("SUPABASE_URL", "https://test-project.supabase.co")
os.environ.setdefault("SUPABASE_SECRET_KEY", "test-secret-key")
os.environ.setdefault("SUPABASE_SIGNING_KEY_JWK", "test-signing-key-jwk")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_stripe_secret_key")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_webhook_secret")
os.environ.setdefault("STRIPE_PUBLISHABLE_KEY", "pk_test_stripe_publishable_key")
os.environ.setdefault("PAYMENT_EXPIRY_SWEEP_ENABLED", "false")

USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
ADMIN_ID = UUID("990e8400-e29b-41d4-a716-446655440000")
ORDER_ID = UUID("660e8400-e29b-41d4-a716-446655440000")


@pytest.fixture(scope="session")
def test_settings() -> Generator[Any, None, None]:
    """Provide test settings with cleared cache.

    Yields:
        Settings: Test configuration settings.
    """
    from src.core.config import get_settings

    get_settings.cache_clear()

    settings = get_settings()
    yield settings

    get_settings.cache_clear()


@pytest.fixture
def mock_supabase_client() -> Generator[MagicMock, None, None]:
    """Provide a mocked Supabase client.

    Yields:
        MagicMock: Mocked Supabase client for testing.
    """
    mock_client = MagicMock()

    mock_response = MagicMock()
    mock_response.data = []
    mock_client.table.return_value.select.return_value.limit.return_value.execute.return_value = (
        mock_response
    )

    with patch("src.core.supabase.get_supabase_client", return_value=mock_client):
        yield mock_client


@pytest.fixture
def client(mock_supabase_client: MagicMock) -> Generator[TestClient, None, None]:
    """Provide a test client for the FastAPI application."""
    from src.main import app

    with TestClient(app) as test_client:
        yield test_client


def _token_payload(sub: UUID, role: str | None) -> Any:
    from src.schemas.auth import TokenPayload

    now = int(time.time())
    return TokenPayload(
        sub=str(sub),
        email="shopper@example.com",
        role="authenticated",
        app_metadata={"role": role} if role else {},
        exp=now + 3600,
        iat=now,
    )


@pytest.fixture
def user_auth() -> Generator[dict[str, str], None, None]:
    """Authorization headers for a regular customer."""
    with patch("src.api.deps.decode_jwt", return_value=_token_payload(USER_ID, "customer")):
        yield {"Authorization": "Bearer customer-token"}


@pytest.fixture
def admin_auth() -> Generator[dict[str, str], None, None]:
    """Authorization headers for an admin."""
    with patch("src.api.deps.decode_jwt", return_value=_token_payload(ADMIN_ID, "admin")):
        yield {"Authorization": "Bearer admin-token"}


@pytest.fixture
def make_order() -> Callable[..., Any]:
    """Factory for Order instances with sensible defaults.

    Keyword arguments override any Order field.
    """
    from src.models.order import (
        Order,
        OrderItem,
        OrderStatus,
        PaymentMethod,
        ProductSnapshot,
        QuantityOptionSnapshot,
        StatusHistoryEntry,
    )

    def _make(**overrides: Any) -> Order:
        now = datetime.now(timezone.utc)
        fields: dict[str, Any] = {
            "id": ORDER_ID,
            "order_number": "SH202610170001",
            "user_id": USER_ID,
            "items": [
                OrderItem(
                    id="item-1",
                    product_id="prod-apple",
                    quantity_option_id="opt-apple-1kg",
                    product_snapshot=ProductSnapshot(name="Organic Apples", slug="organic-apples"),
                    quantity_option_snapshot=QuantityOptionSnapshot(
                        label="1kg", price_cents=25000, selling_price_cents=22000, discount_percent=12
                    ),
                    quantity=2,
                    subtotal_cents=44000,
                )
            ],
            "subtotal_cents": 44000,
            "delivery_charge_cents": 4000,
            "discount_cents": 0,
            "total_cents": 48000,
            "payment_method": PaymentMethod.STRIPE,
            "stripe_payment_intent_id": "pi_test_123",
            "payment_expires_at": now + timedelta(minutes=30),
            "status": OrderStatus.PAYMENT_PENDING,
            "status_history": [
                StatusHistoryEntry(status=OrderStatus.PLACED, timestamp=now),
                StatusHistoryEntry(status=OrderStatus.PAYMENT_PENDING, timestamp=now),
            ],
            "stock_reserved": True,
            "created_at": now,
        }
        fields.update(overrides)
        return Order(**fields)

    return _make


class FakeOrderRepository:
    """Single-order stand-in for OrderRepository with versioned writes."""

    def __init__(self, order: Any) -> None:
        self.order = order
        self.writes = 0

    async def get(self, order_id: Any, use_cache: bool = False) -> Any:
        if str(order_id) != str(self.order.id):
            return None
        return self.order.model_copy(deep=True)

    async def get_by_payment_intent(self, payment_intent_id: str) -> Any:
        if self.order.stripe_payment_intent_id != payment_intent_id:
            return None
        return self.order.model_copy(deep=True)

    async def mutate(self, order_id: Any, mutation: Callable[[Any], Any], max_retries: int | None = None) -> Any:
        from src.api.middleware.error_handler import NotFoundError
        from src.services.order_repository import MutationResult

        if str(order_id) != str(self.order.id):
            raise NotFoundError("Order not found")

        current = self.order.model_copy(deep=True)
        previous = current.model_copy(deep=True)
        updated = mutation(current)
        if updated is None:
            return MutationResult(order=previous, previous=previous, changed=False)
        updated.version = previous.version + 1
        self.order = updated
        self.writes += 1
        return MutationResult(order=updated.model_copy(deep=True), previous=previous, changed=True)


@pytest.fixture
def make_repository() -> Callable[[Any], FakeOrderRepository]:
    """Factory for an in-memory repository holding one order."""
    return FakeOrderRepository
