"""Unit tests for OrderService."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import UUID

import pytest

from src.api.middleware.error_handler import NotFoundError, PaymentGatewayError, ValidationError
from src.models.order import ActorRole, OrderStatus, PaymentMethod, PaymentStatus
from src.services.cart_service import CartValidation, ValidatedLine
from src.services.inventory_service import InventoryService, StockLine
from src.services.order_service import OrderService, calculate_delivery_charge, can_retry_payment
from src.services.order_state import InvalidTransitionError

USER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
OTHER_USER_ID = UUID("770e8400-e29b-41d4-a716-446655440000")
ADMIN_ID = UUID("990e8400-e29b-41d4-a716-446655440000")
ADDRESS_ID = UUID("880e8400-e29b-41d4-a716-446655440000")


@pytest.fixture
def mock_supabase():
    """Create a mock Supabase client."""
    return MagicMock()


@pytest.fixture
def mock_settings():
    settings = MagicMock()
    settings.currency = "inr"
    settings.payment_window_minutes = 30
    settings.payment_retry_extension_minutes = 15
    settings.delivery_charge_cents = 4000
    settings.free_delivery_threshold_cents = 50000
    return settings


@pytest.fixture
def mock_gateway():
    gateway = MagicMock()
    gateway.create_payment_intent = AsyncMock(
        return_value={"id": "pi_new", "client_secret": "pi_new_secret", "status": "requires_payment_method"}
    )
    gateway.retrieve_payment_intent = AsyncMock()
    gateway.retrieve_charge = AsyncMock()
    gateway.cancel_payment_intent = AsyncMock()
    gateway.create_refund = AsyncMock()
    return gateway


@pytest.fixture
def inventory():
    with patch("src.services.inventory_service.get_supabase_client", return_value=MagicMock()):
        service = InventoryService()
    service.reserve = AsyncMock()
    service.release = AsyncMock()
    return service


@pytest.fixture
def mock_cart():
    cart = MagicMock()
    cart.validate_for_order = AsyncMock()
    cart.clear = AsyncMock()
    return cart


@pytest.fixture
def mock_audit():
    audit = MagicMock()
    audit.record = AsyncMock()
    return audit


@pytest.fixture
def build_service(mock_supabase, mock_settings, mock_gateway, inventory, mock_cart, mock_audit):
    """Build an OrderService around a given repository."""
    with patch("src.services.order_service.get_supabase_client", return_value=mock_supabase), patch(
        "src.services.order_service.get_settings", return_value=mock_settings
    ):

        def _build(repository):
            return OrderService(
                repository=repository,
                inventory=inventory,
                gateway=mock_gateway,
                cart_service=mock_cart,
                audit=mock_audit,
            )

        yield _build


def _validation(quantity=2):
    product = {"id": "prod-apple", "name": "Organic Apples", "slug": "organic-apples", "images": [], "is_active": True}
    option = {
        "id": "opt-apple-1kg",
        "product_id": "prod-apple",
        "label": "1kg",
        "price_cents": 25000,
        "selling_price_cents": 22000,
        "discount_percent": 12,
        "stock": 10,
    }
    return CartValidation(
        valid=[ValidatedLine(cart_item_id="line-1", product=product, option=option, quantity=quantity)]
    )


def _succeeded_intent(order, charge_id="ch_1"):
    return {
        "id": order.stripe_payment_intent_id,
        "status": "succeeded",
        "amount": order.total_cents,
        "amount_received": order.total_cents,
        "currency": "inr",
        "metadata": {"order_id": str(order.id)},
        "latest_charge": {
            "id": charge_id,
            "amount": order.total_cents,
            "currency": "inr",
            "status": "succeeded",
            "captured": True,
            "created": 1792238400,
            "payment_method_details": {"type": "card", "card": {"brand": "visa", "last4": "4242"}},
        },
    }


class TestDeliveryCharge:
    """Tests for calculate_delivery_charge."""

    def test_charge_below_threshold(self, build_service):
        assert calculate_delivery_charge(49999) == 4000

    def test_free_from_threshold(self, build_service):
        assert calculate_delivery_charge(50000) == 0


class TestCreateOrder:
    """Tests for create_order."""

    @pytest.fixture
    def repository(self, make_repository, make_order):
        repo = make_repository(make_order())
        repo.next_order_number = AsyncMock(return_value="SH202610170001")
        repo.insert = AsyncMock(side_effect=lambda order: order)
        return repo

    @pytest.fixture(autouse=True)
    def address(self, mock_supabase):
        chain = mock_supabase.table.return_value.select.return_value.eq.return_value.eq.return_value
        chain.maybe_single.return_value.execute.return_value = MagicMock(
            data={"id": str(ADDRESS_ID), "label": "Home", "street": "MG Road", "colony": "Indiranagar"}
        )
        return chain

    @pytest.mark.asyncio
    async def test_cod_order(self, build_service, repository, inventory, mock_cart, mock_gateway):
        mock_cart.validate_for_order.return_value = _validation()
        service = build_service(repository)

        result = await service.create_order(USER_ID, ADDRESS_ID, PaymentMethod.COD, order_notes="Ring twice")

        order = result["order"]
        assert result["client_secret"] is None
        assert order.order_number == "SH202610170001"
        assert order.status == OrderStatus.PLACED
        assert order.payment_status == PaymentStatus.PENDING
        assert order.subtotal_cents == 44000
        assert order.delivery_charge_cents == 4000
        assert order.total_cents == 48000
        assert order.totals_are_consistent()
        assert order.stock_reserved is True
        assert order.delivery_address.street == "MG Road"
        assert order.items[0].product_snapshot.name == "Organic Apples"
        assert order.items[0].quantity_option_snapshot.selling_price_cents == 22000
        assert len(order.status_history) == 1
        inventory.reserve.assert_awaited_once_with(
            [StockLine("opt-apple-1kg", 2, label="Organic Apples (1kg)")]
        )
        mock_gateway.create_payment_intent.assert_not_awaited()
        mock_cart.clear.assert_awaited_once_with(USER_ID)

    @pytest.mark.asyncio
    async def test_stripe_order(self, build_service, repository, mock_cart, mock_gateway):
        mock_cart.validate_for_order.return_value = _validation(quantity=3)
        service = build_service(repository)
        before = datetime.now(timezone.utc)

        result = await service.create_order(USER_ID, ADDRESS_ID, PaymentMethod.STRIPE)

        order = result["order"]
        assert result["client_secret"] == "pi_new_secret"
        assert order.status == OrderStatus.PAYMENT_PENDING
        assert order.stripe_payment_intent_id == "pi_new"
        assert order.delivery_charge_cents == 0
        assert order.total_cents == 66000
        assert before + timedelta(minutes=29) < order.payment_expires_at
        assert [entry.status for entry in order.status_history] == [OrderStatus.PLACED, OrderStatus.PAYMENT_PENDING]
        kwargs = mock_gateway.create_payment_intent.await_args.kwargs
        assert kwargs["amount_cents"] == 66000
        assert kwargs["currency"] == "inr"
        assert kwargs["metadata"]["order_id"] == str(order.id)
        assert kwargs["idempotency_key"] == f"order-{order.id}"

    @pytest.mark.asyncio
    async def test_insert_failure_releases_stock_and_payment(
        self, build_service, repository, inventory, mock_cart, mock_gateway
    ):
        mock_cart.validate_for_order.return_value = _validation()
        repository.insert.side_effect = RuntimeError("db down")
        service = build_service(repository)

        with pytest.raises(RuntimeError):
            await service.create_order(USER_ID, ADDRESS_ID, PaymentMethod.STRIPE)

        inventory.release.assert_awaited_once()
        mock_gateway.cancel_payment_intent.assert_awaited_once_with("pi_new")
        mock_cart.clear.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_gateway_failure_releases_stock(self, build_service, repository, inventory, mock_cart, mock_gateway):
        mock_cart.validate_for_order.return_value = _validation()
        mock_gateway.create_payment_intent.side_effect = PaymentGatewayError("Failed to create payment")
        service = build_service(repository)

        with pytest.raises(PaymentGatewayError):
            await service.create_order(USER_ID, ADDRESS_ID, PaymentMethod.STRIPE)

        inventory.release.assert_awaited_once()
        repository.insert.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_address(self, build_service, repository, inventory, mock_cart, address):
        mock_cart.validate_for_order.return_value = _validation()
        address.maybe_single.return_value.execute.return_value = None
        service = build_service(repository)

        with pytest.raises(NotFoundError):
            await service.create_order(USER_ID, ADDRESS_ID, PaymentMethod.COD)

        inventory.reserve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_cart_clear_failure_keeps_order(self, build_service, repository, mock_cart):
        mock_cart.validate_for_order.return_value = _validation()
        mock_cart.clear.side_effect = RuntimeError("cart gone")
        service = build_service(repository)

        result = await service.create_order(USER_ID, ADDRESS_ID, PaymentMethod.COD)

        assert result["order"].status == OrderStatus.PLACED


class TestGetOrder:
    """Tests for get_order."""

    @pytest.mark.asyncio
    async def test_other_users_order_is_not_found(self, build_service, make_repository, make_order):
        service = build_service(make_repository(make_order()))

        with pytest.raises(NotFoundError):
            await service.get_order(OTHER_USER_ID, make_order().id)


class TestVerifyPayment:
    """Tests for verify_payment."""

    @pytest.mark.asyncio
    async def test_confirms_verified_payment(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order()
        repository = make_repository(order)
        mock_gateway.retrieve_payment_intent.return_value = _succeeded_intent(order)
        service = build_service(repository)

        result = await service.verify_payment(USER_ID, order.id, "pi_test_123")

        assert result.status == OrderStatus.CONFIRMED
        assert result.payment_status == PaymentStatus.PAID
        mock_gateway.retrieve_payment_intent.assert_awaited_once_with("pi_test_123")

    @pytest.mark.asyncio
    async def test_already_paid_skips_gateway(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order(status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.PAID)
        service = build_service(make_repository(order))

        result = await service.verify_payment(USER_ID, order.id, "pi_test_123")

        assert result.status == OrderStatus.CONFIRMED
        mock_gateway.retrieve_payment_intent.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_foreign_payment_rejected(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order()
        intent = _succeeded_intent(order)
        intent["metadata"] = {"order_id": "someone-elses-order"}
        mock_gateway.retrieve_payment_intent.return_value = intent
        service = build_service(make_repository(order))

        with pytest.raises(ValidationError, match="does not belong"):
            await service.verify_payment(USER_ID, order.id, "pi_test_123")

    @pytest.mark.asyncio
    async def test_incomplete_payment_rejected(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order()
        intent = {**_succeeded_intent(order), "status": "requires_payment_method"}
        mock_gateway.retrieve_payment_intent.return_value = intent
        service = build_service(make_repository(order))

        with pytest.raises(ValidationError, match="has not completed"):
            await service.verify_payment(USER_ID, order.id, "pi_test_123")

    @pytest.mark.asyncio
    async def test_processing_payment_is_authorized(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order()
        mock_gateway.retrieve_payment_intent.return_value = {**_succeeded_intent(order), "status": "processing"}
        service = build_service(make_repository(order))

        result = await service.verify_payment(USER_ID, order.id, "pi_test_123")

        assert result.payment_status == PaymentStatus.AUTHORIZED
        assert result.status == OrderStatus.PAYMENT_PENDING

    @pytest.mark.asyncio
    async def test_late_payment_rejected(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order(payment_expires_at=datetime.now(timezone.utc) - timedelta(minutes=5))
        repository = make_repository(order)
        mock_gateway.retrieve_payment_intent.return_value = _succeeded_intent(order)
        service = build_service(repository)

        with pytest.raises(ValidationError, match="window has expired"):
            await service.verify_payment(USER_ID, order.id, "pi_test_123")

        assert repository.order.payment_status == PaymentStatus.PENDING

    @pytest.mark.asyncio
    async def test_cod_order_rejected(self, build_service, make_repository, make_order):
        order = make_order(payment_method=PaymentMethod.COD, status=OrderStatus.PLACED)
        service = build_service(make_repository(order))

        with pytest.raises(ValidationError):
            await service.verify_payment(USER_ID, order.id, "pi_test_123")


class TestGetPaymentStatus:
    """Tests for get_payment_status."""

    @pytest.mark.asyncio
    async def test_reconciles_succeeded_payment(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order()
        mock_gateway.retrieve_payment_intent.return_value = _succeeded_intent(order)
        service = build_service(make_repository(order))

        status = await service.get_payment_status(USER_ID, order.id)

        assert status["status"] == OrderStatus.CONFIRMED
        assert status["payment_status"] == PaymentStatus.PAID
        assert status["can_retry"] is False

    @pytest.mark.asyncio
    async def test_gateway_error_returns_stored_state(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order()
        mock_gateway.retrieve_payment_intent.side_effect = PaymentGatewayError("down")
        service = build_service(make_repository(order))

        status = await service.get_payment_status(USER_ID, order.id)

        assert status["status"] == OrderStatus.PAYMENT_PENDING
        assert status["can_retry"] is True
        assert status["total_cents"] == 48000


class TestRetryPayment:
    """Tests for retry_payment."""

    @pytest.mark.asyncio
    async def test_retry_failed_order_reserves_and_extends(
        self, build_service, make_repository, make_order, inventory, mock_gateway
    ):
        order = make_order(
            status=OrderStatus.PAYMENT_FAILED,
            payment_status=PaymentStatus.FAILED,
            stock_reserved=False,
            payment_expires_at=datetime.now(timezone.utc) - timedelta(hours=1),
            version=7,
        )
        repository = make_repository(order)
        service = build_service(repository)

        result = await service.retry_payment(USER_ID, order.id)

        saved = repository.order
        assert result["client_secret"] == "pi_new_secret"
        assert saved.status == OrderStatus.PAYMENT_PENDING
        assert saved.payment_status == PaymentStatus.PENDING
        assert saved.stock_reserved is True
        assert saved.stripe_payment_intent_id == "pi_new"
        assert saved.payment_expires_at > datetime.now(timezone.utc) + timedelta(minutes=14)
        inventory.reserve.assert_awaited_once()
        inventory.release.assert_not_awaited()
        assert mock_gateway.create_payment_intent.await_args.kwargs["idempotency_key"] == f"order-{order.id}-v7"
        mock_gateway.cancel_payment_intent.assert_awaited_once_with("pi_test_123")

    @pytest.mark.asyncio
    async def test_retry_within_window_keeps_expiry(self, build_service, make_repository, make_order, inventory):
        expires = datetime.now(timezone.utc) + timedelta(minutes=10)
        order = make_order(payment_expires_at=expires)
        repository = make_repository(order)
        service = build_service(repository)

        await service.retry_payment(USER_ID, order.id)

        assert repository.order.payment_expires_at == expires
        inventory.reserve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_confirmed_order_cannot_retry(self, build_service, make_repository, make_order):
        order = make_order(status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.PAID)
        service = build_service(make_repository(order))

        with pytest.raises(ValidationError):
            await service.retry_payment(USER_ID, order.id)

    def test_can_retry_predicate(self, make_order):
        assert can_retry_payment(make_order())
        assert not can_retry_payment(make_order(payment_method=PaymentMethod.COD, status=OrderStatus.PLACED))


class TestCancelByUser:
    """Tests for cancel_by_user."""

    @pytest.mark.asyncio
    async def test_cancel_cod_order(self, build_service, make_repository, make_order, inventory):
        order = make_order(payment_method=PaymentMethod.COD, status=OrderStatus.PLACED, stripe_payment_intent_id=None)
        repository = make_repository(order)
        service = build_service(repository)

        result = await service.cancel_by_user(USER_ID, order.id)

        assert result.status == OrderStatus.CANCELLED
        assert result.cancelled_by == ActorRole.USER
        assert result.cancellation_reason == "Cancelled by customer"
        assert result.cancelled_at is not None
        inventory.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_cannot_cancel_online_order(self, build_service, make_repository, make_order, inventory):
        order = make_order()
        service = build_service(make_repository(order))

        with pytest.raises(ValidationError):
            await service.cancel_by_user(USER_ID, order.id)

        inventory.release.assert_not_awaited()


class TestUpdateStatus:
    """Tests for admin status updates."""

    @pytest.mark.asyncio
    async def test_moves_order_forward(self, build_service, make_repository, make_order, mock_audit):
        order = make_order(status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.PAID)
        service = build_service(make_repository(order))

        result = await service.update_status(ADMIN_ID, order.id, OrderStatus.PACKED, note="Packed by Ravi")

        assert result.status == OrderStatus.PACKED
        assert result.status_history[-1].actor_role == ActorRole.ADMIN
        mock_audit.record.assert_awaited_once_with(
            ADMIN_ID,
            "order.status_updated",
            order.id,
            {"from": "CONFIRMED", "to": "PACKED", "note": "Packed by Ravi"},
        )

    @pytest.mark.asyncio
    async def test_cannot_confirm_unpaid_online_order(self, build_service, make_repository, make_order):
        order = make_order()
        service = build_service(make_repository(order))

        with pytest.raises(ValidationError):
            await service.update_status(ADMIN_ID, order.id, OrderStatus.CONFIRMED)

    @pytest.mark.asyncio
    async def test_refund_statuses_rejected(self, build_service, make_repository, make_order):
        order = make_order(status=OrderStatus.CANCELLED)
        service = build_service(make_repository(order))

        with pytest.raises(ValidationError):
            await service.update_status(ADMIN_ID, order.id, OrderStatus.REFUND_INITIATED)

    @pytest.mark.asyncio
    async def test_non_adjacent_refund_status_is_invalid_transition(
        self, build_service, make_repository, make_order, mock_audit
    ):
        order = make_order(
            payment_method=PaymentMethod.COD,
            status=OrderStatus.PLACED,
            stripe_payment_intent_id=None,
            payment_expires_at=None,
        )
        repository = make_repository(order)
        service = build_service(repository)

        with pytest.raises(InvalidTransitionError) as exc_info:
            await service.update_status(ADMIN_ID, order.id, OrderStatus.REFUNDED)

        assert exc_info.value.status_code == 409
        assert exc_info.value.current == OrderStatus.PLACED
        assert exc_info.value.target == OrderStatus.REFUNDED
        assert repository.writes == 0
        mock_audit.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_transition(self, build_service, make_repository, make_order, mock_audit):
        order = make_order(status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.PAID)
        repository = make_repository(order)
        service = build_service(repository)

        with pytest.raises(InvalidTransitionError):
            await service.update_status(ADMIN_ID, order.id, OrderStatus.DELIVERED)

        assert repository.writes == 0
        mock_audit.record.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_payment_failed_releases_stock(self, build_service, make_repository, make_order, inventory):
        order = make_order()
        repository = make_repository(order)
        service = build_service(repository)

        result = await service.update_status(ADMIN_ID, order.id, OrderStatus.PAYMENT_FAILED)

        assert result.payment_status == PaymentStatus.FAILED
        assert result.stock_reserved is False
        inventory.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_payment_failed_cancels_payment_intent(
        self, build_service, make_repository, make_order, mock_gateway
    ):
        order = make_order()
        service = build_service(make_repository(order))

        await service.update_status(ADMIN_ID, order.id, OrderStatus.PAYMENT_FAILED)

        mock_gateway.cancel_payment_intent.assert_awaited_once_with("pi_test_123")

    @pytest.mark.asyncio
    async def test_cancel_status_does_not_refund(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order(status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.PAID)
        service = build_service(make_repository(order))

        result = await service.update_status(ADMIN_ID, order.id, OrderStatus.CANCELLED)

        assert result.status == OrderStatus.CANCELLED
        assert result.cancelled_by == ActorRole.ADMIN
        mock_gateway.create_refund.assert_not_awaited()


class TestCancelByAdmin:
    """Tests for cancel_by_admin."""

    @pytest.mark.asyncio
    async def test_paid_order_is_refunded(self, build_service, make_repository, make_order, mock_gateway, inventory):
        order = make_order(status=OrderStatus.CONFIRMED, payment_status=PaymentStatus.PAID, stripe_charge_id="ch_1")
        repository = make_repository(order)
        mock_gateway.create_refund.return_value = {"id": "re_1", "amount": 48000, "status": "pending"}
        service = build_service(repository)

        result = await service.cancel_by_admin(ADMIN_ID, order.id, "Out of stock")

        assert result.status == OrderStatus.REFUND_INITIATED
        assert result.payment_status == PaymentStatus.REFUND_INITIATED
        assert result.cancellation_reason == "Out of stock"
        assert mock_gateway.create_refund.await_args.kwargs["amount_cents"] == 48000
        inventory.release.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_unpaid_order_cancels_payment(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order()
        service = build_service(make_repository(order))

        result = await service.cancel_by_admin(ADMIN_ID, order.id, "Customer called")

        assert result.status == OrderStatus.CANCELLED
        mock_gateway.cancel_payment_intent.assert_awaited_once_with("pi_test_123")
        mock_gateway.create_refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_delivered_order_cannot_be_cancelled(self, build_service, make_repository, make_order):
        order = make_order(status=OrderStatus.DELIVERED, payment_status=PaymentStatus.PAID)
        service = build_service(make_repository(order))

        with pytest.raises(ValidationError):
            await service.cancel_by_admin(ADMIN_ID, order.id, "Too late")


class TestInitiateRefund:
    """Tests for initiate_refund."""

    @pytest.mark.asyncio
    async def test_partial_refund(self, build_service, make_repository, make_order, mock_gateway, mock_audit):
        order = make_order(status=OrderStatus.DELIVERED, payment_status=PaymentStatus.PAID)
        repository = make_repository(order)
        mock_gateway.create_refund.return_value = {"id": "re_1", "amount": 10000, "status": "succeeded"}
        service = build_service(repository)

        result = await service.initiate_refund(ADMIN_ID, order.id, amount_cents=10000, reason="Bruised apples")

        assert result.status == OrderStatus.DELIVERED
        assert result.payment_status == PaymentStatus.PARTIALLY_REFUNDED
        assert result.refund_amount_cents == 10000
        assert mock_gateway.create_refund.await_args.kwargs["idempotency_key"] == f"refund-{order.id}-0-10000"
        assert mock_audit.record.await_args.args[1] == "order.refund_initiated"

    @pytest.mark.asyncio
    async def test_amount_above_refundable(self, build_service, make_repository, make_order, mock_gateway):
        order = make_order(status=OrderStatus.DELIVERED, payment_status=PaymentStatus.PAID)
        service = build_service(make_repository(order))

        with pytest.raises(ValidationError):
            await service.initiate_refund(ADMIN_ID, order.id, amount_cents=48001)

        mock_gateway.create_refund.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unpaid_order_not_refundable(self, build_service, make_repository, make_order):
        service = build_service(make_repository(make_order()))

        with pytest.raises(ValidationError):
            await service.initiate_refund(ADMIN_ID, make_order().id)

    @pytest.mark.asyncio
    async def test_cod_order_not_refundable(self, build_service, make_repository, make_order):
        order = make_order(
            payment_method=PaymentMethod.COD,
            status=OrderStatus.DELIVERED,
            payment_status=PaymentStatus.PAID,
            stripe_payment_intent_id=None,
        )
        service = build_service(make_repository(order))

        with pytest.raises(ValidationError):
            await service.initiate_refund(ADMIN_ID, order.id)
