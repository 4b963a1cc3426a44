"""Unit tests for the payment expiry sweep."""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from src.services.payment_expiry import PaymentExpirySweeper

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def mock_repository():
    repository = MagicMock()
    repository.list_expired_pending = AsyncMock(return_value=[])
    return repository


@pytest.fixture
def mock_payment_service():
    service = MagicMock()
    service.expire_unpaid_order = AsyncMock(return_value=True)
    return service


@pytest.fixture
def sweeper(mock_repository, mock_payment_service):
    with patch("src.services.payment_expiry.get_settings") as mock_settings:
        mock_settings.return_value.payment_expiry_sweep_interval_seconds = 60
        mock_settings.return_value.payment_expiry_sweep_batch_size = 25
        return PaymentExpirySweeper(repository=mock_repository, payment_service=mock_payment_service)


class TestSweepOnce:
    """Tests for sweep_once."""

    @pytest.mark.asyncio
    async def test_expires_each_candidate(self, sweeper, mock_repository, mock_payment_service, make_order):
        first = make_order()
        second = make_order(id="770e8400-e29b-41d4-a716-446655440000", order_number="SH202610170002")
        mock_repository.list_expired_pending.return_value = [first, second]

        expired = await sweeper.sweep_once(NOW)

        assert expired == 2
        mock_repository.list_expired_pending.assert_awaited_once_with(NOW, limit=25)
        assert [c.args[0] for c in mock_payment_service.expire_unpaid_order.await_args_list] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_counts_only_orders_it_expired(self, sweeper, mock_repository, mock_payment_service, make_order):
        mock_repository.list_expired_pending.return_value = [make_order()]
        mock_payment_service.expire_unpaid_order.return_value = False

        assert await sweeper.sweep_once(NOW) == 0

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_batch(
        self, sweeper, mock_repository, mock_payment_service, make_order
    ):
        mock_repository.list_expired_pending.return_value = [
            make_order(),
            make_order(id="770e8400-e29b-41d4-a716-446655440000"),
        ]
        mock_payment_service.expire_unpaid_order.side_effect = [RuntimeError("conflict"), True]

        assert await sweeper.sweep_once(NOW) == 1


class TestLifecycle:
    """Tests for start/stop of the background loop."""

    @pytest.mark.asyncio
    async def test_start_runs_sweep_and_stop_cancels(self, sweeper, mock_repository):
        await sweeper.start()
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        await sweeper.stop()

        assert sweeper._task is None
        mock_repository.list_expired_pending.assert_awaited()

    @pytest.mark.asyncio
    async def test_stop_without_start(self, sweeper):
        await sweeper.stop()

        assert sweeper._task is None
