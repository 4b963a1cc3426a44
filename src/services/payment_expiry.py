"""Periodic sweep that fails orders whose payment window lapsed.

Expired orders are kept: they move to PAYMENT_FAILED and their stock is
returned. The sweep runs in-process from the app lifespan and can also be
run once from ``scripts/expire_pending_payments.py``.
"""

import asyncio
import logging
from datetime import datetime, timezone

from src.core.config import get_settings
from src.services.order_repository import OrderRepository
from src.services.payment_service import PaymentService

logger = logging.getLogger(__name__)


class PaymentExpirySweeper:
    """Finds expired PAYMENT_PENDING orders and expires them."""

    def __init__(
        self,
        repository: OrderRepository | None = None,
        payment_service: PaymentService | None = None,
        interval_seconds: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        settings = get_settings()
        self.repository = repository or OrderRepository()
        self.payment_service = payment_service or PaymentService(repository=self.repository)
        self.interval_seconds = interval_seconds or settings.payment_expiry_sweep_interval_seconds
        self.batch_size = batch_size or settings.payment_expiry_sweep_batch_size
        self._task: asyncio.Task | None = None

    async def sweep_once(self, now: datetime | None = None) -> int:
        """Expire one batch of lapsed orders.

        Returns:
            int: Number of orders expired by this sweep.
        """
        now = now or datetime.now(timezone.utc)
        candidates = await self.repository.list_expired_pending(now, limit=self.batch_size)
        expired = 0
        for order in candidates:
            try:
                if await self.payment_service.expire_unpaid_order(order.id, now=now):
                    expired += 1
            except Exception as e:
                logger.error("Failed to expire order %s: %s", order.order_number, str(e))

        if expired:
            logger.info("Payment expiry sweep expired %d of %d candidate orders", expired, len(candidates))
        return expired

    async def start(self) -> None:
        """Start the background sweep loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._run())
            logger.info("Payment expiry sweeper started (every %ds)", self.interval_seconds)

    async def stop(self) -> None:
        """Stop the background sweep loop."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Payment expiry sweeper stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error("Payment expiry sweep failed: %s", str(e))
            await asyncio.sleep(self.interval_seconds)
