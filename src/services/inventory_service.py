"""Stock reservation against product quantity options.

Stock is decremented when an order is placed, not when it is paid, so
inventory is held for the whole payment window. Each adjustment is a
compare-and-set on the ``stock`` column: the update only matches when stock
still has the value that was read.
"""

import logging
from dataclasses import dataclass

from src.api.middleware.error_handler import ConflictError, ValidationError
from src.core.supabase import get_supabase_client
from src.models.order import Order, OrderItem
from src.services.order_repository import MutationResult

logger = logging.getLogger(__name__)

MAX_STOCK_RETRIES = 5


@dataclass(frozen=True)
class StockLine:
    """Quantity to take from (or return to) one quantity option."""

    quantity_option_id: str
    quantity: int
    label: str = ""


class InsufficientStockError(ValidationError):
    """Requested quantity exceeds available stock."""

    def __init__(self, line: StockLine, available: int) -> None:
        name = line.label or line.quantity_option_id
        super().__init__(
            message=f"{name} is out of stock or has insufficient quantity",
            details=[
                {
                    "loc": ["items", line.quantity_option_id],
                    "msg": f"requested {line.quantity}, available {available}",
                    "type": "insufficient_stock",
                }
            ],
        )
        self.line = line
        self.available = available


class InventoryService:
    """Reserve and release stock on product_quantity_options."""

    def __init__(self) -> None:
        self.client = get_supabase_client()

    async def reserve(self, lines: list[StockLine]) -> None:
        """Reserve every line or none of them.

        Raises:
            InsufficientStockError: A line cannot be satisfied. Lines reserved
                before it are released again.
        """
        reserved: list[StockLine] = []
        try:
            for line in lines:
                await self._adjust(line, -line.quantity)
                reserved.append(line)
        except Exception:
            if reserved:
                logger.info("Rolling back %d stock reservations", len(reserved))
                await self.release(reserved)
            raise

    async def release(self, lines: list[StockLine]) -> None:
        """Return stock for each line. Failures are logged per line."""
        for line in lines:
            try:
                await self._adjust(line, line.quantity)
            except Exception as e:
                logger.error(
                    "Failed to release %d units of option %s: %s",
                    line.quantity,
                    line.quantity_option_id,
                    str(e),
                )

    async def _adjust(self, line: StockLine, delta: int) -> int:
        """Apply ``delta`` to an option's stock and return the new value."""
        for _ in range(MAX_STOCK_RETRIES):
            response = (
                self.client.table("product_quantity_options")
                .select("id, stock")
                .eq("id", line.quantity_option_id)
                .maybe_single()
                .execute()
            )
            if not response or not response.data:
                raise InsufficientStockError(line, available=0)

            current = int(response.data["stock"])
            new_stock = current + delta
            if new_stock < 0:
                raise InsufficientStockError(line, available=current)

            updated = (
                self.client.table("product_quantity_options")
                .update({"stock": new_stock})
                .eq("id", line.quantity_option_id)
                .eq("stock", current)
                .execute()
            )
            if updated.data:
                return new_stock

            logger.debug("Stock changed concurrently for option %s, retrying", line.quantity_option_id)

        raise ConflictError("Stock is changing too quickly, please retry")

    async def release_for_order(self, order: Order) -> None:
        """Return the stock held by every line of ``order``."""
        await self.release(stock_lines_for(order))

    async def release_if_unreserved(self, result: MutationResult) -> bool:
        """Release stock when ``result``'s write cleared ``stock_reserved``.

        Only the writer whose versioned update flipped the flag releases, so
        stock is returned exactly once however many paths race to cancel.
        """
        if result.changed and result.previous.stock_reserved and not result.order.stock_reserved:
            await self.release_for_order(result.order)
            return True
        return False


def stock_lines_for(order: Order) -> list[StockLine]:
    """Stock lines covering every item of ``order``."""
    return stock_lines_for_items(order.items)


def stock_lines_for_items(items: list[OrderItem]) -> list[StockLine]:
    return [
        StockLine(
            quantity_option_id=item.quantity_option_id,
            quantity=item.quantity,
            label=f"{item.product_snapshot.name} ({item.quantity_option_snapshot.label})",
        )
        for item in items
    ]
