"""Supabase persistence for orders.

Every mutation goes through :meth:`OrderRepository.mutate`, a versioned
read-modify-write: the update is conditioned on the ``version`` that was
read, so a concurrent writer (webhook vs. admin, say) makes the losing
update match zero rows. The loser re-reads and re-applies its change.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable
from uuid import UUID

from src.api.middleware.error_handler import ConflictError, NotFoundError
from src.core.config import get_settings
from src.core.supabase import get_supabase_client, is_unique_violation
from src.models.order import Order
from src.services.order_cache import OrderCache, get_order_cache

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = "SH"

ADMIN_SORT_FIELDS = frozenset({"created_at", "updated_at", "total_cents", "order_number", "status"})

OrderMutation = Callable[[Order], Order | None]


@dataclass
class MutationResult:
    """Outcome of :meth:`OrderRepository.mutate`.

    ``previous`` is the state the winning write was based on, so callers can
    detect flags flipped by their own write (e.g. ``stock_reserved``).
    """

    order: Order
    previous: Order
    changed: bool


def format_order_number(day: datetime, sequence: int) -> str:
    """Format ``SH`` + ``YYYYMMDD`` + 4-digit zero-padded sequence."""
    return f"{ORDER_NUMBER_PREFIX}{day.strftime('%Y%m%d')}{sequence:04d}"


class OrderRepository:
    """Reads and writes rows of the ``orders`` table."""

    def __init__(self, cache: OrderCache | None = None) -> None:
        self.client = get_supabase_client()
        self.settings = get_settings()
        self.cache = cache or get_order_cache()

    async def get(self, order_id: UUID | str, use_cache: bool = False) -> Order | None:
        """Fetch an order by id.

        Args:
            order_id: The order's UUID.
            use_cache: Serve from the read cache when possible. Mutations
                always read with ``use_cache=False``.

        Returns:
            Order | None: The order or None if not found.
        """
        if use_cache:
            cached = self.cache.get(str(order_id))
            if cached is not None:
                return cached

        response = (
            self.client.table("orders")
            .select("*")
            .eq("id", str(order_id))
            .maybe_single()
            .execute()
        )
        if not response or not response.data:
            return None

        order = Order.from_record(response.data)
        if use_cache:
            self.cache.set(order)
        return order

    async def get_by_payment_intent(self, payment_intent_id: str) -> Order | None:
        """Fetch the order whose gateway order id is ``payment_intent_id``."""
        return await self._get_by("stripe_payment_intent_id", payment_intent_id)

    async def _get_by(self, column: str, value: str) -> Order | None:
        response = (
            self.client.table("orders")
            .select("*")
            .eq(column, value)
            .maybe_single()
            .execute()
        )
        if not response or not response.data:
            return None
        return Order.from_record(response.data)

    async def insert(self, order: Order) -> Order:
        """Insert a new order row.

        Raises:
            ConflictError: The order number collided with an existing row.
        """
        try:
            response = self.client.table("orders").insert(order.to_record()).execute()
        except Exception as e:
            if is_unique_violation(e):
                raise ConflictError(f"Order number {order.order_number} already exists") from e
            raise
        return Order.from_record(response.data[0])

    async def mutate(
        self,
        order_id: UUID | str,
        mutation: OrderMutation,
        max_retries: int | None = None,
    ) -> MutationResult:
        """Apply ``mutation`` to the latest persisted state of an order.

        ``mutation`` receives a freshly read order, edits it in place and
        returns it, or returns None to signal a no-op. Exceptions raised by
        ``mutation`` propagate and nothing is written.

        Raises:
            NotFoundError: The order does not exist.
            ConflictError: The write kept losing to concurrent writers.
        """
        retries = max_retries or self.settings.order_update_max_retries

        for attempt in range(1, retries + 1):
            current = await self.get(order_id)
            if current is None:
                raise NotFoundError("Order not found")

            previous = current.model_copy(deep=True)
            updated = mutation(current)
            if updated is None:
                return MutationResult(order=previous, previous=previous, changed=False)

            expected_version = previous.version
            updated.version = expected_version + 1
            payload = updated.to_record()
            payload.pop("id", None)
            payload["updated_at"] = datetime.now(timezone.utc).isoformat()

            response = (
                self.client.table("orders")
                .update(payload)
                .eq("id", str(order_id))
                .eq("version", expected_version)
                .execute()
            )
            if response.data:
                saved = Order.from_record(response.data[0])
                self.cache.invalidate(str(order_id))
                return MutationResult(order=saved, previous=previous, changed=True)

            logger.info(
                "Version conflict on order %s (version %d, attempt %d/%d)",
                order_id,
                expected_version,
                attempt,
                retries,
            )

        raise ConflictError("Order was modified concurrently, please retry")

    async def list_for_user(
        self,
        user_id: UUID,
        status: str | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[Order], int]:
        """List a user's orders, newest first.

        Returns:
            tuple: (orders on the requested page, total matching count).
        """
        query = self.client.table("orders").select("*", count="exact").eq("user_id", str(user_id))
        if status:
            query = query.eq("status", status)

        start = (page - 1) * limit
        response = query.order("created_at", desc=True).range(start, start + limit - 1).execute()
        rows = response.data or []
        return [Order.from_record(row) for row in rows], response.count or 0

    async def list_admin(
        self,
        filters: dict[str, Any],
        page: int = 1,
        limit: int = 20,
        sort: str = "-created_at",
    ) -> tuple[list[Order], int]:
        """List orders for the back office with optional filters.

        Supported filters: status, payment_status, payment_method,
        start_date, end_date, search (order number substring).
        """
        query = self.client.table("orders").select("*", count="exact")

        for column in ("status", "payment_status", "payment_method"):
            if filters.get(column):
                query = query.eq(column, filters[column])
        if filters.get("start_date"):
            query = query.gte("created_at", filters["start_date"].isoformat())
        if filters.get("end_date"):
            query = query.lte("created_at", filters["end_date"].isoformat())
        if filters.get("search"):
            query = query.ilike("order_number", f"%{filters['search']}%")

        descending = sort.startswith("-")
        sort_field = sort.lstrip("-")
        if sort_field not in ADMIN_SORT_FIELDS:
            sort_field = "created_at"

        start = (page - 1) * limit
        response = query.order(sort_field, desc=descending).range(start, start + limit - 1).execute()
        rows = response.data or []
        return [Order.from_record(row) for row in rows], response.count or 0

    async def list_expired_pending(self, now: datetime, limit: int = 100) -> list[Order]:
        """Orders still awaiting gateway payment whose window has lapsed."""
        response = (
            self.client.table("orders")
            .select("*")
            .eq("status", "PAYMENT_PENDING")
            .eq("payment_status", "PENDING")
            .lt("payment_expires_at", now.isoformat())
            .order("payment_expires_at")
            .limit(limit)
            .execute()
        )
        return [Order.from_record(row) for row in response.data or []]

    async def next_order_number(self, now: datetime | None = None) -> str:
        """Generate the next order number from the atomic per-day counter."""
        now = now or datetime.now(timezone.utc)
        response = self.client.rpc("next_order_sequence", {"p_day": now.date().isoformat()}).execute()
        sequence = response.data
        if isinstance(sequence, list):
            sequence = sequence[0]
        if isinstance(sequence, dict):
            sequence = next(iter(sequence.values()))
        return format_order_number(now, int(sequence))
