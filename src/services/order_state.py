"""Order status state machine and payment predicates.

All functions here are pure with respect to I/O: they inspect or mutate an
``Order`` instance in memory. Persistence and concurrency control live in
``OrderRepository.mutate``.
"""

from datetime import datetime, timezone

from src.api.middleware.error_handler import ConflictError
from src.models.order import (
    Actor,
    ActorRole,
    AttemptOutcome,
    Order,
    OrderStatus,
    PaymentAttempt,
    PaymentMethod,
    PaymentStatus,
    RefundRecord,
    RefundState,
    StatusHistoryEntry,
)

TERMINAL_STATUSES = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED}
)

_ADMIN_NON_CANCELLABLE = frozenset(
    {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED}
)


class InvalidTransitionError(ConflictError):
    """Raised when a status change is not adjacent to the current status."""

    def __init__(self, current: OrderStatus, target: OrderStatus) -> None:
        self.current = current
        self.target = target
        super().__init__(
            message=f"Cannot transition from {current.value} to {target.value}",
            details=[
                {"loc": ["status"], "msg": f"current={current.value}", "type": "current_status"},
                {"loc": ["status"], "msg": f"attempted={target.value}", "type": "attempted_status"},
            ],
            error_type="invalid_transition",
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def allowed_transitions(status: OrderStatus) -> frozenset[OrderStatus]:
    """Return the statuses reachable in one step from ``status``."""
    match status:
        case OrderStatus.PLACED:
            return frozenset({OrderStatus.PAYMENT_PENDING, OrderStatus.CONFIRMED, OrderStatus.CANCELLED})
        case OrderStatus.PAYMENT_PENDING:
            return frozenset({OrderStatus.CONFIRMED, OrderStatus.PAYMENT_FAILED, OrderStatus.CANCELLED})
        case OrderStatus.PAYMENT_FAILED:
            return frozenset({OrderStatus.PAYMENT_PENDING, OrderStatus.CANCELLED})
        case OrderStatus.CONFIRMED:
            return frozenset({OrderStatus.PACKED, OrderStatus.CANCELLED})
        case OrderStatus.PACKED:
            return frozenset({OrderStatus.READY_TO_DELIVER, OrderStatus.CANCELLED})
        case OrderStatus.READY_TO_DELIVER:
            return frozenset({OrderStatus.HANDED_TO_AGENT})
        case OrderStatus.HANDED_TO_AGENT:
            return frozenset({OrderStatus.DELIVERED})
        case OrderStatus.CANCELLED:
            return frozenset({OrderStatus.REFUND_INITIATED})
        case OrderStatus.REFUND_INITIATED:
            return frozenset({OrderStatus.REFUNDED, OrderStatus.PARTIALLY_REFUNDED})
        case OrderStatus.DELIVERED | OrderStatus.PARTIALLY_REFUNDED | OrderStatus.REFUNDED:
            return frozenset()
    raise ValueError(f"Unknown order status: {status!r}")


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in allowed_transitions(current)


def apply_status_transition(
    order: Order,
    new_status: OrderStatus,
    actor: Actor,
    note: str | None = None,
    now: datetime | None = None,
) -> Order:
    """Move ``order`` to ``new_status`` in place and record the change.

    Raises:
        InvalidTransitionError: ``new_status`` is not adjacent; the order is
            left untouched.
    """
    if not can_transition(order.status, new_status):
        raise InvalidTransitionError(order.status, new_status)

    now = now or _utcnow()
    order.status = new_status
    order.status_history = [
        *order.status_history,
        StatusHistoryEntry(
            status=new_status,
            timestamp=now,
            actor_role=actor.role,
            actor_id=actor.id,
            note=note,
        ),
    ]

    if new_status == OrderStatus.CANCELLED:
        order.cancelled_at = now
    elif new_status == OrderStatus.REFUNDED:
        order.refunded_at = now
    elif new_status == OrderStatus.DELIVERED and order.payment_method == PaymentMethod.COD:
        # Cash is collected on delivery
        order.payment_status = PaymentStatus.PAID

    return order


def can_be_cancelled_by_user(order: Order) -> bool:
    return (
        order.payment_method == PaymentMethod.COD
        and order.status == OrderStatus.PLACED
        and order.payment_status != PaymentStatus.PAID
    )


def can_be_cancelled_by_admin(order: Order) -> bool:
    return order.status not in _ADMIN_NON_CANCELLABLE


def has_successful_payment(order: Order) -> bool:
    """True once a successful charge has been accepted for this order."""
    if order.payment_status == PaymentStatus.PAID:
        return True
    return any(attempt.outcome == AttemptOutcome.SUCCESS for attempt in order.payment_attempts)


def is_payment_window_valid(order: Order, now: datetime | None = None) -> bool:
    if order.payment_expires_at is None:
        return True
    return (now or _utcnow()) < order.payment_expires_at


def record_payment_attempt(
    order: Order,
    stripe_payment_id: str | None,
    outcome: AttemptOutcome,
    method: str | None = None,
    error_code: str | None = None,
    error_description: str | None = None,
    now: datetime | None = None,
) -> PaymentAttempt:
    """Append a payment attempt to ``order`` and return it."""
    attempt = PaymentAttempt(
        attempted_at=now or _utcnow(),
        stripe_payment_id=stripe_payment_id,
        outcome=outcome,
        method=method,
        error_code=error_code,
        error_description=error_description,
    )
    order.payment_attempts = [*order.payment_attempts, attempt]
    return attempt


def failed_attempt_count(order: Order) -> int:
    return sum(1 for attempt in order.payment_attempts if attempt.outcome == AttemptOutcome.FAILED)


def actor_for_admin(user_id) -> Actor:
    return Actor(role=ActorRole.ADMIN, id=user_id)


def actor_for_user(user_id) -> Actor:
    return Actor(role=ActorRole.USER, id=user_id)


def refundable_amount(order: Order) -> int:
    """Amount that may still be refunded, counting refunds in flight."""
    committed = sum(
        refund.amount_cents for refund in order.refunds if refund.state != RefundState.FAILED
    )
    return max(order.total_cents - committed, 0)


def apply_refund_update(
    order: Order,
    refund_id: str,
    amount_cents: int,
    state: RefundState,
    reason: str | None = None,
    actor: Actor | None = None,
    now: datetime | None = None,
) -> bool:
    """Record what the gateway reported about one refund.

    Refunds are keyed by gateway refund id, so replaying the same report
    changes nothing and a succeeded refund is credited exactly once.

    Returns:
        bool: Whether ``order`` was modified.
    """
    now = now or _utcnow()
    actor = actor or Actor.system()

    existing = next((r for r in order.refunds if r.stripe_refund_id == refund_id), None)
    if existing is not None and (existing.state == state or existing.state == RefundState.SUCCEEDED):
        return False

    if existing is None:
        record = RefundRecord(
            stripe_refund_id=refund_id,
            amount_cents=amount_cents,
            state=state,
            reason=reason,
            created_at=now,
        )
        refunds = [*order.refunds, record]
    else:
        record = existing.model_copy(update={"state": state})
        refunds = [record if r.stripe_refund_id == refund_id else r for r in order.refunds]

    if state != RefundState.PENDING:
        record.processed_at = now
    order.refunds = refunds

    # Refund issued against a cancelled order moves it into the refund flow
    if order.status == OrderStatus.CANCELLED and state != RefundState.FAILED:
        apply_status_transition(order, OrderStatus.REFUND_INITIATED, actor, note=reason, now=now)

    refunded = sum(r.amount_cents for r in order.refunds if r.state == RefundState.SUCCEEDED)
    pending = any(r.state == RefundState.PENDING for r in order.refunds)

    if state == RefundState.SUCCEEDED:
        order.refund_amount_cents = refunded
        order.stripe_refund_id = refund_id
        order.payment_details = order.payment_details.model_copy(update={"refunded_at": now})

    fully_refunded = refunded >= order.total_cents
    if fully_refunded:
        order.payment_status = PaymentStatus.REFUNDED
    elif pending:
        order.payment_status = PaymentStatus.REFUND_INITIATED
    elif refunded > 0:
        order.payment_status = PaymentStatus.PARTIALLY_REFUNDED
    else:
        order.payment_status = PaymentStatus.PAID

    if order.status == OrderStatus.REFUND_INITIATED and not pending and refunded > 0:
        target = OrderStatus.REFUNDED if fully_refunded else OrderStatus.PARTIALLY_REFUNDED
        apply_status_transition(order, target, Actor.system(), note="Refund completed", now=now)
    elif fully_refunded:
        order.refunded_at = now

    return True
