"""
Order status transition graph.

    pending ──> processing ──> requires_action ──> captured | failed
                     │
                     └──────> captured | failed
    captured ──> partially_refunded ──> refunded
    captured ──> refunded
    failed ──> processing        (new pay attempt only)

refunded is terminal. A second partial refund keeps the order in
partially_refunded, which is the only self-loop.
"""
from typing import Dict, FrozenSet

from core.exceptions import InvalidTransition
from database.models import OrderStatus

TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.PROCESSING: frozenset(
        {OrderStatus.REQUIRES_ACTION, OrderStatus.CAPTURED, OrderStatus.FAILED}
    ),
    OrderStatus.REQUIRES_ACTION: frozenset({OrderStatus.CAPTURED, OrderStatus.FAILED}),
    OrderStatus.CAPTURED: frozenset(
        {OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED}
    ),
    OrderStatus.PARTIALLY_REFUNDED: frozenset(
        {OrderStatus.PARTIALLY_REFUNDED, OrderStatus.REFUNDED}
    ),
    OrderStatus.FAILED: frozenset({OrderStatus.PROCESSING}),
    OrderStatus.REFUNDED: frozenset(),
}

# Statuses from which a merchant may start a (new) pay attempt
PAYABLE_STATUSES = frozenset({OrderStatus.PENDING, OrderStatus.FAILED})

# Statuses a refund notification may apply to
REFUNDABLE_STATUSES = frozenset({OrderStatus.CAPTURED, OrderStatus.PARTIALLY_REFUNDED})


def can_transition(current: str, target: str) -> bool:
    """Return True if current -> target is an edge of the graph."""
    try:
        source = OrderStatus(current)
        destination = OrderStatus(target)
    except ValueError:
        return False
    return destination in TRANSITIONS[source]


def ensure_transition(current: str, target: str) -> OrderStatus:
    """
    Validate a transition and return the target status.

    Raises:
        InvalidTransition: If current -> target is not an edge of the graph
    """
    if not can_transition(current, target):
        raise InvalidTransition(current, target)
    return OrderStatus(target)


def settlement_path(current: str, target: str) -> list[OrderStatus]:
    """
    Statuses to walk through to settle an order reported by the processor.

    A capture or failure may be reported for an order still marked pending
    when the processor answers before the pay-initiation write lands; the
    order then passes through processing on the way. Returns an empty list
    when the target cannot be reached.
    """
    if can_transition(current, target):
        return [OrderStatus(target)]
    if current == OrderStatus.PENDING.value and can_transition(
        OrderStatus.PROCESSING.value, target
    ):
        return [OrderStatus.PROCESSING, OrderStatus(target)]
    return []


def refund_status(refunded_total: int, order_amount: int) -> OrderStatus:
    """Full refund when the cumulative refunded amount reaches the order amount."""
    if refunded_total >= order_amount:
        return OrderStatus.REFUNDED
    return OrderStatus.PARTIALLY_REFUNDED
