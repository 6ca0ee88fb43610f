"""
Unit tests for the order status graph.
"""
import pytest

from core.exceptions import InvalidTransition
from core.state_machine import (
    TRANSITIONS,
    can_transition,
    ensure_transition,
    refund_status,
    settlement_path,
)
from database.models import OrderStatus


class TestTransitions:
    """Test suite for the transition graph."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "processing"),
            ("processing", "requires_action"),
            ("processing", "captured"),
            ("processing", "failed"),
            ("requires_action", "captured"),
            ("requires_action", "failed"),
            ("captured", "partially_refunded"),
            ("captured", "refunded"),
            ("partially_refunded", "partially_refunded"),
            ("partially_refunded", "refunded"),
            ("failed", "processing"),
        ],
    )
    def test_allowed_edges(self, current: str, target: str) -> None:
        """Every edge of the graph is accepted."""
        assert can_transition(current, target)
        assert ensure_transition(current, target) == OrderStatus(target)

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current,target",
        [
            ("pending", "captured"),
            ("captured", "failed"),
            ("captured", "processing"),
            ("failed", "captured"),
            ("refunded", "partially_refunded"),
            ("refunded", "captured"),
            ("partially_refunded", "captured"),
        ],
    )
    def test_rejected_edges(self, current: str, target: str) -> None:
        """Anything off the graph raises InvalidTransition."""
        assert not can_transition(current, target)
        with pytest.raises(InvalidTransition) as exc_info:
            ensure_transition(current, target)
        assert exc_info.value.http_status == 409
        assert exc_info.value.error_code == "invalid_status"

    @pytest.mark.unit
    def test_refunded_is_terminal(self) -> None:
        """No edge leaves refunded."""
        assert TRANSITIONS[OrderStatus.REFUNDED] == frozenset()

    @pytest.mark.unit
    def test_unknown_status(self) -> None:
        """Unknown statuses never transition."""
        assert not can_transition("settled", "captured")
        assert not can_transition("captured", "settled")


class TestSettlementPath:
    """Test suite for settlement_path."""

    @pytest.mark.unit
    def test_direct_edge(self) -> None:
        assert settlement_path("processing", "captured") == [OrderStatus.CAPTURED]

    @pytest.mark.unit
    def test_pending_passes_through_processing(self) -> None:
        """A capture reported for a pending order walks pending -> processing -> captured."""
        assert settlement_path("pending", "captured") == [
            OrderStatus.PROCESSING,
            OrderStatus.CAPTURED,
        ]
        assert settlement_path("pending", "failed") == [
            OrderStatus.PROCESSING,
            OrderStatus.FAILED,
        ]

    @pytest.mark.unit
    def test_unreachable_target(self) -> None:
        assert settlement_path("captured", "failed") == []
        assert settlement_path("refunded", "captured") == []


class TestRefundStatus:
    """Test suite for refund_status."""

    @pytest.mark.unit
    def test_partial(self) -> None:
        assert refund_status(400, 1000) is OrderStatus.PARTIALLY_REFUNDED

    @pytest.mark.unit
    def test_full(self) -> None:
        assert refund_status(1000, 1000) is OrderStatus.REFUNDED

    @pytest.mark.unit
    def test_over_refund_counts_as_full(self) -> None:
        assert refund_status(1200, 1000) is OrderStatus.REFUNDED
