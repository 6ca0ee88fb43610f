"""
Tests for processor event reconciliation.

Run against a real (SQLite) database so locking, deduplication and the
outbox insert-or-ignore behave as they do in production.
"""
import asyncio
import uuid
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy.exc import OperationalError

from core.exceptions import PersistenceFailure
from core.reconciliation import ReconciliationEngine, ReconciliationOutcome
from database.models import (
    DeliveryStatus,
    OrderStatus,
    TransactionStatus,
    TransactionType,
)
from integrations.normalizers import EventKind
from integrations.workflow_client import SignalOutcome

from tests.factories import FakeWorkflowClient, canonical_event


async def ledger_total(fetch: Any, order_id: uuid.UUID, txn_type: TransactionType) -> int:
    return sum(
        t.amount
        for t in await fetch.transactions(order_id)
        if t.type == txn_type.value and t.status == TransactionStatus.SUCCESS.value
    )


async def ledger_net(fetch: Any, order_id: uuid.UUID) -> int:
    """Captured minus refunded; never negative for a consistent ledger."""
    captured = await ledger_total(fetch, order_id, TransactionType.CAPTURE)
    refunded = await ledger_total(fetch, order_id, TransactionType.REFUND)
    assert 0 <= refunded <= captured
    return captured - refunded


@pytest.fixture
def reconciler(
    workflow_client: FakeWorkflowClient, session_factory: Any, test_settings: Any
) -> ReconciliationEngine:
    return ReconciliationEngine(
        workflow_client, session_factory=session_factory, settings=test_settings
    )


class TestSettlement:
    """Captured and failed events."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_applied(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        """A capture moves a processing order to captured and notifies the merchant."""
        order = await make_order(merchant, processor=None)
        event = canonical_event(order, txn_id="pi_1", event_id="evt_1")

        result = await reconciler.reconcile(event)

        assert result.outcome is ReconciliationOutcome.APPLIED
        assert result.order_status == OrderStatus.CAPTURED.value
        assert result.outbox_id is not None

        stored = await fetch.order(order.id)
        assert stored.status == OrderStatus.CAPTURED.value
        assert stored.processor == "stripe"
        assert stored.processor_order_id == "pi_1"

        txns = await fetch.transactions(order.id)
        assert len(txns) == 1
        assert txns[0].type == TransactionType.CAPTURE.value
        assert txns[0].status == TransactionStatus.SUCCESS.value
        assert txns[0].amount == 1000
        assert txns[0].processor_transaction_id == "pi_1"

        entries = await fetch.outbox(order.id)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.id == result.outbox_id
        assert entry.event_type == "payment.captured"
        assert entry.processor_event_id == "evt_1"
        assert entry.status == DeliveryStatus.PENDING.value
        assert entry.attempts == 0
        assert entry.payload["status"] == "captured"
        assert entry.payload["orderId"] == str(order.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_failure_applied(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant)
        event = canonical_event(
            order,
            kind=EventKind.FAILED,
            error_code="card_declined",
            error_message="Declined",
        )

        result = await reconciler.reconcile(event)

        assert result.outcome is ReconciliationOutcome.APPLIED
        assert (await fetch.order(order.id)).status == OrderStatus.FAILED.value
        txns = await fetch.transactions(order.id)
        assert txns[0].type == TransactionType.AUTHORIZATION.value
        assert txns[0].status == TransactionStatus.FAILED.value
        assert txns[0].error_code == "card_declined"
        assert (await fetch.outbox(order.id))[0].event_type == "payment.failed"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redelivered_event_is_duplicate(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        """The same capture delivered twice changes nothing the second time."""
        order = await make_order(merchant)
        event = canonical_event(order, txn_id="pi_1", event_id="evt_1")

        first = await reconciler.reconcile(event)
        second = await reconciler.reconcile(event)

        assert first.outcome is ReconciliationOutcome.APPLIED
        assert second.outcome is ReconciliationOutcome.DUPLICATE
        assert second.order_status == OrderStatus.CAPTURED.value
        assert second.outbox_id is None
        assert len(await fetch.transactions(order.id)) == 1
        assert len(await fetch.outbox(order.id)) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_same_capture_under_new_event_id_is_duplicate(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        """Deduplication keys on the processor transaction, not the event id."""
        order = await make_order(merchant)

        await reconciler.reconcile(canonical_event(order, txn_id="pi_1", event_id="evt_1"))
        result = await reconciler.reconcile(
            canonical_event(order, txn_id="pi_1", event_id="evt_2")
        )

        assert result.outcome is ReconciliationOutcome.DUPLICATE
        assert len(await fetch.outbox(order.id)) == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pending_order_passes_through_processing(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant, status=OrderStatus.PENDING)

        result = await reconciler.reconcile(canonical_event(order))

        assert result.outcome is ReconciliationOutcome.APPLIED
        assert (await fetch.order(order.id)).status == OrderStatus.CAPTURED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_late_failure_after_capture_is_stale(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        """A failure arriving after the capture is recorded but does not move the order."""
        order = await make_order(merchant)
        await reconciler.reconcile(canonical_event(order, txn_id="pi_1"))

        result = await reconciler.reconcile(
            canonical_event(order, kind=EventKind.FAILED, txn_id="pi_1")
        )

        assert result.outcome is ReconciliationOutcome.STALE
        assert (await fetch.order(order.id)).status == OrderStatus.CAPTURED.value
        assert len(await fetch.transactions(order.id)) == 2

        entries = await fetch.outbox(order.id)
        assert [e.event_type for e in entries] == ["payment.captured", "payment.failed"]
        # Merchants are told the order's actual status
        assert entries[1].payload["status"] == "captured"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_capture_amount_clamped(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant, amount=1000)

        await reconciler.reconcile(canonical_event(order, amount=1500))

        assert (await fetch.transactions(order.id))[0].amount == 1000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_second_capture_cannot_exceed_order_amount(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        """A capture under a different processor txn id after capture is stale and adds nothing."""
        order = await make_order(merchant, amount=1000)

        await reconciler.reconcile(canonical_event(order, txn_id="pi_1"))
        second = await reconciler.reconcile(canonical_event(order, txn_id="pi_2"))

        assert second.outcome is ReconciliationOutcome.STALE
        assert (await fetch.order(order.id)).status == OrderStatus.CAPTURED.value
        captures = await ledger_total(fetch, order.id, TransactionType.CAPTURE)
        assert captures == 1000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_captures_fill_up_to_order_amount(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant, amount=1000, captured=700)

        await reconciler.reconcile(canonical_event(order, amount=500, txn_id="pi_2"))

        assert await ledger_total(fetch, order.id, TransactionType.CAPTURE) == 1000

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_merchant_without_webhook_url(
        self,
        reconciler: ReconciliationEngine,
        silent_merchant: Any,
        make_order: Any,
        fetch: Any,
    ) -> None:
        order = await make_order(silent_merchant)

        result = await reconciler.reconcile(canonical_event(order))

        assert result.outcome is ReconciliationOutcome.APPLIED
        assert result.outbox_id is None
        assert await fetch.outbox(order.id) == []


class TestWorkflowRouting:
    """Orders with a payment workflow waiting on the processor."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_signaled_workflow_owns_transition(
        self,
        reconciler: ReconciliationEngine,
        workflow_client: FakeWorkflowClient,
        merchant: Any,
        make_order: Any,
        fetch: Any,
    ) -> None:
        """When the workflow takes the signal the order is left to it."""
        workflow_client.signal_result = SignalOutcome.SIGNALED
        order = await make_order(
            merchant, status=OrderStatus.REQUIRES_ACTION, workflow_id="payment-x"
        )

        result = await reconciler.reconcile(canonical_event(order, txn_id="pi_9"))

        assert result.outcome is ReconciliationOutcome.SIGNALED
        assert result.signal is SignalOutcome.SIGNALED
        assert (await fetch.order(order.id)).status == OrderStatus.REQUIRES_ACTION.value

        assert workflow_client.signals == [
            {
                "workflow_id": "payment-x",
                "signal_name": "payment_completion",
                "payload": {"success": True, "processorTransactionId": "pi_9"},
            }
        ]

        # Audit trail and merchant notification are still written
        assert len(await fetch.transactions(order.id)) == 1
        entries = await fetch.outbox(order.id)
        assert entries[0].payload["status"] == "captured"
        assert entries[0].workflow_id is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "signal_result", [SignalOutcome.UNREACHABLE, SignalOutcome.NOT_APPLICABLE]
    )
    async def test_falls_back_to_direct_update(
        self,
        reconciler: ReconciliationEngine,
        workflow_client: FakeWorkflowClient,
        merchant: Any,
        make_order: Any,
        fetch: Any,
        signal_result: SignalOutcome,
    ) -> None:
        workflow_client.signal_result = signal_result
        order = await make_order(
            merchant, status=OrderStatus.REQUIRES_ACTION, workflow_id="payment-x"
        )

        result = await reconciler.reconcile(
            canonical_event(order, kind=EventKind.FAILED, error_code="expired_card")
        )

        assert result.outcome is ReconciliationOutcome.APPLIED
        assert result.signal is signal_result
        assert (await fetch.order(order.id)).status == OrderStatus.FAILED.value
        assert workflow_client.signals[0]["payload"]["errorCode"] == "expired_card"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_processing_order_is_not_signaled(
        self,
        reconciler: ReconciliationEngine,
        workflow_client: FakeWorkflowClient,
        merchant: Any,
        make_order: Any,
    ) -> None:
        """Only a workflow parked in requires_action is waiting for the processor."""
        workflow_client.signal_result = SignalOutcome.SIGNALED
        order = await make_order(merchant, workflow_id="payment-x")

        result = await reconciler.reconcile(canonical_event(order))

        assert result.outcome is ReconciliationOutcome.APPLIED
        assert workflow_client.signals == []


class TestRefunds:
    """Refund events."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partial_then_full_refund(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant, status=OrderStatus.CAPTURED, amount=1000, captured=1000)

        first = await reconciler.reconcile(
            canonical_event(order, kind=EventKind.REFUNDED, amount=400, txn_id="re_1", refund_total=400)
        )
        assert first.order_status == OrderStatus.PARTIALLY_REFUNDED.value

        second = await reconciler.reconcile(
            canonical_event(order, kind=EventKind.REFUNDED, amount=600, txn_id="re_2", refund_total=1000)
        )
        assert second.outcome is ReconciliationOutcome.APPLIED
        assert second.order_status == OrderStatus.REFUNDED.value

        refunds = [
            t for t in await fetch.transactions(order.id) if t.type == TransactionType.REFUND.value
        ]
        assert sorted(t.amount for t in refunds) == [400, 600]
        assert len(await fetch.outbox(order.id)) == 2

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_reported_total_wins_over_ledger(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        """A refund whose earlier siblings were never delivered still reaches refunded."""
        order = await make_order(merchant, status=OrderStatus.CAPTURED, amount=1000, captured=1000)

        result = await reconciler.reconcile(
            canonical_event(order, kind=EventKind.REFUNDED, amount=300, txn_id="re_3", refund_total=1000)
        )

        assert result.order_status == OrderStatus.REFUNDED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_clamped_to_remaining(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant, status=OrderStatus.CAPTURED, amount=1000, captured=1000)

        await reconciler.reconcile(
            canonical_event(order, kind=EventKind.REFUNDED, amount=700, txn_id="re_1")
        )
        result = await reconciler.reconcile(
            canonical_event(order, kind=EventKind.REFUNDED, amount=700, txn_id="re_2")
        )

        assert result.order_status == OrderStatus.REFUNDED.value
        refunds = [
            t.amount
            for t in await fetch.transactions(order.id)
            if t.type == TransactionType.REFUND.value
        ]
        assert sorted(refunds) == [300, 700]
        assert await ledger_net(fetch, order.id) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_before_capture_is_stale(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant, status=OrderStatus.PROCESSING)

        result = await reconciler.reconcile(
            canonical_event(order, kind=EventKind.REFUNDED, amount=100, txn_id="re_1")
        )

        assert result.outcome is ReconciliationOutcome.STALE
        assert (await fetch.order(order.id)).status == OrderStatus.PROCESSING.value
        # Nothing was captured, so nothing can have been refunded
        assert await ledger_net(fetch, order.id) == 0
        assert all(t.amount == 0 for t in await fetch.transactions(order.id))

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refund_after_failure_refunds_nothing(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant, amount=1000)
        await reconciler.reconcile(canonical_event(order, kind=EventKind.FAILED))

        result = await reconciler.reconcile(
            canonical_event(order, kind=EventKind.REFUNDED, amount=1000, txn_id="re_1", refund_total=1000)
        )

        assert result.outcome is ReconciliationOutcome.STALE
        assert (await fetch.order(order.id)).status == OrderStatus.FAILED.value
        assert await ledger_net(fetch, order.id) == 0

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_refunds_never_exceed_captures(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        """A partial capture bounds the refundable amount, not the order amount."""
        order = await make_order(merchant, status=OrderStatus.CAPTURED, amount=1000, captured=600)

        result = await reconciler.reconcile(
            canonical_event(order, kind=EventKind.REFUNDED, amount=1000, txn_id="re_1")
        )

        assert result.transaction_id is not None
        refunds = [
            t for t in await fetch.transactions(order.id) if t.type == TransactionType.REFUND.value
        ]
        assert refunds[0].amount == 600
        assert await ledger_net(fetch, order.id) == 0


class TestUnroutable:
    """Events that do not resolve to one of the merchant's orders."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_order(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant)
        event = canonical_event(order).model_copy(update={"order_ref": str(uuid.uuid4())})

        result = await reconciler.reconcile(event)

        assert result.outcome is ReconciliationOutcome.ORDER_NOT_FOUND
        assert await fetch.outbox() == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize("order_ref", [None, "", "not-a-uuid"])
    async def test_unusable_order_ref(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, order_ref: Any
    ) -> None:
        order = await make_order(merchant)
        event = canonical_event(order).model_copy(update={"order_ref": order_ref})

        result = await reconciler.reconcile(event)

        assert result.outcome is ReconciliationOutcome.ORDER_NOT_FOUND

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_other_merchants_order(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        """An event naming another merchant never touches the order."""
        order = await make_order(merchant)
        event = canonical_event(order).model_copy(update={"merchant_id": str(uuid.uuid4())})

        result = await reconciler.reconcile(event)

        assert result.outcome is ReconciliationOutcome.ORDER_NOT_FOUND
        assert (await fetch.order(order.id)).status == OrderStatus.PROCESSING.value


class TestPersistence:
    """Retry and notification behaviour around the unit of work."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transient_database_error_is_retried(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant)
        real_apply = reconciler.apply
        calls = []

        async def flaky_apply(db: Any, event: Any) -> Any:
            calls.append(event)
            if len(calls) == 1:
                raise OperationalError("SELECT", {}, Exception("database is locked"))
            return await real_apply(db, event)

        reconciler.apply = flaky_apply

        result = await reconciler.reconcile(canonical_event(order))

        assert len(calls) == 2
        assert result.outcome is ReconciliationOutcome.APPLIED
        assert (await fetch.order(order.id)).status == OrderStatus.CAPTURED.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_persistent_database_error_surfaces(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant)
        reconciler.apply = AsyncMock(
            side_effect=OperationalError("SELECT", {}, Exception("connection refused"))
        )

        with pytest.raises(PersistenceFailure) as exc_info:
            await reconciler.reconcile(canonical_event(order))

        assert exc_info.value.http_status == 503
        assert reconciler.apply.await_count == 3
        assert (await fetch.order(order.id)).status == OrderStatus.PROCESSING.value

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_notifier_wakes_delivery(
        self,
        workflow_client: FakeWorkflowClient,
        session_factory: Any,
        test_settings: Any,
        merchant: Any,
        make_order: Any,
    ) -> None:
        notifier = MagicMock()
        notifier.notify = AsyncMock()
        reconciler = ReconciliationEngine(
            workflow_client,
            session_factory=session_factory,
            notifier=notifier,
            settings=test_settings,
        )
        order = await make_order(merchant)

        result = await reconciler.reconcile(canonical_event(order))
        duplicate = await reconciler.reconcile(canonical_event(order))

        assert duplicate.outcome is ReconciliationOutcome.DUPLICATE
        notifier.notify.assert_awaited_once_with([result.outbox_id])


class TestConcurrentDelivery:
    """Processors retry aggressively; the same event can arrive in parallel."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_same_event(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant)
        event = canonical_event(order, txn_id="pi_1", event_id="evt_1")

        results = await asyncio.gather(*(reconciler.reconcile(event) for _ in range(5)))

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes.count(ReconciliationOutcome.APPLIED.value) == 1
        assert outcomes.count(ReconciliationOutcome.DUPLICATE.value) == 4
        assert len(await fetch.transactions(order.id)) == 1
        assert len(await fetch.outbox(order.id)) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_capture_and_failure(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        """Whichever settles first wins; the other is recorded as stale."""
        order = await make_order(merchant)

        results = await asyncio.gather(
            reconciler.reconcile(canonical_event(order, txn_id="pi_1")),
            reconciler.reconcile(canonical_event(order, kind=EventKind.FAILED, txn_id="pi_1")),
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["applied", "stale"]
        final = (await fetch.order(order.id)).status
        assert final in (OrderStatus.CAPTURED.value, OrderStatus.FAILED.value)
        assert len(await fetch.transactions(order.id)) == 2

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_distinct_captures_stay_within_amount(
        self, reconciler: ReconciliationEngine, merchant: Any, make_order: Any, fetch: Any
    ) -> None:
        order = await make_order(merchant, amount=1000)

        results = await asyncio.gather(
            *(reconciler.reconcile(canonical_event(order, txn_id=f"pi_{i}")) for i in range(4))
        )

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["applied", "stale", "stale", "stale"]
        assert await ledger_total(fetch, order.id, TransactionType.CAPTURE) == 1000
        assert await ledger_net(fetch, order.id) == 1000
