"""
Processor event reconciliation.

Applies canonical processor events to orders. Each event is one unit of
work inside a single database transaction:

1. Lock the order row (SELECT ... FOR UPDATE)
2. Skip events already in the ledger (same processor txn id, type, status)
3. Signal the payment workflow when it is waiting on the processor, else
   move the order along the state graph directly
4. Append the ledger transaction
5. Enqueue the merchant webhook (insert-or-ignore on the natural key)

Processors redeliver freely, so every step is safe to repeat. Database
trouble surfaces as PersistenceFailure and the whole unit is retried with
backoff; the processor's own retry covers anything beyond that.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import Settings, get_settings
from core.exceptions import PersistenceFailure
from core.outbox import OutboxNotifier, build_order_payload, enqueue_webhook
from core.state_machine import can_transition, refund_status, settlement_path
from database.connection import get_session_factory
from database.models import (
    Merchant,
    Order,
    OrderStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
    utcnow,
)
from integrations.normalizers import CanonicalEvent, EventKind
from integrations.workflow_client import PaymentOutcome, SignalOutcome, WorkflowClient
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class ReconciliationOutcome(str, Enum):
    """What happened to a processor event."""

    APPLIED = "applied"
    SIGNALED = "signaled"
    DUPLICATE = "duplicate"
    STALE = "stale"  # recorded, but the transition is not in the graph
    ORDER_NOT_FOUND = "order_not_found"


@dataclass
class ReconciliationResult:
    """Result of reconciling one processor event."""

    outcome: ReconciliationOutcome
    order_id: Optional[uuid.UUID] = None
    order_status: Optional[str] = None
    transaction_id: Optional[uuid.UUID] = None
    outbox_id: Optional[uuid.UUID] = None
    signal: Optional[SignalOutcome] = None


# Ledger entry written for each event kind
LEDGER_ENTRIES = {
    EventKind.CAPTURED: (TransactionType.CAPTURE, TransactionStatus.SUCCESS),
    EventKind.FAILED: (TransactionType.AUTHORIZATION, TransactionStatus.FAILED),
    EventKind.REFUNDED: (TransactionType.REFUND, TransactionStatus.SUCCESS),
}

# Order status each settling event aims for
SETTLEMENT_TARGETS = {
    EventKind.CAPTURED: OrderStatus.CAPTURED,
    EventKind.FAILED: OrderStatus.FAILED,
}


def _parse_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class ReconciliationEngine:
    """
    Applies processor events to orders.

    Features:
    - Row-locked, idempotent order mutation
    - Signal-or-fallback routing to the payment workflow
    - Cumulative refund tracking
    - Outbox enqueue in the same transaction
    - Bounded unit of work with tenacity retries on persistence failures
    """

    def __init__(
        self,
        workflow_client: WorkflowClient,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        notifier: Optional[OutboxNotifier] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize reconciliation engine.

        Args:
            workflow_client: Orchestrator client used for signalling
            session_factory: Session factory (defaults to the process-wide one)
            notifier: Optional Redis wake-up for the delivery scheduler
            settings: Application settings
        """
        self.workflow_client = workflow_client
        self.session_factory = session_factory or get_session_factory()
        self.notifier = notifier
        self.settings = settings or get_settings()

    async def reconcile(self, event: CanonicalEvent) -> ReconciliationResult:
        """
        Reconcile an event, retrying the unit on persistence failures.

        Args:
            event: Verified canonical event

        Returns:
            ReconciliationResult

        Raises:
            PersistenceFailure: If every attempt failed
        """
        started = time.perf_counter()
        settings = self.settings

        retrying = AsyncRetrying(
            retry=retry_if_exception_type(PersistenceFailure),
            stop=stop_after_attempt(settings.persistence_retry_attempts),
            wait=wait_exponential(
                multiplier=settings.persistence_retry_base_delay,
                max=settings.persistence_retry_max_delay,
            ),
            before_sleep=lambda state: self._log_retry(event, state),
            reraise=True,
        )

        async for attempt in retrying:
            with attempt:
                result = await self.reconcile_once(event)

        metrics.record_reconciliation(
            event.processor, event.kind.value, result.outcome.value, time.perf_counter() - started
        )

        if result.outbox_id is not None and self.notifier is not None:
            await self.notifier.notify([result.outbox_id])

        return result

    def _log_retry(self, event: CanonicalEvent, retry_state) -> None:
        metrics.record_persistence_retry(event.processor)
        logger.warning(
            "reconciliation_retrying",
            processor=event.processor,
            event_id=event.processor_event_id,
            attempt=retry_state.attempt_number,
            error=str(retry_state.outcome.exception()),
        )

    async def reconcile_once(self, event: CanonicalEvent) -> ReconciliationResult:
        """
        Run one bounded unit of work.

        The budget covers the database work plus one orchestrator signal.

        Raises:
            PersistenceFailure: Database unavailable or the unit timed out
        """
        budget = (
            self.settings.reconciliation_db_timeout_seconds
            + self.settings.workflow_timeout_seconds
        )
        try:
            return await asyncio.wait_for(self._run_unit(event), timeout=budget)
        except asyncio.TimeoutError:
            logger.error(
                "reconciliation_timed_out",
                event_id=event.processor_event_id,
                timeout_seconds=budget,
            )
            raise PersistenceFailure("Reconciliation timed out")
        except IntegrityError:
            raise
        except (DBAPIError, PoolTimeoutError) as e:
            logger.error(
                "reconciliation_persistence_failed",
                event_id=event.processor_event_id,
                error=str(e),
            )
            raise PersistenceFailure(f"Database error: {type(e).__name__}")

    async def _run_unit(self, event: CanonicalEvent) -> ReconciliationResult:
        async with self.session_factory() as db:
            async with db.begin():
                return await self.apply(db, event)

    async def apply(self, db: AsyncSession, event: CanonicalEvent) -> ReconciliationResult:
        """
        Apply an event inside the caller's transaction.

        Args:
            db: Session with an open transaction
            event: Verified canonical event

        Returns:
            ReconciliationResult
        """
        log = logger.bind(
            processor=event.processor,
            event_id=event.processor_event_id,
            event_type=event.processor_event_type,
            order_ref=event.order_ref,
        )

        order_id = _parse_uuid(event.order_ref)
        order = None
        if order_id is not None:
            stmt = select(Order).where(Order.id == order_id).with_for_update()
            order = (await db.execute(stmt)).scalar_one_or_none()

        if order is None or str(order.merchant_id) != event.merchant_id:
            log.warning("order_not_found", merchant_id=event.merchant_id)
            return ReconciliationResult(outcome=ReconciliationOutcome.ORDER_NOT_FOUND)

        txn_type, txn_status = LEDGER_ENTRIES[event.kind]

        duplicate_stmt = (
            select(Transaction.id)
            .where(
                Transaction.order_id == order.id,
                Transaction.processor_transaction_id == event.processor_txn_id,
                Transaction.type == txn_type.value,
                Transaction.status == txn_status.value,
            )
            .limit(1)
        )
        if (await db.execute(duplicate_stmt)).scalar_one_or_none() is not None:
            log.debug("processor_event_duplicate", order_id=str(order.id))
            return ReconciliationResult(
                outcome=ReconciliationOutcome.DUPLICATE,
                order_id=order.id,
                order_status=order.status,
            )

        if event.kind is EventKind.REFUNDED:
            return await self._apply_refund(db, order, event, log)
        return await self._apply_settlement(db, order, event, log)

    async def _apply_settlement(
        self, db: AsyncSession, order: Order, event: CanonicalEvent, log
    ) -> ReconciliationResult:
        target = SETTLEMENT_TARGETS[event.kind]
        amount = event.amount
        if event.kind is EventKind.CAPTURED:
            captured = await self._settled_total(db, order, TransactionType.CAPTURE)
            remaining = max(order.amount - captured, 0)
            if amount > remaining:
                log.warning(
                    "capture_amount_clamped",
                    order_id=str(order.id),
                    reported=amount,
                    captured=captured,
                    order_amount=order.amount,
                )
                amount = remaining

        signal = None
        if order.workflow_id and order.status == OrderStatus.REQUIRES_ACTION.value:
            signal = await self.workflow_client.signal_outcome(
                order.workflow_id,
                PaymentOutcome(
                    success=event.kind is EventKind.CAPTURED,
                    processor_transaction_id=event.processor_txn_id,
                    error_code=event.error_code,
                    error_message=event.error_message,
                ),
            )
            metrics.record_workflow_signal(signal.value)

            if signal is SignalOutcome.SIGNALED:
                # The workflow owns the transition; keep the audit trail only
                txn = self._record_transaction(db, order, event, amount)
                outbox_id = await self._enqueue(db, order, event, target.value)
                log.info("processor_event_signaled", order_id=str(order.id))
                return ReconciliationResult(
                    outcome=ReconciliationOutcome.SIGNALED,
                    order_id=order.id,
                    order_status=order.status,
                    transaction_id=txn.id,
                    outbox_id=outbox_id,
                    signal=signal,
                )

            log.info(
                "workflow_signal_fallback",
                order_id=str(order.id),
                workflow_id=order.workflow_id,
                signal=signal.value,
            )

        path = settlement_path(order.status, target.value)
        txn = self._record_transaction(db, order, event, amount)

        if not path:
            return await self._stale(db, order, event, txn, log, target.value, signal)

        self._move(order, path, log)
        if event.kind is EventKind.CAPTURED:
            order.processor_order_id = event.processor_txn_id
        if order.processor is None:
            order.processor = event.processor

        outbox_id = await self._enqueue(db, order, event, order.status)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            order_id=order.id,
            order_status=order.status,
            transaction_id=txn.id,
            outbox_id=outbox_id,
            signal=signal,
        )

    async def _apply_refund(
        self, db: AsyncSession, order: Order, event: CanonicalEvent, log
    ) -> ReconciliationResult:
        captured = await self._settled_total(db, order, TransactionType.CAPTURE)
        prior = await self._settled_total(db, order, TransactionType.REFUND)

        # Only captured money can be refunded
        remaining = max(captured - prior, 0)
        amount = event.amount
        if amount > remaining:
            log.warning(
                "refund_amount_clamped",
                order_id=str(order.id),
                reported=amount,
                remaining=remaining,
            )
            amount = remaining

        refunded_total = prior + amount
        if event.refund_total is not None:
            refunded_total = max(refunded_total, event.refund_total)

        target = refund_status(refunded_total, order.amount)
        txn = self._record_transaction(db, order, event, amount)

        if not can_transition(order.status, target.value):
            return await self._stale(db, order, event, txn, log, target.value, None)

        self._move(order, [target], log)
        log.info(
            "refund_applied",
            order_id=str(order.id),
            refund_amount=amount,
            refunded_total=refunded_total,
            order_amount=order.amount,
        )

        outbox_id = await self._enqueue(db, order, event, order.status)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.APPLIED,
            order_id=order.id,
            order_status=order.status,
            transaction_id=txn.id,
            outbox_id=outbox_id,
        )

    async def _stale(
        self,
        db: AsyncSession,
        order: Order,
        event: CanonicalEvent,
        txn: Transaction,
        log,
        target: str,
        signal: Optional[SignalOutcome],
    ) -> ReconciliationResult:
        log.warning(
            "processor_event_stale",
            order_id=str(order.id),
            current_status=order.status,
            target_status=target,
        )
        outbox_id = await self._enqueue(db, order, event, order.status)
        return ReconciliationResult(
            outcome=ReconciliationOutcome.STALE,
            order_id=order.id,
            order_status=order.status,
            transaction_id=txn.id,
            outbox_id=outbox_id,
            signal=signal,
        )

    @staticmethod
    async def _settled_total(
        db: AsyncSession, order: Order, txn_type: TransactionType
    ) -> int:
        """Sum of successful ledger entries of one type for the order."""
        stmt = select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.order_id == order.id,
            Transaction.type == txn_type.value,
            Transaction.status == TransactionStatus.SUCCESS.value,
        )
        return int((await db.execute(stmt)).scalar_one())

    @staticmethod
    def _move(order: Order, path: list[OrderStatus], log) -> None:
        for status in path:
            log.info(
                "order_status_changed",
                order_id=str(order.id),
                from_status=order.status,
                to_status=status.value,
            )
            order.status = status.value
        order.updated_at = utcnow()

    @staticmethod
    def _record_transaction(
        db: AsyncSession, order: Order, event: CanonicalEvent, amount: int
    ) -> Transaction:
        txn_type, txn_status = LEDGER_ENTRIES[event.kind]
        txn = Transaction(
            id=uuid.uuid4(),
            order_id=order.id,
            type=txn_type.value,
            amount=amount,
            status=txn_status.value,
            processor_transaction_id=event.processor_txn_id,
            processor_response=event.raw,
            error_code=event.error_code,
            error_message=event.error_message,
            created_at=utcnow(),
        )
        db.add(txn)
        return txn

    async def _enqueue(
        self, db: AsyncSession, order: Order, event: CanonicalEvent, status: str
    ) -> Optional[uuid.UUID]:
        merchant = await db.get(Merchant, order.merchant_id)
        if merchant is None or not merchant.webhook_url:
            logger.debug("outbox_skipped_no_webhook_url", merchant_id=str(order.merchant_id))
            return None

        payload = build_order_payload(
            order,
            status=status,
            processor=event.processor,
            processor_event_id=event.processor_event_id,
            processor_event_type=event.processor_event_type,
        )
        return await enqueue_webhook(
            db,
            merchant_id=order.merchant_id,
            order_id=order.id,
            event_type=event.event_type,
            processor_event_id=event.processor_event_id,
            payload=payload,
        )
