"""
Merchant webhook delivery scheduler.

Drains the webhook outbox with at-most-one in-flight attempt per entry:

1. Claim due entries: SELECT ... FOR UPDATE SKIP LOCKED, then a conditional
   UPDATE to 'delivering' with a fresh claim token per entry. Only rows the
   UPDATE actually changed are ours.
2. Deliver each claimed entry outside any database transaction.
3. Finalize conditionally on the claim token: delivered, or failed with the
   next retry scheduled, or exhausted after max attempts.

Entries left in 'delivering' by a crashed worker become claimable again once
the claim lease expires.
"""
import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Settings, get_settings
from core.outbox import OutboxNotifier
from database.connection import get_session_factory
from database.models import DeliveryStatus, Merchant, WebhookEvent, utcnow
from integrations.merchant_webhook import DeliveryResult, MerchantWebhookSender
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

RETRYABLE_STATUSES = [DeliveryStatus.PENDING.value, DeliveryStatus.FAILED.value]
OPEN_STATUSES = RETRYABLE_STATUSES + [DeliveryStatus.DELIVERING.value]


@dataclass(frozen=True)
class ClaimedEntry:
    """An outbox entry this worker holds the claim on."""

    id: uuid.UUID
    claim_token: str
    event_type: str
    payload: Dict[str, Any]
    attempts: int
    webhook_url: Optional[str]
    webhook_secret: Optional[str]


def backoff_delay(attempts: int, base_seconds: float, max_seconds: float) -> timedelta:
    """
    Delay before the next attempt after `attempts` failed attempts.

    base * 2^(attempts - 1), capped at max_seconds.
    """
    exponent = max(attempts - 1, 0)
    return timedelta(seconds=min(base_seconds * (2 ** exponent), max_seconds))


class DeliveryScheduler:
    """
    Delivers outbox entries to merchant webhook endpoints.

    Safe to run as several workers against the same database: the claim
    protocol guarantees no entry has two attempts in flight.
    """

    def __init__(
        self,
        sender: Optional[MerchantWebhookSender] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        notifier: Optional[OutboxNotifier] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize delivery scheduler.

        Args:
            sender: Merchant webhook sender
            session_factory: Session factory (defaults to the process-wide one)
            notifier: Optional Redis wake-up; replaces the idle sleep
            settings: Application settings
            clock: Naive-UTC clock, injectable for tests
        """
        self.settings = settings or get_settings()
        self.sender = sender or MerchantWebhookSender(
            timeout_seconds=self.settings.webhook_request_timeout_seconds
        )
        self.session_factory = session_factory or get_session_factory()
        self.notifier = notifier
        self.clock = clock

        self.max_attempts = self.settings.webhook_max_attempts
        self.backoff_base_seconds = self.settings.webhook_backoff_base_seconds
        self.backoff_max_seconds = self.settings.webhook_backoff_max_seconds
        self.batch_size = self.settings.webhook_batch_size
        self.poll_interval_seconds = self.settings.webhook_poll_interval_seconds
        self.claim_lease_seconds = self.settings.webhook_claim_lease_seconds
        self._running = False

        logger.info(
            "delivery_scheduler_initialized",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
            max_attempts=self.max_attempts,
            push_wakeup=notifier is not None,
        )

    def _due_condition(self, now: datetime):
        lease_expired_before = now - timedelta(seconds=self.claim_lease_seconds)
        return or_(
            and_(
                WebhookEvent.status.in_(RETRYABLE_STATUSES),
                WebhookEvent.next_retry_at <= now,
            ),
            and_(
                WebhookEvent.status == DeliveryStatus.DELIVERING.value,
                WebhookEvent.last_attempt_at <= lease_expired_before,
            ),
        )

    async def claim_batch(self, limit: Optional[int] = None) -> List[ClaimedEntry]:
        """
        Claim due outbox entries.

        Args:
            limit: Max entries to claim (defaults to the batch size)

        Returns:
            List[ClaimedEntry]: Entries now held by this worker
        """
        now = self.clock()
        due = self._due_condition(now)

        async with self.session_factory() as db:
            async with db.begin():
                candidates_stmt = (
                    select(WebhookEvent.id)
                    .where(due)
                    .order_by(WebhookEvent.next_retry_at, WebhookEvent.created_at)
                    .limit(limit or self.batch_size)
                    .with_for_update(skip_locked=True)
                )
                candidate_ids = list((await db.execute(candidates_stmt)).scalars().all())

                tokens: Dict[uuid.UUID, str] = {}
                for entry_id in candidate_ids:
                    token = uuid.uuid4().hex
                    claim_stmt = (
                        update(WebhookEvent)
                        .where(WebhookEvent.id == entry_id, due)
                        .values(
                            status=DeliveryStatus.DELIVERING.value,
                            claim_token=token,
                            last_attempt_at=now,
                        )
                        .execution_options(synchronize_session=False)
                    )
                    result = await db.execute(claim_stmt)
                    if result.rowcount == 1:
                        tokens[entry_id] = token

                if not tokens:
                    return []

                rows_stmt = (
                    select(
                        WebhookEvent.id,
                        WebhookEvent.event_type,
                        WebhookEvent.payload,
                        WebhookEvent.attempts,
                        Merchant.webhook_url,
                        Merchant.webhook_secret,
                    )
                    .join(Merchant, Merchant.id == WebhookEvent.merchant_id)
                    .where(WebhookEvent.id.in_(list(tokens)))
                )
                rows = (await db.execute(rows_stmt)).all()

        claimed = [
            ClaimedEntry(
                id=row.id,
                claim_token=tokens[row.id],
                event_type=row.event_type,
                payload=row.payload,
                attempts=row.attempts,
                webhook_url=row.webhook_url,
                webhook_secret=row.webhook_secret,
            )
            for row in rows
        ]

        logger.debug("outbox_entries_claimed", count=len(claimed))
        return claimed

    async def deliver(self, entry: ClaimedEntry) -> DeliveryResult:
        """
        Attempt delivery of a claimed entry.

        Args:
            entry: Claimed outbox entry

        Returns:
            DeliveryResult
        """
        if not entry.webhook_url:
            return DeliveryResult(success=False, error="no_webhook_url")

        return await self.sender.send(
            url=entry.webhook_url,
            secret=entry.webhook_secret,
            webhook_id=str(entry.id),
            event_type=entry.event_type,
            payload=entry.payload,
        )

    async def finalize(self, entry: ClaimedEntry, result: DeliveryResult) -> Optional[str]:
        """
        Record the outcome of an attempt, if we still hold the claim.

        Args:
            entry: Claimed outbox entry
            result: Outcome of the attempt

        Returns:
            The entry's new status, or None if the claim was lost
        """
        now = self.clock()
        attempts = entry.attempts + 1

        if result.success:
            values = {
                "status": DeliveryStatus.DELIVERED.value,
                "delivered_at": now,
                "next_retry_at": None,
                "last_error": None,
            }
        elif attempts < self.max_attempts:
            values = {
                "status": DeliveryStatus.FAILED.value,
                "next_retry_at": now
                + backoff_delay(attempts, self.backoff_base_seconds, self.backoff_max_seconds),
                "last_error": result.error,
            }
        else:
            values = {
                "status": DeliveryStatus.EXHAUSTED.value,
                "next_retry_at": None,
                "last_error": result.error,
            }

        stmt = (
            update(WebhookEvent)
            .where(
                WebhookEvent.id == entry.id,
                WebhookEvent.claim_token == entry.claim_token,
                WebhookEvent.status == DeliveryStatus.DELIVERING.value,
            )
            .values(attempts=attempts, claim_token=None, **values)
            .execution_options(synchronize_session=False)
        )

        async with self.session_factory() as db:
            async with db.begin():
                updated = (await db.execute(stmt)).rowcount

        if updated != 1:
            logger.warning("outbox_claim_lost", outbox_id=str(entry.id))
            return None

        status = values["status"]
        metrics.record_webhook_delivery(entry.event_type, status, result.duration_seconds)

        log = logger.bind(
            outbox_id=str(entry.id),
            event_type=entry.event_type,
            attempts=attempts,
        )
        if status == DeliveryStatus.DELIVERED.value:
            log.info("webhook_delivered", status_code=result.status_code)
        elif status == DeliveryStatus.FAILED.value:
            log.warning(
                "webhook_delivery_failed",
                error=result.error,
                next_retry_at=values["next_retry_at"].isoformat(),
            )
        else:
            log.error("webhook_delivery_exhausted", error=result.error)

        return status

    async def _process_entry(self, entry: ClaimedEntry) -> Optional[str]:
        result = await self.deliver(entry)
        return await self.finalize(entry, result)

    async def process_batch(self) -> int:
        """
        Claim and deliver one batch.

        Returns:
            int: Number of entries attempted
        """
        started = time.perf_counter()
        entries = await self.claim_batch()
        if not entries:
            return 0

        logger.info("outbox_batch_processing_started", batch_size=len(entries))

        statuses = await asyncio.gather(*(self._process_entry(entry) for entry in entries))

        metrics.record_outbox_batch(time.perf_counter() - started)
        logger.info(
            "outbox_batch_processed",
            total=len(entries),
            delivered=statuses.count(DeliveryStatus.DELIVERED.value),
            failed=statuses.count(DeliveryStatus.FAILED.value),
            exhausted=statuses.count(DeliveryStatus.EXHAUSTED.value),
        )
        return len(entries)

    async def _idle(self) -> None:
        if self.notifier is not None:
            await self.notifier.wait(self.poll_interval_seconds)
        else:
            await asyncio.sleep(self.poll_interval_seconds)

    async def start(self) -> None:
        """
        Start the delivery loop.

        Runs until stop() is called.
        """
        self._running = True
        logger.info("delivery_scheduler_started")

        try:
            while self._running:
                try:
                    processed = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())

                    if processed == 0:
                        await self._idle()
                    else:
                        # More may be due, check again right away
                        await asyncio.sleep(0)

                except Exception as e:
                    logger.error("delivery_scheduler_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("delivery_scheduler_stopped")

    def stop(self) -> None:
        """Stop the delivery loop after the current batch."""
        self._running = False
        logger.info("delivery_scheduler_stop_requested")

    async def get_pending_count(self) -> int:
        """
        Count outbox entries not yet delivered or exhausted.

        Returns:
            int: Number of open entries
        """
        async with self.session_factory() as db:
            stmt = select(func.count(WebhookEvent.id)).where(
                WebhookEvent.status.in_(OPEN_STATUSES)
            )
            return int((await db.execute(stmt)).scalar_one())
