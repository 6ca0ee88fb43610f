"""
Transactional outbox for merchant webhooks.

Entries are written in the same transaction as the order mutation that
produced them, keyed by (order, event_type, processor_event_id) so a
redelivered processor event can never enqueue a second notification.

After commit, the writer may push the new entry ids onto a Redis list; the
delivery scheduler blocks on that list instead of sleeping, so fresh
entries go out without waiting for the next poll.
"""
import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

import structlog
from redis import asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import DeliveryStatus, Order, WebhookEvent, utcnow
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

NATURAL_KEY = ["order_id", "event_type", "processor_event_id"]

_DIALECT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def build_order_payload(
    order: Order,
    status: str,
    processor: Optional[str],
    processor_event_id: str,
    processor_event_type: str,
) -> Dict[str, Any]:
    """Merchant-facing webhook body for an order event."""
    return {
        "orderId": str(order.id),
        "externalId": order.external_id,
        "amount": order.amount,
        "currency": order.currency,
        "status": status,
        "processor": processor,
        "processorEventId": processor_event_id,
        "processorEventType": processor_event_type,
    }


async def enqueue_webhook(
    db: AsyncSession,
    merchant_id: uuid.UUID,
    order_id: uuid.UUID,
    event_type: str,
    processor_event_id: str,
    payload: Dict[str, Any],
    workflow_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[uuid.UUID]:
    """
    Insert an outbox entry unless one with the same natural key exists.

    Must run inside the caller's transaction; does not commit.

    Returns:
        The new entry id, or None if the entry already existed
    """
    dialect = db.get_bind().dialect.name
    insert = _DIALECT_INSERTS.get(dialect)
    if insert is None:
        raise RuntimeError(f"Outbox insert-or-ignore is not supported on {dialect}")

    created_at = now or utcnow()
    entry_id = uuid.uuid4()
    stmt = (
        insert(WebhookEvent.__table__)
        .values(
            id=entry_id,
            merchant_id=merchant_id,
            order_id=order_id,
            event_type=event_type,
            processor_event_id=processor_event_id,
            payload=payload,
            status=DeliveryStatus.PENDING.value,
            attempts=0,
            next_retry_at=created_at,
            workflow_id=workflow_id,
            created_at=created_at,
        )
        .on_conflict_do_nothing(index_elements=NATURAL_KEY)
    )
    result = await db.execute(stmt)

    if result.rowcount != 1:
        logger.debug(
            "outbox_entry_exists",
            order_id=str(order_id),
            event_type=event_type,
            processor_event_id=processor_event_id,
        )
        return None

    metrics.record_outbox_enqueued(event_type)
    logger.info(
        "outbox_entry_enqueued",
        outbox_id=str(entry_id),
        order_id=str(order_id),
        event_type=event_type,
    )
    return entry_id


class OutboxNotifier:
    """
    Redis list used to wake the delivery scheduler.

    Best effort in both directions: a lost wake-up only means the entry
    waits for the next poll.
    """

    def __init__(self, redis_client: aioredis.Redis, key: str = "gateway:outbox:wakeup"):
        self.redis = redis_client
        self.key = key

    @classmethod
    def from_url(cls, url: str, key: str) -> "OutboxNotifier":
        """Build a notifier from a Redis URL."""
        return cls(aioredis.from_url(url, decode_responses=True), key=key)

    async def notify(self, entry_ids: Iterable[uuid.UUID]) -> None:
        """Push entry ids onto the wake-up list."""
        ids = [str(entry_id) for entry_id in entry_ids]
        if not ids:
            return
        try:
            await self.redis.rpush(self.key, *ids)
        except RedisError as e:
            logger.warning("outbox_wakeup_push_failed", error=str(e), count=len(ids))

    async def wait(self, timeout: float) -> List[str]:
        """
        Block until an id is pushed or the timeout passes.

        Returns:
            The ids popped (empty on timeout or Redis trouble)
        """
        # BLPOP takes whole or fractional seconds; 0 would block forever
        try:
            item = await self.redis.blpop([self.key], timeout=max(timeout, 0.01))
        except RedisError as e:
            logger.warning("outbox_wakeup_wait_failed", error=str(e))
            await asyncio.sleep(timeout)
            return []
        if item is None:
            return []
        _, value = item
        return [value]

    async def ping(self) -> bool:
        """Return True if Redis answers."""
        try:
            return bool(await self.redis.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        """Close the Redis connection pool."""
        await self.redis.aclose()
