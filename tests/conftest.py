"""
Pytest configuration and fixtures.

Every test gets its own SQLite database file; outbound HTTP is served by
httpx.MockTransport and the orchestrator by an in-memory fake.
"""
import os
import uuid
from typing import Any, AsyncGenerator, List, Optional

# Settings are read at import time by the app module
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from config import Settings
from database.connection import build_engine, create_session_factory
from database.models import (
    Base,
    Merchant,
    Order,
    OrderStatus,
    ProcessorConfig,
    Transaction,
    TransactionStatus,
    TransactionType,
    WebhookEvent,
    utcnow,
)

from tests.factories import (
    MERCHANT_WEBHOOK_SECRET,
    MERCHANT_WEBHOOK_URL,
    RAZORPAY_SECRET,
    STRIPE_SECRET,
    FakeWorkflowClient,
)


@pytest.fixture
def test_settings(tmp_path: Any) -> Settings:
    """Create test settings."""
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'gateway.db'}",
        redis_url=None,
        workflow_timeout_seconds=1.0,
        reconciliation_db_timeout_seconds=5.0,
        persistence_retry_attempts=3,
        persistence_retry_base_delay=0.01,
        persistence_retry_max_delay=0.02,
        webhook_max_attempts=4,
        webhook_backoff_base_seconds=10.0,
        webhook_backoff_max_seconds=3600.0,
        webhook_batch_size=10,
        webhook_poll_interval_seconds=0.05,
        webhook_claim_lease_seconds=60.0,
        app_env="test",
        log_level="DEBUG",
    )


@pytest_asyncio.fixture
async def engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, Any]:
    """Per-test database with all tables created."""
    engine = build_engine(test_settings.database_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the test database."""
    return create_session_factory(engine)


@pytest.fixture
def workflow_client() -> FakeWorkflowClient:
    """Orchestrator fake; by default no workflow is waiting."""
    return FakeWorkflowClient()


async def _add_merchant(
    session_factory: async_sessionmaker[AsyncSession], webhook_url: Optional[str]
) -> Merchant:
    async with session_factory() as db:
        merchant = Merchant(
            id=uuid.uuid4(),
            name="Acme Store",
            email=f"ops+{uuid.uuid4().hex[:8]}@acme.example",
            webhook_url=webhook_url,
            webhook_secret=MERCHANT_WEBHOOK_SECRET if webhook_url else None,
        )
        db.add(merchant)
        await db.flush()
        db.add_all(
            [
                ProcessorConfig(
                    merchant_id=merchant.id,
                    processor="stripe",
                    webhook_secret=STRIPE_SECRET,
                    priority=1,
                ),
                ProcessorConfig(
                    merchant_id=merchant.id,
                    processor="razorpay",
                    webhook_secret=RAZORPAY_SECRET,
                    priority=2,
                ),
            ]
        )
        await db.commit()
        return merchant


@pytest_asyncio.fixture
async def merchant(session_factory: async_sessionmaker[AsyncSession]) -> Merchant:
    """Merchant with a webhook endpoint configured."""
    return await _add_merchant(session_factory, MERCHANT_WEBHOOK_URL)


@pytest_asyncio.fixture
async def silent_merchant(session_factory: async_sessionmaker[AsyncSession]) -> Merchant:
    """Merchant without a webhook endpoint."""
    return await _add_merchant(session_factory, None)


@pytest_asyncio.fixture
async def bare_merchant(session_factory: async_sessionmaker[AsyncSession]) -> Merchant:
    """Merchant with a webhook endpoint but no processor configured."""
    async with session_factory() as db:
        merchant = Merchant(
            id=uuid.uuid4(),
            name="Bare Store",
            email=f"ops+{uuid.uuid4().hex[:8]}@bare.example",
            webhook_url=MERCHANT_WEBHOOK_URL,
            webhook_secret=MERCHANT_WEBHOOK_SECRET,
        )
        db.add(merchant)
        await db.commit()
        return merchant


@pytest.fixture
def set_processor(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Upsert a merchant's config for one processor."""

    async def _set_processor(
        merchant: Merchant,
        processor: str,
        enabled: bool = True,
        priority: int = 1,
        webhook_secret: str = "whsec_other",
    ) -> None:
        async with session_factory() as db:
            stmt = select(ProcessorConfig).where(
                ProcessorConfig.merchant_id == merchant.id,
                ProcessorConfig.processor == processor,
            )
            config = (await db.execute(stmt)).scalar_one_or_none()
            if config is None:
                config = ProcessorConfig(merchant_id=merchant.id, processor=processor)
                db.add(config)
            config.enabled = enabled
            config.priority = priority
            config.webhook_secret = webhook_secret
            await db.commit()

    return _set_processor


@pytest.fixture
def make_order(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Factory inserting an order in the given status."""

    async def _make_order(
        merchant: Merchant,
        status: OrderStatus = OrderStatus.PROCESSING,
        amount: int = 1000,
        currency: str = "USD",
        workflow_id: Optional[str] = None,
        processor: Optional[str] = "stripe",
        captured: int = 0,
    ) -> Order:
        """`captured` seeds a successful capture of that amount in the ledger."""
        async with session_factory() as db:
            now = utcnow()
            order = Order(
                id=uuid.uuid4(),
                merchant_id=merchant.id,
                external_id=f"ext_{uuid.uuid4().hex[:8]}",
                amount=amount,
                currency=currency,
                status=status.value,
                processor=processor,
                workflow_id=workflow_id,
                order_metadata={},
                created_at=now,
                updated_at=now,
            )
            db.add(order)
            if captured:
                db.add(
                    Transaction(
                        order_id=order.id,
                        type=TransactionType.CAPTURE.value,
                        amount=captured,
                        status=TransactionStatus.SUCCESS.value,
                        processor_transaction_id="pi_seed",
                        created_at=now,
                    )
                )
            await db.commit()
            return order

    return _make_order


@pytest.fixture
def fetch(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Read helpers; each opens and closes its own session."""

    class _Fetch:
        async def order(self, order_id: uuid.UUID) -> Order:
            async with session_factory() as db:
                return (await db.execute(select(Order).where(Order.id == order_id))).scalar_one()

        async def transactions(self, order_id: uuid.UUID) -> List[Transaction]:
            async with session_factory() as db:
                stmt = (
                    select(Transaction)
                    .where(Transaction.order_id == order_id)
                    .order_by(Transaction.created_at)
                )
                return list((await db.execute(stmt)).scalars().all())

        async def outbox(self, order_id: Optional[uuid.UUID] = None) -> List[WebhookEvent]:
            async with session_factory() as db:
                stmt = select(WebhookEvent).order_by(WebhookEvent.created_at)
                if order_id is not None:
                    stmt = stmt.where(WebhookEvent.order_id == order_id)
                return list((await db.execute(stmt)).scalars().all())

    return _Fetch()
