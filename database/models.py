"""SQLAlchemy database models for the payment gateway."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (test databases)
JSONDocument = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Naive UTC timestamp; all timestamp columns store UTC without offset."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class OrderStatus(str, Enum):
    """Order lifecycle states."""

    PENDING = "pending"
    PROCESSING = "processing"
    REQUIRES_ACTION = "requires_action"
    CAPTURED = "captured"
    FAILED = "failed"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"


class TransactionType(str, Enum):
    """Ledger entry types."""

    AUTHORIZATION = "authorization"
    CAPTURE = "capture"
    REFUND = "refund"
    VOID = "void"


class TransactionStatus(str, Enum):
    """Ledger entry outcome."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class DeliveryStatus(str, Enum):
    """Outbox entry delivery states."""

    PENDING = "pending"
    DELIVERING = "delivering"  # claimed by a worker, attempt in flight
    DELIVERED = "delivered"
    FAILED = "failed"  # last attempt failed, retry scheduled
    EXHAUSTED = "exhausted"


def _in_list(column: str, enum_cls: type[Enum]) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class Merchant(Base):
    """
    Merchant records table.

    Owned by merchant management; this service only reads the webhook
    endpoint and signing secret.
    """

    __tablename__ = "merchants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    webhook_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    webhook_secret: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        """String representation of Merchant."""
        return f"<Merchant(id={self.id}, name={self.name})>"


class ProcessorConfig(Base):
    """
    Per-merchant processor configuration.

    Holds the webhook secret used to verify the processor's events for this
    merchant, and the priority used to route new payments. Written by
    merchant management; read here.
    """

    __tablename__ = "processor_configs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    merchant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    processor: Mapped[str] = mapped_column(String(50), nullable=False)
    webhook_secret: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    test_mode: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        UniqueConstraint("merchant_id", "processor", name="uq_processor_configs_merchant_processor"),
        CheckConstraint("processor IN ('stripe', 'razorpay')", name="valid_processor"),
    )

    def __repr__(self) -> str:
        """String representation of ProcessorConfig."""
        return (
            f"<ProcessorConfig(merchant_id={self.merchant_id}, processor={self.processor}, "
            f"priority={self.priority}, enabled={self.enabled})>"
        )


class Order(Base):
    """
    Orders table.

    One row per merchant payment intent. The status column only moves along
    the edges defined in core.state_machine.
    """

    __tablename__ = "orders"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    merchant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="USD")
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=OrderStatus.PENDING.value
    )
    processor: Mapped[str | None] = mapped_column(String(50), nullable=True)
    processor_order_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    workflow_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    # "metadata" is reserved on declarative classes
    order_metadata: Mapped[Dict[str, Any] | None] = mapped_column(
        "metadata", JSONDocument, nullable=True, default=dict
    )
    customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    return_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    cancel_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="positive_amount"),
        CheckConstraint(_in_list("status", OrderStatus), name="valid_order_status"),
        CheckConstraint("length(currency) = 3", name="valid_currency"),
        Index("idx_orders_merchant_status", "merchant_id", "status"),
    )

    def __repr__(self) -> str:
        """String representation of Order."""
        return (
            f"<Order(id={self.id}, merchant_id={self.merchant_id}, "
            f"amount={self.amount}, status={self.status})>"
        )


class Transaction(Base):
    """
    Transaction ledger table.

    Append-only: one row per processor-side effect against an order.
    Rows are never updated or deleted.
    """

    __tablename__ = "transactions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=TransactionStatus.PENDING.value
    )
    processor_transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    processor_response: Mapped[Dict[str, Any] | None] = mapped_column(
        JSONDocument, nullable=True
    )
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="non_negative_transaction_amount"),
        CheckConstraint(_in_list("type", TransactionType), name="valid_transaction_type"),
        CheckConstraint(_in_list("status", TransactionStatus), name="valid_transaction_status"),
        Index("idx_transactions_processor_txn", "processor_transaction_id"),
    )

    def __repr__(self) -> str:
        """String representation of Transaction."""
        return (
            f"<Transaction(id={self.id}, order_id={self.order_id}, "
            f"type={self.type}, amount={self.amount}, status={self.status})>"
        )


class WebhookEvent(Base):
    """
    Merchant webhook outbox table.

    Rows are written in the same transaction as the order mutation that
    produced them and drained by the delivery scheduler. Retained for audit.
    """

    __tablename__ = "webhook_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    merchant_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("merchants.id", ondelete="CASCADE"), nullable=False
    )
    order_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="SET NULL"), nullable=True
    )
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    processor_event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[Dict[str, Any]] = mapped_column(JSONDocument, nullable=False)
    status: Mapped[str] = mapped_column(
        String(50), nullable=False, default=DeliveryStatus.PENDING.value
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    workflow_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint(
            "order_id", "event_type", "processor_event_id", name="uq_webhook_events_natural_key"
        ),
        CheckConstraint(_in_list("status", DeliveryStatus), name="valid_delivery_status"),
        CheckConstraint("attempts >= 0", name="non_negative_attempts"),
        Index("idx_webhook_events_merchant_status", "merchant_id", "status"),
        Index("idx_webhook_events_due", "status", "next_retry_at"),
        Index("idx_webhook_events_next_retry_at", "next_retry_at"),
    )

    def __repr__(self) -> str:
        """String representation of WebhookEvent."""
        return (
            f"<WebhookEvent(id={self.id}, type={self.event_type}, "
            f"status={self.status}, attempts={self.attempts})>"
        )
