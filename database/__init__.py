"""Database package for the payment gateway."""
from .connection import get_db, init_db
from .models import (
    Base,
    DeliveryStatus,
    Merchant,
    Order,
    OrderStatus,
    ProcessorConfig,
    Transaction,
    TransactionStatus,
    TransactionType,
    WebhookEvent,
)

__all__ = [
    "Base",
    "Merchant",
    "Order",
    "OrderStatus",
    "ProcessorConfig",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "WebhookEvent",
    "DeliveryStatus",
    "get_db",
    "init_db",
]
