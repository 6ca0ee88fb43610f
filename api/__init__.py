"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CreateOrderRequest,
    OrderResponse,
    PayOrderRequest,
    PayOrderResponse,
    TransactionResponse,
)

__all__ = [
    "app",
    "CreateOrderRequest",
    "OrderResponse",
    "PayOrderRequest",
    "PayOrderResponse",
    "TransactionResponse",
]
