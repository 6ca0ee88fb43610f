"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from database.models import Order, Transaction


class CreateOrderRequest(BaseModel):
    """Request schema for creating an order."""

    amount: int = Field(..., gt=0, description="Order amount in minor currency units")
    currency: str = Field(default="USD", min_length=3, max_length=3, description="Currency code")
    external_id: Optional[str] = Field(
        default=None, max_length=255, description="Merchant reference (generated if omitted)"
    )
    customer_id: Optional[str] = Field(default=None, max_length=255, description="Customer id")
    customer_email: Optional[str] = Field(default=None, max_length=255, description="Customer email")
    description: Optional[str] = Field(default=None, max_length=1000, description="Order description")
    metadata: Optional[Dict[str, Any]] = Field(default=None, description="Arbitrary merchant data")
    return_url: Optional[str] = Field(default=None, description="Redirect after payment")
    cancel_url: Optional[str] = Field(default=None, description="Redirect on cancellation")

    @field_validator("currency")
    @classmethod
    def validate_currency(cls, v: str) -> str:
        """Validate currency format."""
        if not v.isalpha():
            raise ValueError("Currency must be a 3-letter code")
        return v.upper()

    @field_validator("customer_email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        """Reject obviously malformed emails."""
        if v is not None and ("@" not in v or v.startswith("@") or v.endswith("@")):
            raise ValueError("Invalid email address")
        return v

    @field_validator("return_url", "cancel_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        """Require absolute http(s) URLs."""
        if v is not None and not v.startswith(("http://", "https://")):
            raise ValueError("URL must start with http:// or https://")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "amount": 1000,
                    "currency": "USD",
                    "external_id": "order_123",
                    "customer_email": "buyer@example.com",
                    "metadata": {"cart_id": "c_42"},
                }
            ]
        }
    }


class OrderResponse(BaseModel):
    """Response schema for an order."""

    id: str = Field(..., description="Order ID")
    external_id: str = Field(..., description="Merchant reference")
    amount: int = Field(..., description="Order amount in minor units")
    currency: str = Field(..., description="Currency code")
    status: str = Field(..., description="Order status")
    processor: Optional[str] = Field(default=None, description="Payment processor")
    processor_order_id: Optional[str] = Field(default=None, description="Processor payment id")
    workflow_id: Optional[str] = Field(default=None, description="Payment workflow id")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Merchant metadata")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")
    updated_at: str = Field(..., description="Last update timestamp (ISO 8601)")

    @classmethod
    def from_order(cls, order: Order) -> "OrderResponse":
        """Build from an Order row."""
        return cls(
            id=str(order.id),
            external_id=order.external_id,
            amount=order.amount,
            currency=order.currency,
            status=order.status,
            processor=order.processor,
            processor_order_id=order.processor_order_id,
            workflow_id=order.workflow_id,
            metadata=order.order_metadata or {},
            created_at=order.created_at.isoformat(),
            updated_at=order.updated_at.isoformat(),
        )


class PaymentMethod(BaseModel):
    """Payment method reference passed through to the payment workflow."""

    type: Literal["card", "upi", "netbanking", "wallet"] = Field(..., description="Method type")
    token: Optional[str] = Field(default=None, description="Processor token / payment method id")


class PayOrderRequest(BaseModel):
    """Request schema for starting payment of an order."""

    processor: Optional[Literal["stripe", "razorpay"]] = Field(
        default=None, description="Processor (routed by currency if omitted)"
    )
    payment_method: Optional[PaymentMethod] = Field(default=None, description="Payment method")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"processor": "stripe", "payment_method": {"type": "card", "token": "pm_card_visa"}},
                {},
            ]
        }
    }


class PayOrderResponse(BaseModel):
    """Response schema for pay initiation."""

    order_id: str = Field(..., description="Order ID")
    status: str = Field(..., description="Order status")
    processor: str = Field(..., description="Payment processor")
    workflow_id: str = Field(..., description="Payment workflow id")


class TransactionResponse(BaseModel):
    """Response schema for a ledger transaction."""

    id: str = Field(..., description="Transaction ID")
    type: str = Field(..., description="authorization, capture, refund or void")
    amount: int = Field(..., description="Amount in minor units")
    status: str = Field(..., description="pending, success or failed")
    processor_transaction_id: Optional[str] = Field(default=None, description="Processor id")
    error_code: Optional[str] = Field(default=None, description="Processor error code")
    error_message: Optional[str] = Field(default=None, description="Processor error message")
    created_at: str = Field(..., description="Creation timestamp (ISO 8601)")

    @classmethod
    def from_transaction(cls, txn: Transaction) -> "TransactionResponse":
        """Build from a Transaction row."""
        return cls(
            id=str(txn.id),
            type=txn.type,
            amount=txn.amount,
            status=txn.status,
            processor_transaction_id=txn.processor_transaction_id,
            error_code=txn.error_code,
            error_message=txn.error_message,
            created_at=txn.created_at.isoformat(),
        )


class ErrorResponse(BaseModel):
    """Response schema for errors."""

    code: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable message")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status (healthy/unhealthy)")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual service checks")
    message: Optional[str] = Field(default=None, description="Status message")


class WebhookAck(BaseModel):
    """Response schema for accepted processor webhooks."""

    received: bool = Field(default=True, description="Event accepted")
