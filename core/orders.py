"""
Order service.

Merchant-facing order operations: create, look up, list ledger entries and
start payment. Payment itself runs in the external payment workflow; this
module only moves the order to processing and starts that workflow.
"""
import secrets
import uuid
from typing import Any, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from core.exceptions import (
    InvalidTransition,
    OrderNotFound,
    ValidationFailed,
    WorkflowStartError,
)
from core.processor_configs import enabled_processors
from core.state_machine import PAYABLE_STATUSES, ensure_transition
from database.models import Merchant, Order, OrderStatus, Transaction, utcnow
from integrations.workflow_client import WorkflowClient, payment_workflow_id
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

SUPPORTED_PROCESSORS = ("stripe", "razorpay")


def generate_external_id() -> str:
    """Random 12-character merchant reference."""
    return secrets.token_urlsafe(9)


def route_processor(currency: str, enabled: Sequence[str]) -> str:
    """
    Pick a processor among the merchant's enabled ones.

    INR prefers Razorpay and everything else prefers Stripe; when the
    preferred processor is not enabled the highest-priority one is used.

    Args:
        currency: Order currency
        enabled: Enabled processors, highest priority first

    Raises:
        ValidationFailed: The merchant has no enabled processor
    """
    if not enabled:
        raise ValidationFailed("No payment processor configured", error_code="no_processor")
    preferred = "razorpay" if currency.upper() == "INR" else "stripe"
    return preferred if preferred in enabled else enabled[0]


def _parse_order_id(order_id: Any) -> Optional[uuid.UUID]:
    if isinstance(order_id, uuid.UUID):
        return order_id
    try:
        return uuid.UUID(str(order_id))
    except ValueError:
        return None


class OrderService:
    """
    Order operations for one merchant request.

    Works on the request's session; commits only where a step must be
    visible before an external call.
    """

    def __init__(
        self,
        db: AsyncSession,
        workflow_client: Optional[WorkflowClient] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize order service.

        Args:
            db: Database session
            workflow_client: Orchestrator client (needed for pay initiation)
            settings: Application settings
        """
        self.db = db
        self.workflow_client = workflow_client
        self.settings = settings or get_settings()

    async def create_order(
        self,
        merchant_id: uuid.UUID,
        amount: int,
        currency: str = "USD",
        external_id: Optional[str] = None,
        customer_id: Optional[str] = None,
        customer_email: Optional[str] = None,
        description: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        return_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ) -> Order:
        """
        Create a pending order.

        Args:
            merchant_id: Owning merchant
            amount: Amount in minor units (> 0)
            currency: 3-letter currency code
            external_id: Merchant reference, generated when omitted

        Returns:
            Order: The new order

        Raises:
            ValidationFailed: Bad amount or currency, or unknown merchant
        """
        if amount <= 0:
            raise ValidationFailed("Amount must be positive")
        if len(currency) != 3 or not currency.isalpha():
            raise ValidationFailed("Currency must be a 3-letter code")

        merchant = await self.db.get(Merchant, merchant_id)
        if merchant is None:
            raise ValidationFailed("Unknown merchant", error_code="unknown_merchant")

        now = utcnow()
        order = Order(
            id=uuid.uuid4(),
            merchant_id=merchant_id,
            external_id=external_id or generate_external_id(),
            amount=amount,
            currency=currency.upper(),
            status=OrderStatus.PENDING.value,
            order_metadata=metadata or {},
            customer_id=customer_id,
            customer_email=customer_email,
            description=description,
            return_url=return_url,
            cancel_url=cancel_url,
            created_at=now,
            updated_at=now,
        )
        self.db.add(order)
        await self.db.flush()

        logger.info(
            "order_created",
            order_id=str(order.id),
            merchant_id=str(merchant_id),
            amount=amount,
            currency=order.currency,
        )
        return order

    async def get_order(
        self, merchant_id: uuid.UUID, order_id: Any, for_update: bool = False
    ) -> Order:
        """
        Get one of the merchant's orders.

        Raises:
            OrderNotFound: No such order for this merchant
        """
        parsed = _parse_order_id(order_id)
        if parsed is None:
            raise OrderNotFound("Order not found")

        stmt = select(Order).where(Order.id == parsed, Order.merchant_id == merchant_id)
        if for_update:
            # Reload: the row may have moved since this session last saw it
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        order = (await self.db.execute(stmt)).scalar_one_or_none()
        if order is None:
            raise OrderNotFound("Order not found")
        return order

    async def list_transactions(self, merchant_id: uuid.UUID, order_id: Any) -> List[Transaction]:
        """
        Ledger entries of an order, newest first.

        Raises:
            OrderNotFound: No such order for this merchant
        """
        order = await self.get_order(merchant_id, order_id)
        stmt = (
            select(Transaction)
            .where(Transaction.order_id == order.id)
            .order_by(Transaction.created_at.desc())
        )
        return list((await self.db.execute(stmt)).scalars().all())

    async def initiate_payment(
        self,
        merchant_id: uuid.UUID,
        order_id: Any,
        processor: Optional[str] = None,
        payment_method: Optional[Dict[str, Any]] = None,
    ) -> Order:
        """
        Start payment of an order.

        Moves the order to processing, starts the payment workflow and
        stores its id. If the orchestrator does not accept the workflow the
        order is marked failed, so the merchant can try again.

        Args:
            merchant_id: Owning merchant
            order_id: Order to pay
            processor: Processor to use (routed among enabled configs when omitted)
            payment_method: Method reference passed to the workflow

        Returns:
            Order: The order in processing, with workflow_id set

        Raises:
            OrderNotFound: No such order for this merchant
            InvalidTransition: Order is not pending or failed
            ValidationFailed: Unsupported processor, or none configured
            WorkflowStartError: Orchestrator did not start the workflow
        """
        if self.workflow_client is None:
            raise RuntimeError("OrderService needs a workflow client to initiate payments")
        if processor is not None and processor not in SUPPORTED_PROCESSORS:
            raise ValidationFailed(f"Unsupported processor: {processor}")

        order = await self.get_order(merchant_id, order_id, for_update=True)
        if order.status not in {s.value for s in PAYABLE_STATUSES}:
            raise InvalidTransition(order.status, OrderStatus.PROCESSING.value)

        if processor is None:
            processor = route_processor(
                order.currency, await enabled_processors(self.db, order.merchant_id)
            )
        order.status = ensure_transition(order.status, OrderStatus.PROCESSING.value).value
        order.processor = processor
        order.updated_at = utcnow()
        # Visible before the workflow can report back
        await self.db.commit()

        workflow_id = payment_workflow_id(order.id)
        workflow_args = {
            "orderId": str(order.id),
            "merchantId": str(merchant_id),
            "amount": order.amount,
            "currency": order.currency,
            "processor": processor,
            "returnUrl": order.return_url,
            "paymentMethod": payment_method,
        }

        try:
            await self.workflow_client.start(
                self.settings.payment_workflow_name,
                [workflow_args],
                workflow_id=workflow_id,
                task_queue=self.settings.payment_task_queue,
            )
        except WorkflowStartError:
            metrics.record_workflow_start("failed")
            logger.error("payment_workflow_start_failed", order_id=str(order.id))
            order = await self.get_order(merchant_id, order.id, for_update=True)
            if order.status == OrderStatus.PROCESSING.value:
                order.status = OrderStatus.FAILED.value
                order.updated_at = utcnow()
            await self.db.commit()
            raise

        metrics.record_workflow_start("started")

        order = await self.get_order(merchant_id, order.id, for_update=True)
        order.workflow_id = workflow_id
        order.updated_at = utcnow()
        await self.db.commit()

        logger.info(
            "payment_workflow_started",
            order_id=str(order.id),
            workflow_id=workflow_id,
            processor=processor,
        )
        return order
