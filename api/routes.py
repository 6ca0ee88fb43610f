"""
API routes for the payment gateway.
"""
import uuid
from typing import Any, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from core.exceptions import GatewayError, PayloadMalformed, SignatureInvalid
from core.orders import OrderService
from core.processor_configs import get_webhook_secret
from core.reconciliation import ReconciliationEngine
from database.connection import get_db
from integrations.normalizers import DroppedEvent, RazorpayNormalizer, get_normalizer
from integrations.workflow_client import WorkflowClient
from monitoring.health import HealthCheck
from monitoring.metrics import metrics

from .schemas import (
    CreateOrderRequest,
    ErrorResponse,
    HealthCheckResponse,
    OrderResponse,
    PayOrderRequest,
    PayOrderResponse,
    TransactionResponse,
    WebhookAck,
)

logger = structlog.get_logger(__name__)

# Create routers
order_router = APIRouter(prefix="/v1/orders", tags=["orders"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])

ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
}


def get_workflow_client(request: Request) -> WorkflowClient:
    """Process-wide workflow client, created at startup."""
    return request.app.state.workflow_client


def get_reconciliation_engine(request: Request) -> ReconciliationEngine:
    """Process-wide reconciliation engine, created at startup."""
    return request.app.state.reconciliation_engine


def get_health_check(request: Request) -> HealthCheck:
    """Process-wide health check service, created at startup."""
    return request.app.state.health_check


def get_merchant_id(request: Request) -> uuid.UUID:
    """
    Merchant identity set by the upstream authentication layer.

    Raises:
        GatewayError: 401 if the header is missing or not a UUID
    """
    header = get_settings().merchant_id_header
    value = request.headers.get(header)
    if not value:
        raise GatewayError(f"Missing {header} header", error_code="unauthorized", http_status=401)
    try:
        return uuid.UUID(value)
    except ValueError:
        raise GatewayError(f"Invalid {header} header", error_code="unauthorized", http_status=401)


async def _receive_processor_event(
    processor: str,
    request: Request,
    signature: Optional[str],
    engine: ReconciliationEngine,
    db: AsyncSession,
    event_id: Optional[str] = None,
) -> Dict[str, Any]:
    settings = get_settings()
    metrics.record_event_received(processor)

    # Signature is checked against the exact bytes received
    body = await request.body()
    normalizer = get_normalizer(processor, stripe_tolerance=settings.stripe_signature_tolerance)

    try:
        secret = None
        if signature:
            # The secret belongs to the merchant named in the event itself
            unverified = normalizer.peek(body, event_id=event_id)
            if isinstance(unverified, DroppedEvent):
                logger.warning(
                    "api_webhook_ignored",
                    processor=processor,
                    reason=unverified.reason,
                    event_id=unverified.processor_event_id,
                )
                return {"received": True}
            secret = await get_webhook_secret(db, unverified.merchant_id, processor)
            # Release the read before the unit of work takes the order lock
            await db.commit()

        event = normalizer.normalize(body, signature, secret, event_id=event_id)
    except (SignatureInvalid, PayloadMalformed) as e:
        metrics.record_event_rejected(processor, e.error_code)
        logger.warning("api_webhook_rejected", processor=processor, code=e.error_code)
        raise

    if isinstance(event, DroppedEvent):
        return {"received": True}

    structlog.contextvars.bind_contextvars(
        processor=processor, processor_event_id=event.processor_event_id
    )
    result = await engine.reconcile(event)

    logger.info(
        "api_webhook_processed",
        event_type=event.processor_event_type,
        outcome=result.outcome.value,
        order_id=str(result.order_id) if result.order_id else None,
    )
    return {"received": True}


@webhook_router.post(
    "/stripe",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Stripe webhook endpoint",
    description="Receive Stripe events; verified against the raw body",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="Stripe-Signature"),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Handle Stripe webhook events.

    Always 200 once the signature checks out and the event is recorded,
    including duplicates and events that cannot be routed. Events without
    merchant correlation are acknowledged unverified and never applied.
    """
    return await _receive_processor_event("stripe", request, stripe_signature, engine, db)


@webhook_router.post(
    "/razorpay",
    response_model=WebhookAck,
    responses={400: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Razorpay webhook endpoint",
    description="Receive Razorpay events; verified against the raw body",
)
async def razorpay_webhook(
    request: Request,
    razorpay_signature: Optional[str] = Header(None, alias="X-Razorpay-Signature"),
    razorpay_event_id: Optional[str] = Header(
        None, alias=RazorpayNormalizer.event_id_header
    ),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Handle Razorpay webhook events."""
    return await _receive_processor_event(
        "razorpay", request, razorpay_signature, engine, db, event_id=razorpay_event_id
    )


@order_router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Create an order",
)
async def create_order(
    body: CreateOrderRequest,
    merchant_id: uuid.UUID = Depends(get_merchant_id),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Create a pending order."""
    order = await OrderService(db).create_order(
        merchant_id,
        amount=body.amount,
        currency=body.currency,
        external_id=body.external_id,
        customer_id=body.customer_id,
        customer_email=body.customer_email,
        description=body.description,
        metadata=body.metadata,
        return_url=body.return_url,
        cancel_url=body.cancel_url,
    )
    return OrderResponse.from_order(order)


@order_router.get(
    "/{order_id}",
    response_model=OrderResponse,
    responses=ERROR_RESPONSES,
    summary="Get an order",
)
async def get_order(
    order_id: str,
    merchant_id: uuid.UUID = Depends(get_merchant_id),
    db: AsyncSession = Depends(get_db),
) -> OrderResponse:
    """Get one of the merchant's orders."""
    order = await OrderService(db).get_order(merchant_id, order_id)
    return OrderResponse.from_order(order)


@order_router.post(
    "/{order_id}/pay",
    response_model=PayOrderResponse,
    responses={**ERROR_RESPONSES, 502: {"model": ErrorResponse}},
    summary="Start payment",
    description="Move the order to processing and start the payment workflow",
)
async def pay_order(
    order_id: str,
    body: PayOrderRequest,
    merchant_id: uuid.UUID = Depends(get_merchant_id),
    db: AsyncSession = Depends(get_db),
    workflow_client: WorkflowClient = Depends(get_workflow_client),
) -> PayOrderResponse:
    """Start payment of a pending or failed order."""
    order = await OrderService(db, workflow_client).initiate_payment(
        merchant_id,
        order_id,
        processor=body.processor,
        payment_method=body.payment_method.model_dump() if body.payment_method else None,
    )
    return PayOrderResponse(
        order_id=str(order.id),
        status=order.status,
        processor=order.processor,
        workflow_id=order.workflow_id,
    )


@order_router.get(
    "/{order_id}/transactions",
    response_model=List[TransactionResponse],
    responses=ERROR_RESPONSES,
    summary="List order transactions",
)
async def list_order_transactions(
    order_id: str,
    merchant_id: uuid.UUID = Depends(get_merchant_id),
    db: AsyncSession = Depends(get_db),
) -> List[TransactionResponse]:
    """Ledger entries of an order, newest first."""
    txns = await OrderService(db).list_transactions(merchant_id, order_id)
    return [TransactionResponse.from_transaction(txn) for txn in txns]


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    return await health_check.check_all()


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
    description="Kubernetes liveness probe endpoint",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Liveness probe endpoint."""
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
    description="Kubernetes readiness probe endpoint",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] == "unhealthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics",
    include_in_schema=False,  # Don't include in OpenAPI docs
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
