"""
Client for the external workflow orchestrator.

The orchestrator (Temporal) owns the payment workflow: charge, poll,
settle. This service only starts workflows and signals them with processor
outcomes.

Implements:
- Bounded waits on every call (the webhook request is holding a row lock)
- Classification of signal results into signaled / not applicable / unreachable
- Circuit breaker so a dead orchestrator costs nothing after a few timeouts
"""
import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog
from temporalio.client import Client
from temporalio.exceptions import WorkflowAlreadyStartedError
from temporalio.service import RPCError, RPCStatusCode

from config import get_settings
from core.exceptions import WorkflowStartError
from monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class SignalOutcome(str, Enum):
    """Result of signalling a running workflow."""

    SIGNALED = "signaled"
    NOT_APPLICABLE = "not_applicable"  # no such workflow, or already closed
    UNREACHABLE = "unreachable"  # timeout, no connection or server unavailable


@dataclass(frozen=True)
class WorkflowHandle:
    """Identifies a started workflow."""

    workflow_id: str
    run_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentOutcome:
    """Processor outcome delivered to a payment workflow."""

    success: bool
    processor_transaction_id: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    def to_signal_payload(self) -> Dict[str, Any]:
        """Signal body understood by the payment workflow."""
        payload: Dict[str, Any] = {
            "success": self.success,
            "processorTransactionId": self.processor_transaction_id,
        }
        if self.error_code is not None:
            payload["errorCode"] = self.error_code
        if self.error_message is not None:
            payload["errorMessage"] = self.error_message
        return payload


def payment_workflow_id(order_id: Any) -> str:
    """Workflow id for an order's payment workflow."""
    return f"payment-{order_id}"


class CircuitBreaker:
    """
    Circuit breaker for orchestrator calls.

    Opens after consecutive failures; while open, calls are short-circuited
    until the reset timeout passes, then a trial call is let through.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 30.0,
        success_threshold: int = 1,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Consecutive failures before opening
            reset_timeout: Seconds before a trial call is allowed
            success_threshold: Successful trial calls needed to close
        """
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    def allow(self) -> bool:
        """Return True if a call may be attempted now."""
        if self.state != "open":
            return True
        if self.last_failure_time and time.monotonic() - self.last_failure_time > self.reset_timeout:
            self.state = "half_open"
            self.success_count = 0
            metrics.set_circuit_breaker_state(self.state)
            logger.info("workflow_circuit_breaker_half_open")
            return True
        return False

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self.state = "closed"
                metrics.set_circuit_breaker_state(self.state)
                logger.info("workflow_circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.monotonic()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            if self.state != "open":
                logger.warning(
                    "workflow_circuit_breaker_opened",
                    failure_count=self.failure_count,
                )
            self.state = "open"
            metrics.set_circuit_breaker_state(self.state)


class WorkflowClient:
    """Interface to the workflow orchestrator."""

    signal_name: str = "payment_completion"

    async def start(
        self,
        workflow_name: str,
        args: List[Any],
        workflow_id: str,
        task_queue: str,
    ) -> WorkflowHandle:
        """
        Start a workflow.

        Raises:
            WorkflowStartError: If the orchestrator does not accept the start
        """
        raise NotImplementedError

    async def signal(
        self, workflow_id: str, signal_name: str, payload: Dict[str, Any]
    ) -> SignalOutcome:
        """Send a signal to a running workflow. Never raises for transport trouble."""
        raise NotImplementedError

    async def signal_outcome(self, workflow_id: str, outcome: PaymentOutcome) -> SignalOutcome:
        """Deliver a processor outcome to a payment workflow."""
        return await self.signal(workflow_id, self.signal_name, outcome.to_signal_payload())

    async def ping(self) -> bool:
        """Return True if the orchestrator answers."""
        raise NotImplementedError

    async def close(self) -> None:
        """Release client resources."""
        return None


class TemporalWorkflowClient(WorkflowClient):
    """
    Workflow client backed by Temporal.

    Connects lazily on first use, so the API starts even while Temporal is
    down. Every RPC is bounded by asyncio.wait_for.
    """

    # Workflow gone or already closed
    NOT_APPLICABLE_CODES = frozenset({RPCStatusCode.NOT_FOUND, RPCStatusCode.FAILED_PRECONDITION})
    # Server not answering
    UNREACHABLE_CODES = frozenset(
        {
            RPCStatusCode.UNAVAILABLE,
            RPCStatusCode.DEADLINE_EXCEEDED,
            RPCStatusCode.RESOURCE_EXHAUSTED,
            RPCStatusCode.CANCELLED,
        }
    )

    def __init__(
        self,
        address: Optional[str] = None,
        namespace: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        signal_name: Optional[str] = None,
        client: Optional[Client] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """
        Initialize workflow client.

        Args:
            address: Temporal frontend address (defaults to settings)
            namespace: Temporal namespace
            timeout_seconds: Upper bound for each call
            signal_name: Signal used for processor outcomes
            client: Connected Temporal client (tests inject a stand-in)
            circuit_breaker: Breaker shared across calls
        """
        settings = get_settings()
        self.address = address or settings.temporal_address
        self.namespace = namespace or settings.temporal_namespace
        self.timeout_seconds = timeout_seconds or settings.workflow_timeout_seconds
        self.signal_name = signal_name or settings.payment_signal_name
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._client = client
        self._connect_lock = asyncio.Lock()

    async def _get_client(self) -> Client:
        if self._client is None:
            async with self._connect_lock:
                if self._client is None:
                    self._client = await asyncio.wait_for(
                        Client.connect(self.address, namespace=self.namespace),
                        timeout=self.timeout_seconds,
                    )
                    logger.info(
                        "temporal_connected", address=self.address, namespace=self.namespace
                    )
        return self._client

    async def start(
        self,
        workflow_name: str,
        args: List[Any],
        workflow_id: str,
        task_queue: str,
    ) -> WorkflowHandle:
        try:
            client = await self._get_client()
            handle = await asyncio.wait_for(
                client.start_workflow(
                    workflow_name, args=args, id=workflow_id, task_queue=task_queue
                ),
                timeout=self.timeout_seconds,
            )
        except WorkflowAlreadyStartedError:
            self.circuit_breaker.on_success()
            logger.error(
                "workflow_start_rejected", workflow_id=workflow_id, reason="already_running"
            )
            raise WorkflowStartError(f"Workflow {workflow_id} is already running")
        except RPCError as e:
            if e.status in self.UNREACHABLE_CODES:
                self.circuit_breaker.on_failure()
            else:
                self.circuit_breaker.on_success()
            logger.error(
                "workflow_start_rejected",
                workflow_id=workflow_id,
                status=e.status.name,
                error=e.message,
            )
            raise WorkflowStartError(f"Orchestrator rejected workflow start: {e.status.name}")
        except (asyncio.TimeoutError, RuntimeError) as e:
            # Client.connect reports connection failures as RuntimeError
            self.circuit_breaker.on_failure()
            logger.error(
                "workflow_start_failed",
                workflow_id=workflow_id,
                error=str(e) or type(e).__name__,
            )
            raise WorkflowStartError(f"Orchestrator unreachable: {type(e).__name__}")

        self.circuit_breaker.on_success()
        run_id = handle.first_execution_run_id
        logger.info(
            "workflow_started",
            workflow_id=workflow_id,
            workflow_name=workflow_name,
            task_queue=task_queue,
            run_id=run_id,
        )
        return WorkflowHandle(workflow_id=workflow_id, run_id=run_id)

    async def signal(
        self, workflow_id: str, signal_name: str, payload: Dict[str, Any]
    ) -> SignalOutcome:
        if not self.circuit_breaker.allow():
            logger.warning("workflow_signal_short_circuited", workflow_id=workflow_id)
            return SignalOutcome.UNREACHABLE

        try:
            client = await self._get_client()
            handle = client.get_workflow_handle(workflow_id)
            await asyncio.wait_for(handle.signal(signal_name, payload), timeout=self.timeout_seconds)
        except RPCError as e:
            if e.status in self.UNREACHABLE_CODES:
                self.circuit_breaker.on_failure()
                logger.warning(
                    "workflow_signal_unreachable",
                    workflow_id=workflow_id,
                    signal=signal_name,
                    status=e.status.name,
                )
                return SignalOutcome.UNREACHABLE

            self.circuit_breaker.on_success()
            if e.status in self.NOT_APPLICABLE_CODES:
                logger.info(
                    "workflow_signal_not_applicable",
                    workflow_id=workflow_id,
                    status=e.status.name,
                )
            else:
                logger.warning(
                    "workflow_signal_unexpected_status",
                    workflow_id=workflow_id,
                    status=e.status.name,
                    error=e.message,
                )
            return SignalOutcome.NOT_APPLICABLE
        except (asyncio.TimeoutError, RuntimeError) as e:
            self.circuit_breaker.on_failure()
            logger.warning(
                "workflow_signal_unreachable",
                workflow_id=workflow_id,
                signal=signal_name,
                error=type(e).__name__,
            )
            return SignalOutcome.UNREACHABLE

        self.circuit_breaker.on_success()
        logger.info("workflow_signaled", workflow_id=workflow_id, signal=signal_name)
        return SignalOutcome.SIGNALED

    async def ping(self) -> bool:
        try:
            client = await self._get_client()
            return await asyncio.wait_for(
                client.service_client.check_health(), timeout=self.timeout_seconds
            )
        except (RPCError, asyncio.TimeoutError, RuntimeError):
            return False
