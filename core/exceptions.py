"""
Exception classes for the payment gateway.

Every exception carries a machine-readable error code and the HTTP status
the API layer answers with. Processors only ever see 2xx, 400 or 5xx:
signature and payload problems are 400, persistence trouble is 5xx so the
processor's own retry takes over.

Outcomes that are recovered locally (dropped events, duplicates, an
unreachable orchestrator, failed merchant deliveries) are result values,
not exceptions; see core.reconciliation and core.delivery.
"""
from typing import Any, Dict, Optional


class GatewayError(Exception):
    """Base exception for all gateway errors."""

    error_code = "internal_error"
    http_status = 500

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        if error_code is not None:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {"code": self.error_code, "message": self.message}


class SignatureInvalid(GatewayError):
    """Raised when a processor signature is missing or does not match the raw body."""

    error_code = "invalid_signature"
    http_status = 400


class PayloadMalformed(GatewayError):
    """Raised when a verified body is not valid JSON or lacks required fields."""

    error_code = "malformed_payload"
    http_status = 400


class PersistenceFailure(GatewayError):
    """
    Raised when the database is unavailable or a unit of work times out.

    Retried at the request boundary; surfaced as 5xx once retries run out.
    """

    error_code = "processing_error"
    http_status = 503


class ValidationFailed(GatewayError):
    """Raised when merchant input fails validation."""

    error_code = "validation_error"
    http_status = 400


class OrderNotFound(GatewayError):
    """Raised when a merchant asks for an order that does not exist."""

    error_code = "not_found"
    http_status = 404


class InvalidTransition(GatewayError):
    """Raised when an order status change is not an edge of the state graph."""

    error_code = "invalid_status"
    http_status = 409

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move order from {current} to {target}")
        self.current = current
        self.target = target


class WorkflowStartError(GatewayError):
    """Raised when the orchestrator refuses or cannot start a workflow."""

    error_code = "workflow_error"
    http_status = 502
