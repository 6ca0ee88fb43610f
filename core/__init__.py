"""
Core gateway logic: reconciliation, order state, outbox and delivery.

Only the leaf modules are re-exported here. The engine, scheduler and order
service depend on integrations, which in turn import core.exceptions; import
them from their own modules.
"""
from .exceptions import (
    GatewayError,
    InvalidTransition,
    OrderNotFound,
    PayloadMalformed,
    PersistenceFailure,
    SignatureInvalid,
    ValidationFailed,
    WorkflowStartError,
)

__all__ = [
    "GatewayError",
    "InvalidTransition",
    "OrderNotFound",
    "PayloadMalformed",
    "PersistenceFailure",
    "SignatureInvalid",
    "ValidationFailed",
    "WorkflowStartError",
]
