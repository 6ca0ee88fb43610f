"""External integrations: processor webhooks, the workflow orchestrator and merchant endpoints."""
from .merchant_webhook import DeliveryResult, MerchantWebhookSender
from .normalizers import CanonicalEvent, DroppedEvent, EventKind, get_normalizer
from .workflow_client import SignalOutcome, TemporalWorkflowClient, WorkflowClient

__all__ = [
    "CanonicalEvent",
    "DroppedEvent",
    "EventKind",
    "get_normalizer",
    "WorkflowClient",
    "TemporalWorkflowClient",
    "SignalOutcome",
    "MerchantWebhookSender",
    "DeliveryResult",
]
