"""Background workers for async processing."""
from .webhook_dispatcher import start_webhook_dispatcher

__all__ = ["start_webhook_dispatcher"]
