"""
Merchant webhook dispatcher background worker.

Drains the webhook outbox until SIGINT/SIGTERM. Several dispatchers can run
side by side; the claim protocol keeps their attempts from overlapping.
"""
import asyncio
import signal
from typing import Optional

import structlog

from config import get_settings
from core.delivery import DeliveryScheduler
from core.outbox import OutboxNotifier
from database.connection import close_db
from integrations.merchant_webhook import MerchantWebhookSender
from monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_webhook_dispatcher() -> None:
    """
    Start the webhook dispatcher worker.

    Runs continuously until stopped.
    """
    setup_logging()
    settings = get_settings()

    logger.info("webhook_dispatcher_worker_starting")

    notifier: Optional[OutboxNotifier] = None
    if settings.redis_url:
        notifier = OutboxNotifier.from_url(settings.redis_url, settings.outbox_wakeup_key)

    sender = MerchantWebhookSender(timeout_seconds=settings.webhook_request_timeout_seconds)
    scheduler = DeliveryScheduler(sender=sender, notifier=notifier, settings=settings)

    # Setup signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _request_stop, scheduler, sig)

    try:
        await scheduler.start()
    except Exception as e:
        logger.error("webhook_dispatcher_worker_error", error=str(e))
        raise
    finally:
        await sender.close()
        if notifier is not None:
            await notifier.close()
        await close_db()
        logger.info("webhook_dispatcher_worker_stopped")


def _request_stop(scheduler: DeliveryScheduler, sig: signal.Signals) -> None:
    logger.info("webhook_dispatcher_worker_shutdown_signal_received", signal=sig.name)
    scheduler.stop()


def main() -> None:
    """Console entry point."""
    asyncio.run(start_webhook_dispatcher())


if __name__ == "__main__":
    main()
