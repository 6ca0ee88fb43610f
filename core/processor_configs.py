"""
Per-merchant processor configuration lookups.

Processor webhooks are verified with the secret of the merchant named in
the event's correlation metadata, and new payments are routed among the
merchant's enabled processors.
"""
import uuid
from typing import List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from database.models import ProcessorConfig

logger = structlog.get_logger(__name__)


def _parse_merchant_id(value: object) -> Optional[uuid.UUID]:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


async def get_webhook_secret(
    db: AsyncSession, merchant_id: object, processor: str
) -> Optional[str]:
    """
    Webhook secret a merchant configured for a processor.

    Disabled configs still verify: events for payments started before the
    processor was switched off keep arriving.

    Returns:
        The secret, or None when the merchant has no config for the processor
    """
    parsed = _parse_merchant_id(merchant_id)
    if parsed is None:
        return None

    stmt = select(ProcessorConfig.webhook_secret).where(
        ProcessorConfig.merchant_id == parsed,
        ProcessorConfig.processor == processor,
    )
    secret = (await db.execute(stmt)).scalar_one_or_none()
    if secret is None:
        logger.warning("processor_config_not_found", merchant_id=str(parsed), processor=processor)
    return secret


async def enabled_processors(db: AsyncSession, merchant_id: uuid.UUID) -> List[str]:
    """Processors the merchant has enabled, highest priority (lowest number) first."""
    stmt = (
        select(ProcessorConfig.processor)
        .where(ProcessorConfig.merchant_id == merchant_id, ProcessorConfig.enabled.is_(True))
        .order_by(ProcessorConfig.priority, ProcessorConfig.created_at)
    )
    return list((await db.execute(stmt)).scalars().all())
