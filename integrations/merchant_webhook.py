"""
Outbound merchant webhook sender.

Signs and POSTs outbox payloads to the merchant's webhook URL. The
signature header follows the processors' timestamped scheme so merchants
can reject replays:

    X-Webhook-Signature: t=<unix ts>,v1=<hex hmac-sha256 of "<ts>.<body>">
"""
import hashlib
import hmac
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

logger = structlog.get_logger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
ID_HEADER = "X-Webhook-Id"
EVENT_HEADER = "X-Webhook-Event"


@dataclass(frozen=True)
class DeliveryResult:
    """Outcome of one delivery attempt. Failures are values, not exceptions."""

    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None
    duration_seconds: float = 0.0


def sign_payload(body: bytes, secret: str, timestamp: int) -> str:
    """Build the signature header value for a body."""
    signed = f"{timestamp}.".encode("utf-8") + body
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def verify_signature(
    body: bytes, header: str, secret: str, tolerance: int = 300, now: Optional[int] = None
) -> bool:
    """
    Verify a signature header produced by sign_payload.

    Merchants run the equivalent of this on their side.
    """
    try:
        parts = dict(item.split("=", 1) for item in header.split(","))
        timestamp = int(parts["t"])
        received = parts["v1"]
    except (KeyError, ValueError):
        return False

    current = int(time.time()) if now is None else now
    if abs(current - timestamp) > tolerance:
        return False

    expected = sign_payload(body, secret, timestamp).split("v1=", 1)[1]
    return hmac.compare_digest(expected, received)


def encode_payload(payload: Dict[str, Any]) -> bytes:
    """Serialize a payload exactly as it is signed and sent."""
    return json.dumps(payload, separators=(",", ":"), sort_keys=True).encode("utf-8")


class MerchantWebhookSender:
    """Delivers signed webhook payloads to merchant endpoints."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
        clock: Callable[[], float] = time.time,
        user_agent: str = "payment-gateway-webhooks/1.0",
    ):
        """
        Initialize sender.

        Args:
            http_client: Pre-built httpx client (tests inject a mock transport)
            timeout_seconds: Per-request timeout
            clock: Wall clock used for signature timestamps
            user_agent: User-Agent header sent with every delivery
        """
        self.timeout_seconds = timeout_seconds
        self._client = http_client or httpx.AsyncClient(timeout=timeout_seconds)
        self._clock = clock
        self.user_agent = user_agent

    async def send(
        self,
        url: str,
        secret: Optional[str],
        webhook_id: str,
        event_type: str,
        payload: Dict[str, Any],
    ) -> DeliveryResult:
        """
        POST one payload to a merchant.

        Args:
            url: Merchant webhook URL
            secret: Merchant signing secret; unsigned when not configured
            webhook_id: Outbox entry id, stable across retries
            event_type: Merchant-facing event type
            payload: JSON payload

        Returns:
            DeliveryResult: success only for a 2xx answer
        """
        body = encode_payload(payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.user_agent,
            ID_HEADER: webhook_id,
            EVENT_HEADER: event_type,
        }
        if secret:
            headers[SIGNATURE_HEADER] = sign_payload(body, secret, int(self._clock()))

        started = time.perf_counter()
        try:
            response = await self._client.post(
                url, content=body, headers=headers, timeout=self.timeout_seconds
            )
        except httpx.TimeoutException:
            return DeliveryResult(
                success=False, error="timeout", duration_seconds=time.perf_counter() - started
            )
        except httpx.HTTPError as e:
            return DeliveryResult(
                success=False,
                error=f"{type(e).__name__}: {str(e)}",
                duration_seconds=time.perf_counter() - started,
            )

        duration = time.perf_counter() - started
        if response.is_success:
            return DeliveryResult(
                success=True, status_code=response.status_code, duration_seconds=duration
            )

        return DeliveryResult(
            success=False,
            status_code=response.status_code,
            error=f"http_{response.status_code}",
            duration_seconds=duration,
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
