"""
Processor event normalizers.

Turns a processor webhook (raw bytes + signature header) into a canonical
event the reconciliation engine understands.

Implements:
- Signature verification against the exact raw body, before JSON parsing
- Per-processor correlation metadata lookup (merchant_id / order_id)
- Mapping of processor event types onto captured / failed / refunded

Deduplication is not done here; it has to share a database transaction with
the order mutation, so it lives in the reconciliation engine.
"""
import hashlib
import hmac
import json
from enum import Enum
from typing import Any, Dict, Optional

import stripe
import structlog
from pydantic import BaseModel, ConfigDict, Field

from core.exceptions import PayloadMalformed, SignatureInvalid

logger = structlog.get_logger(__name__)


class EventKind(str, Enum):
    """Canonical payment outcomes."""

    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class CanonicalEvent(BaseModel):
    """Processor-agnostic payment outcome notification."""

    model_config = ConfigDict(frozen=True)

    kind: EventKind
    processor: str
    processor_event_id: str
    processor_event_type: str
    merchant_id: str
    order_ref: Optional[str] = None
    amount: int = Field(..., ge=0, description="Amount in minor currency units")
    processor_txn_id: str
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    refund_total: Optional[int] = Field(
        default=None, description="Cumulative refunded amount reported by the processor"
    )
    raw: Dict[str, Any] = Field(default_factory=dict)

    @property
    def event_type(self) -> str:
        """Merchant-facing event type."""
        return f"payment.{self.kind.value}"


class DroppedEvent(BaseModel):
    """A verified event this system accepts but cannot or need not route."""

    model_config = ConfigDict(frozen=True)

    processor: str
    reason: str
    processor_event_id: Optional[str] = None
    processor_event_type: Optional[str] = None


def _as_dict(value: Any) -> Dict[str, Any]:
    # Razorpay sends notes as [] when empty
    return value if isinstance(value, dict) else {}


def _require(mapping: Dict[str, Any], key: str, processor: str) -> Any:
    value = mapping.get(key)
    if value is None:
        raise PayloadMalformed(f"{processor} payload is missing '{key}'")
    return value


def _as_amount(value: Any, processor: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise PayloadMalformed(f"{processor} payload has a non-integer amount")
    return value


class ProcessorNormalizer:
    """
    Base class for processor webhook normalizers.

    Subclasses supply the signature scheme and the event mapping.
    """

    processor: str = ""
    signature_header: str = ""

    def verify_signature(self, raw_body: bytes, signature: str, secret: str) -> None:
        """
        Verify the signature over the raw body.

        Raises:
            SignatureInvalid: If the signature does not match
        """
        raise NotImplementedError

    def to_canonical(
        self, payload: Dict[str, Any], event_id: Optional[str] = None
    ) -> CanonicalEvent | DroppedEvent:
        """Map a parsed, verified payload onto a canonical event."""
        raise NotImplementedError

    def peek(
        self, raw_body: bytes, event_id: Optional[str] = None
    ) -> CanonicalEvent | DroppedEvent:
        """
        Map an unverified body, to find which merchant's secret verifies it.

        Nothing read here may be acted on before normalize() has verified
        the signature.

        Raises:
            PayloadMalformed: Body is not a usable event
        """
        return self.to_canonical(self._parse(raw_body), event_id=event_id)

    @staticmethod
    def _parse(raw_body: bytes) -> Dict[str, Any]:
        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise PayloadMalformed(f"Invalid JSON body: {str(e)}")
        if not isinstance(payload, dict):
            raise PayloadMalformed("Webhook body must be a JSON object")
        return payload

    def normalize(
        self,
        raw_body: bytes,
        signature: Optional[str],
        secret: Optional[str],
        event_id: Optional[str] = None,
    ) -> CanonicalEvent | DroppedEvent:
        """
        Verify and normalize a processor webhook.

        Args:
            raw_body: Request body exactly as received
            signature: Value of the processor's signature header
            secret: The merchant's webhook secret for this processor
            event_id: Processor event id when delivered out of band (header)

        Returns:
            CanonicalEvent, or DroppedEvent for events that cannot be routed

        Raises:
            SignatureInvalid: Missing, unverifiable or mismatched signature
            PayloadMalformed: Verified body that is not a usable event
        """
        if not signature:
            raise SignatureInvalid(
                f"Missing {self.processor} signature", error_code="missing_signature"
            )
        if not secret:
            logger.error("webhook_secret_not_configured", processor=self.processor)
            raise SignatureInvalid(
                f"No webhook secret configured for {self.processor}", error_code="no_config"
            )

        self.verify_signature(raw_body, signature, secret)

        result = self.to_canonical(self._parse(raw_body), event_id=event_id)

        if isinstance(result, DroppedEvent):
            logger.warning(
                "webhook_event_dropped",
                processor=self.processor,
                reason=result.reason,
                event_id=result.processor_event_id,
                event_type=result.processor_event_type,
            )
        else:
            logger.info(
                "webhook_event_normalized",
                processor=self.processor,
                event_id=result.processor_event_id,
                event_type=result.processor_event_type,
                kind=result.kind.value,
                order_ref=result.order_ref,
            )
        return result


class StripeNormalizer(ProcessorNormalizer):
    """Stripe events, verified with the Stripe library's signature scheme."""

    processor = "stripe"
    signature_header = "Stripe-Signature"

    EVENT_KINDS = {
        "payment_intent.succeeded": EventKind.CAPTURED,
        "payment_intent.payment_failed": EventKind.FAILED,
        "charge.refunded": EventKind.REFUNDED,
    }

    def __init__(self, tolerance: int = stripe.Webhook.DEFAULT_TOLERANCE):
        self.tolerance = tolerance

    def verify_signature(self, raw_body: bytes, signature: str, secret: str) -> None:
        try:
            # Stripe signs the UTF-8 text of the body
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError:
            raise SignatureInvalid("Body is not the UTF-8 payload Stripe signed")

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, secret, tolerance=self.tolerance
            )
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", processor="stripe", error=str(e))
            raise SignatureInvalid(f"Invalid webhook signature: {str(e)}")

        logger.debug("webhook_signature_verified", processor="stripe")

    def to_canonical(
        self, payload: Dict[str, Any], event_id: Optional[str] = None
    ) -> CanonicalEvent | DroppedEvent:
        processor_event_id = _require(payload, "id", "stripe")
        event_type = _require(payload, "type", "stripe")
        data = _as_dict(payload.get("data"))
        obj = _as_dict(data.get("object"))
        if not obj:
            raise PayloadMalformed("stripe payload is missing 'data.object'")

        kind = self.EVENT_KINDS.get(event_type)
        if kind is None:
            return DroppedEvent(
                processor="stripe",
                reason="unsupported_event_type",
                processor_event_id=processor_event_id,
                processor_event_type=event_type,
            )

        metadata = _as_dict(obj.get("metadata"))
        merchant_id = metadata.get("merchant_id")
        if not merchant_id:
            return DroppedEvent(
                processor="stripe",
                reason="missing_correlation",
                processor_event_id=processor_event_id,
                processor_event_type=event_type,
            )

        common = {
            "kind": kind,
            "processor": "stripe",
            "processor_event_id": processor_event_id,
            "processor_event_type": event_type,
            "merchant_id": str(merchant_id),
            "order_ref": metadata.get("order_id"),
            "raw": obj,
        }

        if kind is EventKind.REFUNDED:
            return self._refund_event(obj, common)

        amount = obj.get("amount_received") or obj.get("amount")
        error = _as_dict(obj.get("last_payment_error"))
        return CanonicalEvent(
            amount=_as_amount(amount, "stripe"),
            processor_txn_id=_require(obj, "id", "stripe"),
            error_code=error.get("code") or error.get("decline_code"),
            error_message=error.get("message"),
            **common,
        )

    @staticmethod
    def _refund_event(obj: Dict[str, Any], common: Dict[str, Any]) -> CanonicalEvent:
        charge_id = _require(obj, "id", "stripe")
        amount_refunded = _as_amount(obj.get("amount_refunded", 0), "stripe")
        refunds = _as_dict(obj.get("refunds")).get("data") or []
        refunds = [r for r in refunds if isinstance(r, dict) and r.get("id")]

        if refunds:
            latest = max(refunds, key=lambda r: r.get("created") or 0)
            amount = _as_amount(latest.get("amount"), "stripe")
            txn_id = latest["id"]
        else:
            # Older API versions omit the refunds list; key by the running total
            amount = amount_refunded
            txn_id = f"{charge_id}:{amount_refunded}"

        return CanonicalEvent(
            amount=amount,
            processor_txn_id=txn_id,
            refund_total=amount_refunded,
            **common,
        )


class RazorpayNormalizer(ProcessorNormalizer):
    """Razorpay events, verified with HMAC-SHA256 over the raw body."""

    processor = "razorpay"
    signature_header = "X-Razorpay-Signature"
    event_id_header = "X-Razorpay-Event-Id"

    EVENT_KINDS = {
        "payment.captured": EventKind.CAPTURED,
        "payment.failed": EventKind.FAILED,
        "refund.processed": EventKind.REFUNDED,
    }

    @staticmethod
    def compute_signature(raw_body: bytes, secret: str) -> str:
        """Hex HMAC-SHA256 of the raw body."""
        return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()

    def verify_signature(self, raw_body: bytes, signature: str, secret: str) -> None:
        expected = self.compute_signature(raw_body, secret)
        if not hmac.compare_digest(expected, signature.strip()):
            logger.error("webhook_signature_verification_failed", processor="razorpay")
            raise SignatureInvalid("Invalid webhook signature")

        logger.debug("webhook_signature_verified", processor="razorpay")

    def to_canonical(
        self, payload: Dict[str, Any], event_id: Optional[str] = None
    ) -> CanonicalEvent | DroppedEvent:
        event_type = _require(payload, "event", "razorpay")
        body = _as_dict(payload.get("payload"))

        kind = self.EVENT_KINDS.get(event_type)
        if kind is None:
            return DroppedEvent(
                processor="razorpay",
                reason="unsupported_event_type",
                processor_event_id=event_id,
                processor_event_type=event_type,
            )

        section = "refund" if kind is EventKind.REFUNDED else "payment"
        entity = _as_dict(_as_dict(body.get(section)).get("entity"))
        if not entity:
            raise PayloadMalformed(f"razorpay payload is missing 'payload.{section}.entity'")

        entity_id = _require(entity, "id", "razorpay")
        notes = _as_dict(entity.get("notes"))
        if kind is EventKind.REFUNDED and not notes.get("merchant_id"):
            # Refund notes are often empty; fall back to the parent payment's notes
            payment_entity = _as_dict(_as_dict(body.get("payment")).get("entity"))
            notes = _as_dict(payment_entity.get("notes")) or notes

        # Without the X-Razorpay-Event-Id header, key retries by event + entity
        processor_event_id = event_id or f"{event_type}:{entity_id}"

        merchant_id = notes.get("merchant_id")
        if not merchant_id:
            return DroppedEvent(
                processor="razorpay",
                reason="missing_correlation",
                processor_event_id=processor_event_id,
                processor_event_type=event_type,
            )

        return CanonicalEvent(
            kind=kind,
            processor="razorpay",
            processor_event_id=processor_event_id,
            processor_event_type=event_type,
            merchant_id=str(merchant_id),
            order_ref=notes.get("order_id"),
            amount=_as_amount(entity.get("amount"), "razorpay"),
            processor_txn_id=entity_id,
            error_code=entity.get("error_code"),
            error_message=entity.get("error_description"),
            raw=entity,
        )


def get_normalizer(processor: str, stripe_tolerance: Optional[int] = None) -> ProcessorNormalizer:
    """
    Get the normalizer for a processor.

    Raises:
        ValueError: If the processor is not supported
    """
    if processor == "stripe":
        if stripe_tolerance is None:
            return StripeNormalizer()
        return StripeNormalizer(tolerance=stripe_tolerance)
    if processor == "razorpay":
        return RazorpayNormalizer()
    raise ValueError(f"Unsupported processor: {processor}")
