"""
Gateway webhook verification and idempotent application.

Implements:
- HMAC signature verification over the exact raw request bytes
- Webhook body treated as a trigger only; payment state is re-fetched
- Exactly-once settlement via a compare-and-set on the ledger entry
- Optional Redis cache that short-circuits redeliveries of settled payments
"""
import json
import time
from typing import Any, Optional

import redis.asyncio as aioredis
import stripe
import structlog

from marketplace_ledger.core.completion import SettlementOutcome, apply_gateway_status
from marketplace_ledger.core.errors import NotFound, SignatureInvalid, ValidationError
from marketplace_ledger.core.ledger import TransactionLedger
from marketplace_ledger.core.models import WebhookAck
from marketplace_ledger.database.base import Storage
from marketplace_ledger.integrations.gateway import PaymentGateway
from marketplace_ledger.monitoring import metrics

logger = structlog.get_logger(__name__)


class WebhookDeliveryCache:
    """
    Redis record of payments whose webhook has already been applied.

    Purely an optimisation: a miss (or Redis being down) falls through to
    the ledger's compare-and-set, which is the real guard.
    """

    def __init__(self, redis_client: aioredis.Redis, ttl_seconds: int = 86400 * 7):
        """
        Initialize delivery cache.

        Args:
            redis_client: Redis client
            ttl_seconds: Time to keep the record (default: 7 days)
        """
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 86400 * 7) -> "WebhookDeliveryCache":
        client = aioredis.from_url(redis_url, encoding="utf-8", decode_responses=True)
        return cls(client, ttl_seconds)

    @staticmethod
    def _key(payment_id: str) -> str:
        return f"webhook:completed:{payment_id}"

    async def completed_transaction(self, payment_id: str) -> Optional[str]:
        """Transaction id recorded for an already-settled payment, if any."""
        try:
            return await self.redis_client.get(self._key(payment_id))
        except aioredis.RedisError as e:
            logger.warning("webhook_cache_read_error", error=str(e), payment_id=payment_id)
            return None

    async def mark_completed(self, payment_id: str, transaction_id: str) -> None:
        try:
            await self.redis_client.setex(self._key(payment_id), self.ttl_seconds, transaction_id)
        except aioredis.RedisError as e:
            logger.warning("webhook_cache_write_error", error=str(e), payment_id=payment_id)

    async def close(self) -> None:
        """Close Redis connection."""
        await self.redis_client.aclose()


class WebhookVerifier:
    """
    Verifies gateway webhooks and settles the referenced payment once.

    Args:
        storage: Ledger storage
        gateway: Gateway used to re-fetch authoritative payment state
        secret: Webhook signing secret
        tolerance_seconds: Max age of the signed timestamp
        delivery_cache: Optional Redis-backed short-circuit for redeliveries
    """

    def __init__(
        self,
        storage: Storage,
        gateway: PaymentGateway,
        secret: str,
        tolerance_seconds: int = 300,
        delivery_cache: Optional[WebhookDeliveryCache] = None,
    ):
        self.storage = storage
        self.gateway = gateway
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds
        self.delivery_cache = delivery_cache

    def verify_signature(self, raw_body: bytes, signature_header: Optional[str]) -> None:
        """
        Check the ``Stripe-Signature`` HMAC over the raw body.

        The body is used exactly as received. It is never parsed and
        re-encoded before hashing.

        Raises:
            SignatureInvalid: On a missing, malformed, stale or wrong signature
        """
        if not signature_header:
            raise SignatureInvalid("Missing webhook signature")
        if not isinstance(raw_body, (bytes, bytearray)):
            raise SignatureInvalid("Webhook body must be the raw request bytes")
        try:
            payload = bytes(raw_body).decode("utf-8")
        except UnicodeDecodeError as e:
            raise SignatureInvalid("Webhook body is not valid UTF-8") from e

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature_header, self.secret, self.tolerance_seconds
            )
        except stripe.SignatureVerificationError as e:
            logger.warning("webhook_signature_verification_failed", error=str(e))
            metrics.record_webhook("rejected", 0.0)
            raise SignatureInvalid(f"Invalid webhook signature: {e}") from e

    @staticmethod
    def extract_payment_id(raw_body: bytes) -> str:
        """
        Pull the payment id out of an already-verified event body.

        Raises:
            ValidationError: If the body has no object id
        """
        try:
            event: Any = json.loads(raw_body)
            payment_id = event["data"]["object"]["id"]
        except (ValueError, KeyError, TypeError) as e:
            raise ValidationError("Webhook body does not reference a payment") from e
        if not isinstance(payment_id, str) or not payment_id:
            raise ValidationError("Webhook body does not reference a payment")
        return payment_id

    async def handle(self, raw_body: bytes, signature_header: Optional[str]) -> WebhookAck:
        """Verify an event and settle the payment it references."""
        self.verify_signature(raw_body, signature_header)
        return await self._apply(self.extract_payment_id(raw_body))

    async def confirm(
        self, payment_id: str, raw_body: bytes, signature_header: Optional[str]
    ) -> WebhookAck:
        """
        Verify a webhook and settle ``payment_id``.

        Args:
            payment_id: Gateway payment id the webhook refers to
            raw_body: Request body bytes exactly as received
            signature_header: Signature header value

        Returns:
            WebhookAck: Settlement result; ``duplicate`` for redeliveries

        Raises:
            SignatureInvalid: If the signature does not match
            NotFound: If no ledger entry carries this payment id
            GatewayError: If the gateway cannot be queried
        """
        self.verify_signature(raw_body, signature_header)
        return await self._apply(payment_id)

    async def _apply(self, payment_id: str) -> WebhookAck:
        start = time.monotonic()
        logger.info("processing_webhook", payment_id=payment_id)

        if self.delivery_cache is not None:
            cached_tx = await self.delivery_cache.completed_transaction(payment_id)
            if cached_tx:
                metrics.record_webhook("duplicate", time.monotonic() - start)
                logger.info("webhook_duplicate_cached", payment_id=payment_id)
                return WebhookAck(
                    payment_id=payment_id,
                    status="completed",
                    transaction_id=cached_tx,
                    duplicate=True,
                )

        # Network call happens before any storage lock is taken.
        payment = await self.gateway.get_payment(payment_id)

        async with self.storage.atomic() as uow:
            tx = await TransactionLedger(uow.transactions).find_by_external_id(payment_id)
            if tx is None:
                metrics.record_webhook("not_found", time.monotonic() - start)
                logger.warning("webhook_transaction_not_found", payment_id=payment_id)
                raise NotFound(
                    "Transaction not found", {"external_id": payment_id}
                )
            outcome = await apply_gateway_status(uow, tx, payment, actor="webhook")
            final = await uow.transactions.get(tx.id)

        status = final.status.value if final else tx.status.value
        if outcome in (SettlementOutcome.COMPLETED, SettlementOutcome.DUPLICATE):
            if self.delivery_cache is not None:
                await self.delivery_cache.mark_completed(payment_id, tx.id)

        metrics.record_webhook(outcome.value, time.monotonic() - start)
        logger.info(
            "webhook_processed",
            payment_id=payment_id,
            transaction_id=tx.id,
            outcome=outcome.value,
            gateway_status=payment.status,
        )
        return WebhookAck(
            payment_id=payment_id,
            status=status,
            transaction_id=tx.id,
            duplicate=outcome is SettlementOutcome.DUPLICATE,
        )
