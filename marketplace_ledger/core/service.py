"""
Ledger service facade.

The single entry point an HTTP layer calls. Each operation returns a
pydantic model or raises a ``LedgerError`` subclass whose ``to_dict()`` is
the error payload to send back.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import structlog

from marketplace_ledger.config import Settings, get_settings
from marketplace_ledger.core.fees import FeeCalculator
from marketplace_ledger.core.models import (
    Pagination,
    PaymentIntent,
    PaymentStatus,
    Transaction,
    TransactionPage,
    TransactionStatus,
    WebhookAck,
)
from marketplace_ledger.core.money import AmountLike
from marketplace_ledger.core.payment_intents import PaymentIntentCreator
from marketplace_ledger.core.reconciliation import ReconciliationEngine, ReconciliationReport
from marketplace_ledger.core.refunds import RefundProcessor
from marketplace_ledger.core.withdrawals import WithdrawalProcessor
from marketplace_ledger.database.base import Storage
from marketplace_ledger.integrations.gateway import PaymentGateway
from marketplace_ledger.integrations.webhook_verifier import WebhookDeliveryCache, WebhookVerifier

logger = structlog.get_logger(__name__)


class LedgerService:
    """
    Payment, withdrawal and refund operations over one storage and gateway.

    Example:
        service = LedgerService(InMemoryStorage(), gateway, settings)
        intent = await service.create_payment(order_id, "5000", "RUB", url, buyer_id)
    """

    def __init__(
        self,
        storage: Storage,
        gateway: PaymentGateway,
        settings: Optional[Settings] = None,
        delivery_cache: Optional[WebhookDeliveryCache] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage
        self.gateway = gateway
        self.delivery_cache = delivery_cache
        self.fee_calculator = FeeCalculator.from_settings(self.settings)

        self.payments = PaymentIntentCreator(
            storage,
            gateway,
            self.fee_calculator,
            supported_currencies=self.settings.get_supported_currencies(),
        )
        self.webhooks = WebhookVerifier(
            storage,
            gateway,
            secret=self.settings.stripe_webhook_secret,
            tolerance_seconds=self.settings.webhook_tolerance_seconds,
            delivery_cache=delivery_cache,
        )
        self.withdrawals = WithdrawalProcessor(
            storage,
            self.fee_calculator,
            min_amount=self.settings.min_withdrawal_amount,
            methods=self.settings.get_withdrawal_methods(),
        )
        self.refunds = RefundProcessor(storage, self.fee_calculator)
        self.reconciliation = ReconciliationEngine(storage, gateway, self.fee_calculator)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "LedgerService":
        """Wire Stripe, the SQL database and (optionally) Redis from configuration."""
        # Imported here so the in-memory setup never needs a database driver.
        from marketplace_ledger.database.connection import get_session_factory
        from marketplace_ledger.database.sql import SqlStorage
        from marketplace_ledger.integrations.stripe_gateway import StripeGateway

        settings = settings or get_settings()
        delivery_cache = None
        if settings.redis_url:
            delivery_cache = WebhookDeliveryCache.from_url(
                settings.redis_url, ttl_seconds=settings.webhook_cache_ttl
            )
        return cls(
            storage=SqlStorage(get_session_factory()),
            gateway=StripeGateway(settings),
            settings=settings,
            delivery_cache=delivery_cache,
        )

    async def close(self) -> None:
        if self.delivery_cache is not None:
            await self.delivery_cache.close()

    async def create_payment(
        self,
        order_id: str,
        amount: AmountLike,
        currency: str,
        return_url: str,
        requester_id: str,
    ) -> PaymentIntent:
        return await self.payments.create(order_id, amount, currency, return_url, requester_id)

    async def confirm_webhook(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        payment_id: Optional[str] = None,
    ) -> WebhookAck:
        """
        Verify and apply a gateway webhook.

        ``payment_id`` comes from the URL when the route carries it;
        otherwise it is read from the verified body.
        """
        if payment_id:
            return await self.webhooks.confirm(payment_id, raw_body, signature_header)
        return await self.webhooks.handle(raw_body, signature_header)

    async def get_payment_status(self, payment_id: str) -> PaymentStatus:
        """Authoritative payment state, straight from the gateway."""
        payment = await self.gateway.get_payment(payment_id)
        return PaymentStatus(
            payment_id=payment.id,
            status=payment.status,
            amount=payment.amount,
            currency=payment.currency,
            created_at=payment.created_at,
            captured_at=payment.captured_at,
        )

    async def request_withdrawal(
        self,
        user_id: str,
        amount: AmountLike,
        method: str,
        details: Optional[Dict[str, Any]],
    ) -> Transaction:
        return await self.withdrawals.request(user_id, amount, method, details)

    async def approve_withdrawal(self, transaction_id: str, admin_id: str) -> Transaction:
        return await self.withdrawals.approve(transaction_id, admin_id)

    async def reject_withdrawal(
        self, transaction_id: str, admin_id: str, reason: str = ""
    ) -> Transaction:
        return await self.withdrawals.reject(transaction_id, admin_id, reason)

    async def list_withdrawals(
        self,
        requester_id: str,
        is_admin: bool = False,
        status: Optional[TransactionStatus] = None,
        pagination: Optional[Pagination] = None,
        user_id: Optional[str] = None,
    ) -> TransactionPage:
        return await self.withdrawals.list(
            requester_id, is_admin=is_admin, status=status, pagination=pagination, user_id=user_id
        )

    async def process_refund(
        self,
        order_id: str,
        reason: str,
        admin_id: str,
        amount: Optional[AmountLike] = None,
    ) -> Transaction:
        return await self.refunds.refund(order_id, reason, amount=amount, admin_id=admin_id)

    async def reconcile(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> ReconciliationReport:
        """Reconcile a window, by default the configured look-back up to now."""
        until = until or datetime.now(timezone.utc)
        since = since or until - timedelta(hours=self.settings.reconciliation_lookback_hours)
        return await self.reconciliation.reconcile(since, until)
