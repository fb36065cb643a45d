"""
Payment intent creation.

Orchestrates the buyer side of a payment:
1. Validate the order and the requested amount
2. Generate a fresh idempotency key
3. Create the payment at the gateway (no storage transaction open)
4. Record the pending ledger entry and the order's payment reference
5. Hand the redirect URL back to the caller
"""
import secrets
from decimal import Decimal
from typing import Iterable, Optional

import structlog

from marketplace_ledger.core.errors import (
    Conflict,
    NotFound,
    PartialPaymentError,
    ValidationError,
)
from marketplace_ledger.core.fees import FeeCalculator
from marketplace_ledger.core.ledger import TransactionLedger
from marketplace_ledger.core.models import (
    Order,
    OrderStatus,
    PaymentIntent,
    Transaction,
    TransactionType,
)
from marketplace_ledger.core.money import AmountLike
from marketplace_ledger.database.base import Storage
from marketplace_ledger.integrations.gateway import GatewayPayment, PaymentGateway

logger = structlog.get_logger(__name__)


def new_idempotency_key() -> str:
    """128 random bits, hex encoded."""
    return secrets.token_hex(16)


class PaymentIntentCreator:
    """
    Creates gateway payments for pending orders.

    Args:
        storage: Ledger storage
        gateway: Payment gateway
        fee_calculator: Fee policy
        supported_currencies: Currency codes accepted for payment
    """

    def __init__(
        self,
        storage: Storage,
        gateway: PaymentGateway,
        fee_calculator: Optional[FeeCalculator] = None,
        supported_currencies: Iterable[str] = ("RUB",),
    ):
        self.storage = storage
        self.gateway = gateway
        self.fee_calculator = fee_calculator or FeeCalculator()
        self.supported_currencies = frozenset(c.upper() for c in supported_currencies)

    def _validate_request(self, amount: AmountLike, currency: str, return_url: str) -> Decimal:
        """
        Validate payment request parameters.

        Raises:
            ValidationError: If validation fails
        """
        if not currency or currency.upper() not in self.supported_currencies:
            raise ValidationError(
                "Unsupported currency",
                {"currency": currency, "supported": sorted(self.supported_currencies)},
            )
        if not return_url:
            raise ValidationError("return_url is required")
        return self.fee_calculator.validate_amount(amount)

    async def _load_order(self, order_id: str, requester_id: str) -> Order:
        async with self.storage.atomic() as uow:
            order = await uow.orders.get(order_id)

        # Someone else's order looks exactly like a missing one.
        if order is None or order.user_id != requester_id:
            raise NotFound("Order not found", {"order_id": order_id})
        if order.status is not OrderStatus.PENDING:
            raise Conflict(
                "Order already processed",
                {"order_id": order_id, "status": order.status.value},
            )
        return order

    async def create(
        self,
        order_id: str,
        amount: AmountLike,
        currency: str,
        return_url: str,
        requester_id: str,
    ) -> PaymentIntent:
        """
        Start a payment for an order.

        Args:
            order_id: Order being paid
            amount: Gross amount, must equal the order total
            currency: Currency code (e.g. 'RUB')
            return_url: Where the gateway sends the buyer afterwards
            requester_id: Authenticated buyer

        Returns:
            PaymentIntent: Redirect URL plus ledger and gateway ids

        Raises:
            ValidationError: Bad currency, amount or URL
            NotFound: Unknown order or not the requester's
            Conflict: Order is not pending
            GatewayError: Gateway refused or was unreachable (nothing persisted)
            PartialPaymentError: Gateway payment exists but could not be recorded
        """
        gross = self._validate_request(amount, currency, return_url)
        currency = currency.upper()
        order = await self._load_order(order_id, requester_id)

        if gross != order.total_amount:
            raise ValidationError(
                "Amount does not match order total",
                {"amount": str(gross), "total_amount": str(order.total_amount)},
            )
        if order.currency.upper() != currency:
            raise ValidationError(
                "Currency does not match order currency",
                {"currency": currency, "order_currency": order.currency},
            )

        breakdown = self.fee_calculator.compute_fee(TransactionType.PAYMENT, gross)
        tx = Transaction(
            user_id=requester_id,
            shop_id=order.shop_id,
            order_id=order.id,
            type=TransactionType.PAYMENT,
            amount=gross,
            fee=breakdown.fee,
            net_amount=breakdown.net_amount,
            payment_method=self.gateway.name,
            description=f"Payment for order #{order.order_number or order.id}",
            metadata={"currency": currency},
        )
        idempotency_key = new_idempotency_key()

        logger.info(
            "creating_payment_intent",
            order_id=order.id,
            transaction_id=tx.id,
            amount=gross,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        payment = await self.gateway.create_payment(
            amount=gross,
            currency=currency,
            return_url=return_url,
            idempotency_key=idempotency_key,
            description=tx.description,
            metadata={"order_id": order.id, "transaction_id": tx.id, "user_id": requester_id},
        )

        await self._persist(tx, payment, idempotency_key)

        logger.info(
            "payment_intent_created",
            order_id=order.id,
            transaction_id=tx.id,
            payment_id=payment.id,
        )
        return PaymentIntent(
            redirect_url=payment.confirmation_url or "",
            transaction_id=tx.id,
            payment_id=payment.id,
        )

    async def _persist(self, tx: Transaction, payment: GatewayPayment, idempotency_key: str) -> None:
        recorded = tx.model_copy(
            update={
                "external_id": payment.id,
                "metadata": {**tx.metadata, "idempotency_key": idempotency_key},
            }
        )
        try:
            async with self.storage.atomic() as uow:
                await TransactionLedger(uow.transactions).record(recorded, actor=tx.user_id)
                await uow.orders.set_payment_reference(tx.order_id, payment.id)
        except Exception as e:
            # The gateway holds a live payment we have no record of.
            logger.error(
                "payment_persist_failed",
                transaction_id=tx.id,
                order_id=tx.order_id,
                external_id=payment.id,
                error=str(e),
                exc_info=True,
            )
            raise PartialPaymentError(
                "Payment created at gateway but not recorded",
                external_id=payment.id,
                details={"order_id": tx.order_id, "transaction_id": tx.id},
            ) from e
