"""
Admin-issued refunds for delivered orders.

A refund is booked as a completed ledger entry (negative net) and the order
moves to ``refunded`` in the same unit of work. Returning funds through the
gateway and clawing back seller proceeds happen elsewhere.
"""
from typing import Optional

import structlog

from marketplace_ledger.core.errors import Conflict, NotFound, ValidationError
from marketplace_ledger.core.fees import FeeCalculator
from marketplace_ledger.core.ledger import TransactionLedger
from marketplace_ledger.core.models import (
    OrderStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from marketplace_ledger.core.money import AmountLike
from marketplace_ledger.database.base import Storage

logger = structlog.get_logger(__name__)


class RefundProcessor:
    """
    Books refunds, at most one live refund per order.

    Args:
        storage: Ledger storage
        fee_calculator: Fee policy
    """

    def __init__(self, storage: Storage, fee_calculator: Optional[FeeCalculator] = None):
        self.storage = storage
        self.fee_calculator = fee_calculator or FeeCalculator()

    async def refund(
        self,
        order_id: str,
        reason: str,
        amount: Optional[AmountLike] = None,
        admin_id: str = "",
    ) -> Transaction:
        """
        Refund a delivered order.

        Args:
            order_id: Order to refund
            reason: Why (required; stored as the entry description)
            amount: Partial amount, defaults to the order total
            admin_id: Admin issuing the refund

        Returns:
            Transaction: The completed refund entry

        Raises:
            ValidationError: Missing reason or amount outside (0, total]
            NotFound: Unknown order
            Conflict: Order not delivered, or already refunded
        """
        if not reason or not reason.strip():
            raise ValidationError("Refund reason is required")

        async with self.storage.atomic() as uow:
            ledger = TransactionLedger(uow.transactions)
            order = await uow.orders.get(order_id, for_update=True)
            if order is None:
                raise NotFound("Order not found", {"order_id": order_id})

            if await ledger.live_refunds(order_id):
                raise Conflict("Order already refunded", {"order_id": order_id})
            if order.status is not OrderStatus.DELIVERED:
                raise Conflict(
                    "Only delivered orders can be refunded",
                    {"order_id": order_id, "status": order.status.value},
                )

            refund_amount = (
                order.total_amount
                if amount is None
                else self.fee_calculator.validate_amount(amount)
            )
            if refund_amount > order.total_amount:
                raise ValidationError(
                    "Refund amount cannot exceed order total",
                    {"amount": str(refund_amount), "total_amount": str(order.total_amount)},
                )
            breakdown = self.fee_calculator.compute_fee(TransactionType.REFUND, refund_amount)

            tx = Transaction(
                user_id=order.user_id,
                shop_id=order.shop_id,
                order_id=order.id,
                type=TransactionType.REFUND,
                amount=refund_amount,
                fee=breakdown.fee,
                net_amount=breakdown.net_amount,
                status=TransactionStatus.COMPLETED,
                payment_method=order.payment_method,
                description=reason.strip(),
                metadata={"refunded_by": admin_id},
            )
            tx = await ledger.record(tx, actor=admin_id)

            moved = await uow.orders.update_status(
                order.id, OrderStatus.REFUNDED, expected=OrderStatus.DELIVERED
            )
            if not moved:
                raise Conflict("Order status changed during refund", {"order_id": order_id})

        logger.info(
            "refund_processed",
            transaction_id=tx.id,
            order_id=order_id,
            amount=tx.amount,
            admin_id=admin_id,
        )
        return tx
