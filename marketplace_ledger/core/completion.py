"""
Applying an authoritative gateway status to a pending payment.

Shared by the webhook path and the reconciliation pass so both settle a
payment the same way: one status compare-and-set, one balance credit, one
order transition, all in the caller's unit of work.
"""
from enum import Enum

import structlog

from marketplace_ledger.core.balance import BalanceAccount
from marketplace_ledger.core.ledger import TransactionLedger
from marketplace_ledger.core.models import OrderStatus, Transaction, TransactionStatus
from marketplace_ledger.database.base import UnitOfWork
from marketplace_ledger.integrations.gateway import GatewayPayment, GatewayStatus

logger = structlog.get_logger(__name__)


class SettlementOutcome(str, Enum):
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    PENDING = "pending"
    AMOUNT_MISMATCH = "amount_mismatch"
    ALREADY_TERMINAL = "already_terminal"


async def apply_gateway_status(
    uow: UnitOfWork,
    tx: Transaction,
    payment: GatewayPayment,
    actor: str,
) -> SettlementOutcome:
    """
    Settle ``tx`` according to ``payment``.

    Args:
        uow: Open unit of work
        tx: Payment transaction found by external id
        payment: Freshly fetched gateway state
        actor: ``webhook`` or ``reconciliation``

    Returns:
        SettlementOutcome: What happened (nothing, for duplicates)
    """
    ledger = TransactionLedger(uow.transactions)

    if tx.status is TransactionStatus.COMPLETED:
        return SettlementOutcome.DUPLICATE

    if tx.status is not TransactionStatus.PENDING:
        if payment.status == GatewayStatus.SUCCEEDED:
            # Funds were taken for an entry we already closed: manual audit.
            logger.error(
                "payment_succeeded_for_closed_transaction",
                transaction_id=tx.id,
                external_id=payment.id,
                status=tx.status.value,
            )
        return SettlementOutcome.ALREADY_TERMINAL

    if payment.status == GatewayStatus.SUCCEEDED:
        if payment.amount != tx.amount:
            logger.error(
                "payment_amount_mismatch",
                transaction_id=tx.id,
                external_id=payment.id,
                ledger_amount=tx.amount,
                gateway_amount=payment.amount,
            )
            return SettlementOutcome.AMOUNT_MISMATCH

        applied = await ledger.transition(
            tx,
            TransactionStatus.COMPLETED,
            actor=actor,
            metadata={"gateway_status": payment.status, "settled_by": actor},
        )
        if not applied:
            current = await ledger.get(tx.id)
            if current is not None and current.status is TransactionStatus.COMPLETED:
                return SettlementOutcome.DUPLICATE
            return SettlementOutcome.ALREADY_TERMINAL

        if tx.order_id:
            moved = await uow.orders.update_status(
                tx.order_id, OrderStatus.PROCESSING, expected=OrderStatus.PENDING
            )
            if not moved:
                logger.warning(
                    "order_not_pending_on_payment",
                    order_id=tx.order_id,
                    transaction_id=tx.id,
                )

        if tx.shop_id:
            await BalanceAccount(uow.shops, tx.shop_id).credit(
                tx.net_amount, transaction_id=tx.id, actor=actor
            )

        logger.info(
            "payment_completed",
            transaction_id=tx.id,
            external_id=payment.id,
            order_id=tx.order_id,
            shop_id=tx.shop_id,
            actor=actor,
        )
        return SettlementOutcome.COMPLETED

    if payment.status == GatewayStatus.CANCELED:
        applied = await ledger.transition(
            tx,
            TransactionStatus.FAILED,
            actor=actor,
            metadata={"gateway_status": payment.status, "settled_by": actor},
        )
        return SettlementOutcome.FAILED if applied else SettlementOutcome.ALREADY_TERMINAL

    logger.info(
        "payment_still_pending",
        transaction_id=tx.id,
        external_id=payment.id,
        gateway_status=payment.status,
    )
    return SettlementOutcome.PENDING
