"""
Transaction ledger.

Append/transition access to ledger entries inside a unit of work. Enforces
the one-way status machine (pending to a terminal status, exactly once) and
writes an audit record for every change.
"""
from typing import Any, Dict, List, Optional

import structlog

from marketplace_ledger.core.errors import ValidationError
from marketplace_ledger.core.models import (
    Pagination,
    Transaction,
    TransactionFilter,
    TransactionPage,
    TransactionStatus,
    TransactionType,
)
from marketplace_ledger.database.base import TransactionStore
from marketplace_ledger.monitoring import audit, metrics

logger = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS = {
    TransactionStatus.PENDING: frozenset(
        {TransactionStatus.COMPLETED, TransactionStatus.FAILED, TransactionStatus.CANCELLED}
    ),
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


class TransactionLedger:
    """
    Ledger operations bound to one unit of work's transaction store.

    Args:
        store: Transaction repository of the current unit of work
    """

    def __init__(self, store: TransactionStore):
        self.store = store

    async def record(self, tx: Transaction, actor: str) -> Transaction:
        """
        Append a new ledger entry.

        Args:
            tx: Entry to write
            actor: Who caused the write (user id, admin id, ``webhook``...)

        Returns:
            Transaction: The stored entry
        """
        stored = await self.store.insert(tx)
        metrics.record_transaction(stored.type.value, stored.status.value)
        audit(
            "ledger_entry_recorded",
            transaction_id=stored.id,
            type=stored.type.value,
            status=stored.status.value,
            amount=stored.amount,
            fee=stored.fee,
            net_amount=stored.net_amount,
            shop_id=stored.shop_id,
            order_id=stored.order_id,
            external_id=stored.external_id,
            actor=actor,
        )
        return stored

    async def transition(
        self,
        tx: Transaction,
        target: TransactionStatus,
        actor: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Move a pending entry to a terminal status.

        Compare-and-set: returns False when the entry already left
        ``pending`` (another worker won), True when this call applied it.

        Raises:
            ValidationError: If ``target`` is not a terminal status
        """
        if not can_transition(TransactionStatus.PENDING, target):
            raise ValidationError(
                f"Invalid ledger transition to {target.value}",
                {"transaction_id": tx.id},
            )
        applied = await self.store.update_status(
            tx.id, target, expected=TransactionStatus.PENDING, metadata=metadata
        )
        if applied:
            metrics.record_transaction(tx.type.value, target.value)
            audit(
                "ledger_entry_transitioned",
                transaction_id=tx.id,
                type=tx.type.value,
                from_status=TransactionStatus.PENDING.value,
                to_status=target.value,
                amount=tx.amount,
                shop_id=tx.shop_id,
                order_id=tx.order_id,
                actor=actor,
            )
        else:
            logger.info(
                "ledger_transition_skipped",
                transaction_id=tx.id,
                target=target.value,
                actor=actor,
            )
        return applied

    async def get(self, tx_id: str) -> Optional[Transaction]:
        return await self.store.get(tx_id)

    async def find_by_external_id(self, external_id: str) -> Optional[Transaction]:
        return await self.store.find_by_external_id(external_id)

    async def live_refunds(self, order_id: str) -> List[Transaction]:
        """Refunds for the order that still count (not cancelled)."""
        refunds = await self.store.find_by_order_and_type(order_id, TransactionType.REFUND)
        return [tx for tx in refunds if tx.status is not TransactionStatus.CANCELLED]

    async def list(
        self, filters: TransactionFilter, pagination: Pagination
    ) -> TransactionPage:
        return await self.store.list(filters, pagination)
