"""
Per-shop balance account.

Every mutation is one conditional update in the storage layer, so a check
against the balance and the change to it cannot be separated by another
writer. Callers perform these inside the same unit of work that writes the
matching ledger entry.
"""
from decimal import Decimal

import structlog

from marketplace_ledger.core.errors import InsufficientFunds, ValidationError
from marketplace_ledger.core.money import AmountLike, to_amount
from marketplace_ledger.database.base import ShopStore
from marketplace_ledger.monitoring import audit, metrics

logger = structlog.get_logger(__name__)


class BalanceAccount:
    """
    Balance operations for one shop.

    Args:
        shops: Shop repository of the current unit of work
        shop_id: Shop whose balance is changed
    """

    def __init__(self, shops: ShopStore, shop_id: str):
        self.shops = shops
        self.shop_id = shop_id

    @staticmethod
    def _positive(amount: AmountLike) -> Decimal:
        value = to_amount(amount)
        if value <= 0:
            raise ValidationError("Balance adjustments must be positive", {"amount": str(value)})
        return value

    async def _adjust(self, delta: Decimal, reason: str, transaction_id: str, actor: str) -> Decimal:
        try:
            after = await self.shops.adjust_balance(self.shop_id, delta)
        except InsufficientFunds:
            metrics.record_balance_mutation(reason, applied=False)
            logger.warning(
                "balance_adjustment_rejected",
                shop_id=self.shop_id,
                delta=delta,
                reason=reason,
                transaction_id=transaction_id,
                actor=actor,
            )
            raise
        metrics.record_balance_mutation(reason, applied=True)
        audit(
            "shop_balance_adjusted",
            shop_id=self.shop_id,
            transaction_id=transaction_id,
            reason=reason,
            delta=delta,
            balance_before=after - delta,
            balance_after=after,
            actor=actor,
        )
        return after

    async def credit(self, amount: AmountLike, transaction_id: str, actor: str) -> Decimal:
        """Add completed payment proceeds. Returns the new balance."""
        return await self._adjust(self._positive(amount), "payment_credit", transaction_id, actor)

    async def reserve(self, amount: AmountLike, transaction_id: str, actor: str) -> Decimal:
        """
        Hold funds for a withdrawal.

        Raises:
            InsufficientFunds: If the balance is smaller than ``amount``
        """
        return await self._adjust(-self._positive(amount), "withdrawal_hold", transaction_id, actor)

    async def release(self, amount: AmountLike, transaction_id: str, actor: str) -> Decimal:
        """Return a rejected withdrawal's hold to the balance."""
        return await self._adjust(self._positive(amount), "withdrawal_release", transaction_id, actor)
