"""
Seller withdrawals.

A request immediately holds the gross amount off the shop balance. An admin
then approves it (the hold becomes permanent) or rejects it (the hold is
returned). Approval is stored as ``completed`` and rejection as
``cancelled``; the decision itself lives in the entry's metadata.
"""
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional

import structlog

from marketplace_ledger.core.balance import BalanceAccount
from marketplace_ledger.core.errors import Conflict, Forbidden, NotFound, ValidationError
from marketplace_ledger.core.fees import FeeCalculator
from marketplace_ledger.core.ledger import TransactionLedger
from marketplace_ledger.core.models import (
    Pagination,
    ShopStatus,
    Transaction,
    TransactionFilter,
    TransactionPage,
    TransactionStatus,
    TransactionType,
    WithdrawalDecision,
    utcnow,
)
from marketplace_ledger.core.money import AmountLike, to_amount
from marketplace_ledger.database.base import Storage, UnitOfWork

logger = structlog.get_logger(__name__)

DEFAULT_METHODS = ("bank_card", "bank_account", "yoomoney")


class WithdrawalProcessor:
    """
    Holds, approves and rejects seller withdrawals.

    Args:
        storage: Ledger storage
        fee_calculator: Fee policy
        min_amount: Smallest gross amount that may be withdrawn
        methods: Accepted payout methods
    """

    def __init__(
        self,
        storage: Storage,
        fee_calculator: Optional[FeeCalculator] = None,
        min_amount: AmountLike = Decimal("1000"),
        methods: Iterable[str] = DEFAULT_METHODS,
    ):
        self.storage = storage
        self.fee_calculator = fee_calculator or FeeCalculator()
        self.min_amount = to_amount(min_amount)
        self.methods = frozenset(methods)

    def _validate_request(
        self, amount: AmountLike, method: str, details: Optional[Dict[str, Any]]
    ) -> Decimal:
        gross = self.fee_calculator.validate_amount(amount)
        if gross < self.min_amount:
            raise ValidationError(
                f"Minimum withdrawal amount is {self.min_amount}",
                {"amount": str(gross), "min_amount": str(self.min_amount)},
            )
        if method not in self.methods:
            raise ValidationError(
                "Invalid withdrawal method",
                {"method": method, "allowed": sorted(self.methods)},
            )
        if not details:
            raise ValidationError("Withdrawal details are required")
        return gross

    async def request(
        self,
        user_id: str,
        amount: AmountLike,
        method: str,
        details: Optional[Dict[str, Any]],
    ) -> Transaction:
        """
        Hold funds for a withdrawal.

        Args:
            user_id: Seller requesting the payout
            amount: Gross amount to withdraw
            method: Payout method (bank_card, bank_account, yoomoney)
            details: Payout destination details

        Returns:
            Transaction: The pending withdrawal

        Raises:
            ValidationError: Amount below minimum, bad method or missing details
            Forbidden: Caller has no approved shop
            InsufficientFunds: Balance smaller than the amount
        """
        gross = self._validate_request(amount, method, details)
        breakdown = self.fee_calculator.compute_fee(TransactionType.WITHDRAWAL, gross)

        async with self.storage.atomic() as uow:
            shop = await uow.shops.get_by_owner(user_id, status=ShopStatus.APPROVED)
            if shop is None:
                raise Forbidden("Shop not found or not approved", {"user_id": user_id})

            tx = Transaction(
                user_id=user_id,
                shop_id=shop.id,
                type=TransactionType.WITHDRAWAL,
                amount=gross,
                fee=breakdown.fee,
                net_amount=breakdown.net_amount,
                payment_method=method,
                description=f"Withdrawal to {method}",
                metadata={"method": method, "details": dict(details or {})},
            )
            tx = await TransactionLedger(uow.transactions).record(tx, actor=user_id)
            balance_after = await BalanceAccount(uow.shops, shop.id).reserve(
                gross, transaction_id=tx.id, actor=user_id
            )

        logger.info(
            "withdrawal_requested",
            transaction_id=tx.id,
            shop_id=shop.id,
            amount=gross,
            fee=breakdown.fee,
            net_amount=breakdown.net_amount,
            balance_after=balance_after,
        )
        return tx

    async def _load_pending(self, uow: UnitOfWork, transaction_id: str) -> Transaction:
        tx = await uow.transactions.get(transaction_id)
        if tx is None or tx.type is not TransactionType.WITHDRAWAL:
            raise NotFound("Withdrawal not found", {"transaction_id": transaction_id})
        if tx.status is not TransactionStatus.PENDING:
            raise Conflict(
                "Withdrawal already processed",
                {"transaction_id": transaction_id, "status": tx.status.value},
            )
        return tx

    async def _decide(
        self,
        uow: UnitOfWork,
        tx: Transaction,
        decision: WithdrawalDecision,
        admin_id: str,
        reason: Optional[str] = None,
    ) -> None:
        target = (
            TransactionStatus.COMPLETED
            if decision is WithdrawalDecision.APPROVED
            else TransactionStatus.CANCELLED
        )
        metadata: Dict[str, Any] = {
            "decision": decision.value,
            "decided_by": admin_id,
            "decided_at": utcnow().isoformat(),
        }
        if reason:
            metadata["rejection_reason"] = reason
        applied = await TransactionLedger(uow.transactions).transition(
            tx, target, actor=admin_id, metadata=metadata
        )
        if not applied:
            raise Conflict("Withdrawal already processed", {"transaction_id": tx.id})

    async def approve(self, transaction_id: str, admin_id: str) -> Transaction:
        """
        Make a held withdrawal final.

        Raises:
            NotFound: Unknown withdrawal
            Conflict: Already approved or rejected
        """
        async with self.storage.atomic() as uow:
            tx = await self._load_pending(uow, transaction_id)
            await self._decide(uow, tx, WithdrawalDecision.APPROVED, admin_id)
            result = await uow.transactions.get(transaction_id)

        logger.info("withdrawal_approved", transaction_id=transaction_id, admin_id=admin_id)
        return result

    async def reject(self, transaction_id: str, admin_id: str, reason: str = "") -> Transaction:
        """
        Cancel a held withdrawal and return its gross amount to the shop.

        Raises:
            NotFound: Unknown withdrawal
            Conflict: Already approved or rejected
        """
        async with self.storage.atomic() as uow:
            tx = await self._load_pending(uow, transaction_id)
            await self._decide(uow, tx, WithdrawalDecision.REJECTED, admin_id, reason)
            await BalanceAccount(uow.shops, tx.shop_id).release(
                tx.amount, transaction_id=tx.id, actor=admin_id
            )
            result = await uow.transactions.get(transaction_id)

        logger.info(
            "withdrawal_rejected",
            transaction_id=transaction_id,
            admin_id=admin_id,
            amount=tx.amount,
            reason=reason,
        )
        return result

    async def list(
        self,
        requester_id: str,
        is_admin: bool = False,
        status: Optional[TransactionStatus] = None,
        pagination: Optional[Pagination] = None,
        user_id: Optional[str] = None,
    ) -> TransactionPage:
        """
        List withdrawals, newest first.

        Non-admin callers only ever see their own; admins may narrow the
        listing with ``user_id``.
        """
        filters = TransactionFilter(
            type=TransactionType.WITHDRAWAL,
            user_id=user_id if is_admin else requester_id,
            status=status,
        )
        async with self.storage.atomic() as uow:
            return await TransactionLedger(uow.transactions).list(
                filters, pagination or Pagination()
            )
