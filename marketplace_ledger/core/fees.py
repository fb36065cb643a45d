"""
Fee calculation for ledger transactions.

Pure and deterministic: no I/O, no clock, no configuration lookups at call
time. Rates are bound when the calculator is constructed.
"""
from decimal import Decimal
from typing import Optional

from marketplace_ledger.config import Settings
from marketplace_ledger.core.errors import ValidationError
from marketplace_ledger.core.models import FeeBreakdown, TransactionType
from marketplace_ledger.core.money import MAX_AMOUNT, AmountLike, parse_amount, round_up, to_amount

ZERO = Decimal("0.00")


class FeeCalculator:
    """
    Computes fee and net amount for each transaction type.

    - payment: no fee at creation (any gateway fee is booked elsewhere)
    - withdrawal: max(flat minimum, amount * rate), rounded up to the subunit
    - refund: no fee, net is the negated gross
    """

    def __init__(
        self,
        withdrawal_rate: Decimal = Decimal("0.02"),
        withdrawal_min_fee: Decimal = Decimal("50"),
        max_amount: Decimal = MAX_AMOUNT,
    ):
        """
        Initialize fee calculator.

        Args:
            withdrawal_rate: Fraction of the gross withheld on withdrawal
            withdrawal_min_fee: Flat minimum withdrawal fee
            max_amount: Largest gross amount accepted from a caller
        """
        if withdrawal_rate < 0 or withdrawal_rate >= 1:
            raise ValueError("withdrawal_rate must be in [0, 1)")
        self.withdrawal_rate = Decimal(withdrawal_rate)
        self.withdrawal_min_fee = to_amount(withdrawal_min_fee)
        if self.withdrawal_min_fee < 0:
            raise ValueError("withdrawal_min_fee must not be negative")
        if not 0 < max_amount <= MAX_AMOUNT:
            raise ValueError(f"max_amount must be in (0, {MAX_AMOUNT}]")
        self.max_amount = Decimal(max_amount)

    @classmethod
    def from_settings(cls, settings: Settings) -> "FeeCalculator":
        return cls(
            withdrawal_rate=settings.withdrawal_fee_rate,
            withdrawal_min_fee=settings.withdrawal_min_fee,
            max_amount=settings.max_amount,
        )

    def validate_amount(self, amount: Optional[AmountLike]) -> Decimal:
        """
        Parse a caller-supplied gross amount.

        Raises:
            ValidationError: Missing, malformed, finer than a subunit, not
                positive or above the configured maximum
        """
        if amount is None:
            raise ValidationError("Amount is required")
        try:
            value = parse_amount(amount, self.max_amount)
        except ValueError as e:
            raise ValidationError(str(e), {"amount": str(amount)}) from e
        if value <= 0:
            raise ValidationError("Amount must be positive", {"amount": str(value)})
        return value

    def compute_fee(self, tx_type: TransactionType, amount: AmountLike) -> FeeBreakdown:
        """
        Compute fee and signed net amount.

        Args:
            tx_type: Transaction type
            amount: Gross amount (positive)

        Returns:
            FeeBreakdown: fee >= 0 and net_amount with the sign of the type

        Raises:
            ValidationError: If the amount is not a valid positive amount
        """
        gross = self.validate_amount(amount)
        try:
            tx_type = TransactionType(tx_type)
        except ValueError as e:
            raise ValidationError(f"Unknown transaction type: {tx_type}") from e

        if tx_type is TransactionType.PAYMENT:
            return FeeBreakdown(fee=ZERO, net_amount=gross)

        if tx_type is TransactionType.REFUND:
            return FeeBreakdown(fee=ZERO, net_amount=-gross)

        fee = max(self.withdrawal_min_fee, round_up(gross * self.withdrawal_rate))
        if fee >= gross:
            raise ValidationError(
                "Withdrawal amount does not cover the withdrawal fee",
                {"amount": str(gross), "fee": str(fee)},
            )
        return FeeBreakdown(fee=fee, net_amount=gross - fee)
