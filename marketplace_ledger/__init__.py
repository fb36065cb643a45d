"""
Marketplace payment and transaction ledger.

Payment intents, webhook reconciliation, per-shop balances, seller
withdrawals and admin refunds.
"""
from .core.service import LedgerService

__all__ = ["LedgerService"]

__version__ = "0.1.0"
