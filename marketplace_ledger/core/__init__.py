"""Ledger workflows and domain types."""
from .errors import (
    Conflict,
    Forbidden,
    GatewayError,
    InsufficientFunds,
    LedgerError,
    NotFound,
    PartialPaymentError,
    SignatureInvalid,
    ValidationError,
)
from .fees import FeeCalculator
from .models import (
    Order,
    OrderStatus,
    Pagination,
    Shop,
    ShopStatus,
    Transaction,
    TransactionStatus,
    TransactionType,
)

__all__ = [
    "Conflict",
    "FeeCalculator",
    "Forbidden",
    "GatewayError",
    "InsufficientFunds",
    "LedgerError",
    "NotFound",
    "Order",
    "OrderStatus",
    "Pagination",
    "PartialPaymentError",
    "Shop",
    "ShopStatus",
    "SignatureInvalid",
    "Transaction",
    "TransactionStatus",
    "TransactionType",
    "ValidationError",
]
