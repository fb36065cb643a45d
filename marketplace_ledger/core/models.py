"""
Domain models for the ledger.

Transactions are the source of truth; shop balances are a cache over them.
"""
from __future__ import annotations

import math
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from marketplace_ledger.core.money import to_amount


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class TransactionType(str, Enum):
    PAYMENT = "payment"
    WITHDRAWAL = "withdrawal"
    REFUND = "refund"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionStatus.PENDING


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class ShopStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    SUSPENDED = "suspended"


class WithdrawalDecision(str, Enum):
    """Admin decision on a held withdrawal, stored in transaction metadata."""

    APPROVED = "approved"
    REJECTED = "rejected"


class Transaction(BaseModel):
    """
    A ledger entry.

    Immutable once it reaches a terminal status, except that the status
    field itself is written exactly once on the way out of ``pending``.
    """

    id: str = Field(default_factory=new_id)
    user_id: str
    shop_id: Optional[str] = None
    order_id: Optional[str] = None
    type: TransactionType
    amount: Decimal
    fee: Decimal = Decimal("0.00")
    net_amount: Decimal
    status: TransactionStatus = TransactionStatus.PENDING
    payment_method: Optional[str] = None
    external_id: Optional[str] = None
    description: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("amount", "fee", "net_amount", mode="before")
    @classmethod
    def quantize_money(cls, v: Any) -> Decimal:
        """Keep every amount at two decimal places."""
        return to_amount(v)

    @model_validator(mode="after")
    def check_amounts(self) -> "Transaction":
        """Enforce the gross/fee/net relationship for each transaction type."""
        if self.amount <= 0:
            raise ValueError("amount must be positive")
        if self.fee < 0:
            raise ValueError("fee must not be negative")
        if self.type is TransactionType.REFUND:
            if self.fee != 0 or self.net_amount != -self.amount:
                raise ValueError("refund must have zero fee and net_amount == -amount")
        elif self.net_amount != self.amount - self.fee:
            raise ValueError("net_amount must equal amount - fee")
        return self


class Order(BaseModel):
    """Order record owned by the order service; the ledger reads and transitions it."""

    id: str = Field(default_factory=new_id)
    user_id: str
    shop_id: Optional[str] = None
    order_number: str = ""
    total_amount: Decimal
    currency: str = "RUB"
    status: OrderStatus = OrderStatus.PENDING
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("total_amount", mode="before")
    @classmethod
    def quantize_total(cls, v: Any) -> Decimal:
        return to_amount(v)


class Shop(BaseModel):
    """Seller shop with its denormalized balance counter."""

    id: str = Field(default_factory=new_id)
    owner_id: str
    name: str = ""
    status: ShopStatus = ShopStatus.PENDING
    balance: Decimal = Decimal("0.00")
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("balance", mode="before")
    @classmethod
    def quantize_balance(cls, v: Any) -> Decimal:
        return to_amount(v)


class FeeBreakdown(BaseModel):
    """Result of a fee computation."""

    model_config = ConfigDict(frozen=True)

    fee: Decimal
    net_amount: Decimal


class PaymentIntent(BaseModel):
    """What the buyer needs to continue a payment at the gateway."""

    redirect_url: str
    transaction_id: str
    payment_id: str


class PaymentStatus(BaseModel):
    """Authoritative gateway view of a payment."""

    payment_id: str
    status: str
    amount: Decimal
    currency: str
    created_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None


class WebhookAck(BaseModel):
    """Acknowledgement returned to the webhook sender."""

    payment_id: str
    status: str
    transaction_id: Optional[str] = None
    duplicate: bool = False


class TransactionFilter(BaseModel):
    """Filter for ledger listings."""

    type: Optional[TransactionType] = None
    user_id: Optional[str] = None
    shop_id: Optional[str] = None
    status: Optional[TransactionStatus] = None


class Pagination(BaseModel):
    page: int = Field(default=1, ge=1)
    limit: int = Field(default=20, ge=1, le=100)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit


class TransactionPage(BaseModel):
    """One page of a ledger listing, newest first."""

    items: List[Transaction]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0
