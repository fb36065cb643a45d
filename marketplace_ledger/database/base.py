"""
Storage interfaces consumed by the ledger workflows.

Workflows never talk to a database directly. They open a unit of work with
``storage.atomic()`` and use the three repositories it exposes; everything
done through one unit of work commits or rolls back together.

Implementations must guarantee:

- ``ShopStore.adjust_balance`` is a single conditional update that refuses to
  take a balance below zero.
- ``TransactionStore.update_status`` and ``OrderStore.update_status`` are
  compare-and-set on the current status.
- At most one non-cancelled refund exists per order, enforced at insert.
- Rows touched through a unit of work stay locked until it ends.
"""
from decimal import Decimal
from typing import Any, AsyncContextManager, Dict, List, Optional, Protocol

from marketplace_ledger.core.models import (
    Order,
    OrderStatus,
    Pagination,
    Shop,
    ShopStatus,
    Transaction,
    TransactionFilter,
    TransactionPage,
    TransactionStatus,
    TransactionType,
)


class OrderStore(Protocol):
    async def get(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        ...

    async def update_status(
        self, order_id: str, status: OrderStatus, expected: Optional[OrderStatus] = None
    ) -> bool:
        """Set status; when ``expected`` is given only if the current status matches."""
        ...

    async def set_payment_reference(self, order_id: str, payment_id: str) -> None:
        ...


class ShopStore(Protocol):
    async def get(self, shop_id: str) -> Optional[Shop]:
        ...

    async def get_by_owner(
        self, owner_id: str, status: Optional[ShopStatus] = None
    ) -> Optional[Shop]:
        ...

    async def adjust_balance(self, shop_id: str, delta: Decimal) -> Decimal:
        """
        Atomically add ``delta`` to the balance and return the new balance.

        Raises:
            NotFound: If the shop does not exist
            InsufficientFunds: If the result would be negative
        """
        ...


class TransactionStore(Protocol):
    async def insert(self, tx: Transaction) -> Transaction:
        """
        Append a ledger entry.

        Raises:
            Conflict: On a duplicate ``external_id`` or a second live refund
        """
        ...

    async def get(self, tx_id: str) -> Optional[Transaction]:
        ...

    async def update_status(
        self,
        tx_id: str,
        status: TransactionStatus,
        expected: TransactionStatus = TransactionStatus.PENDING,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Compare-and-set the status; ``metadata`` is merged into the entry."""
        ...

    async def find_by_external_id(self, external_id: str) -> Optional[Transaction]:
        ...

    async def find_by_order_and_type(
        self, order_id: str, tx_type: TransactionType
    ) -> List[Transaction]:
        ...

    async def list(
        self, filters: TransactionFilter, pagination: Pagination
    ) -> TransactionPage:
        ...


class UnitOfWork(Protocol):
    orders: OrderStore
    shops: ShopStore
    transactions: TransactionStore


class Storage(Protocol):
    def atomic(self) -> AsyncContextManager[UnitOfWork]:
        ...
