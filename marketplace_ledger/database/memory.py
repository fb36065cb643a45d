"""
In-memory storage.

Used by the test suite and for local development without a database. Rows
are locked per key for the lifetime of a unit of work (mirroring row locks
in the SQL backend) and every change is journaled so a failed unit of work
rolls back cleanly.

Lock order inside one unit of work is transaction, then order, then shop.
The workflows touch rows in that order.
"""
import asyncio
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import structlog

from marketplace_ledger.core.errors import Conflict, InsufficientFunds, NotFound
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
    utcnow,
)
from marketplace_ledger.core.money import to_amount

logger = structlog.get_logger(__name__)


class _KeyLocks:
    """
    Per-key asyncio locks that exist only while someone holds or awaits them.

    ``_users`` counts holders plus waiters of each key; the lock is dropped
    when that count returns to zero.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    async def acquire(self, key: str) -> None:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget(key)
            raise

    def release(self, key: str) -> None:
        self._locks[key].release()
        self._forget(key)

    def _forget(self, key: str) -> None:
        self._users[key] -= 1
        if not self._users[key]:
            del self._users[key]
            del self._locks[key]


class _MemoryUnitOfWork:
    """Repositories bound to one in-memory unit of work."""

    def __init__(self, storage: "InMemoryStorage"):
        self._storage = storage
        self._held: List[str] = []
        self._undo: List[Callable[[], None]] = []
        self.orders = _MemoryOrderStore(self)
        self.shops = _MemoryShopStore(self)
        self.transactions = _MemoryTransactionStore(self)

    async def lock(self, key: str) -> None:
        if key in self._held:
            return
        await self._storage._locks.acquire(key)
        self._held.append(key)

    def journal(self, table: Dict[str, Any], key: str) -> None:
        """Remember the current value of ``table[key]`` for rollback."""
        if key in table:
            previous = table[key]
            self._undo.append(lambda: table.__setitem__(key, previous))
        else:
            self._undo.append(lambda: table.pop(key, None))

    def rollback(self) -> None:
        for undo in reversed(self._undo):
            undo()
        self._undo.clear()

    def release(self) -> None:
        for key in reversed(self._held):
            self._storage._locks.release(key)
        self._held.clear()


class _MemoryOrderStore:
    def __init__(self, uow: _MemoryUnitOfWork):
        self._uow = uow
        self._rows = uow._storage._orders

    async def get(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        if for_update:
            await self._uow.lock(f"order:{order_id}")
        order = self._rows.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def update_status(
        self, order_id: str, status: OrderStatus, expected: Optional[OrderStatus] = None
    ) -> bool:
        await self._uow.lock(f"order:{order_id}")
        order = self._rows.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        if expected is not None and order.status != expected:
            return False
        self._uow.journal(self._rows, order_id)
        self._rows[order_id] = order.model_copy(update={"status": status, "updated_at": utcnow()})
        return True

    async def set_payment_reference(self, order_id: str, payment_id: str) -> None:
        await self._uow.lock(f"order:{order_id}")
        order = self._rows.get(order_id)
        if order is None:
            raise NotFound(f"Order {order_id} not found")
        self._uow.journal(self._rows, order_id)
        self._rows[order_id] = order.model_copy(
            update={"payment_id": payment_id, "updated_at": utcnow()}
        )


class _MemoryShopStore:
    def __init__(self, uow: _MemoryUnitOfWork):
        self._uow = uow
        self._rows = uow._storage._shops

    async def get(self, shop_id: str) -> Optional[Shop]:
        shop = self._rows.get(shop_id)
        return shop.model_copy(deep=True) if shop else None

    async def get_by_owner(
        self, owner_id: str, status: Optional[ShopStatus] = None
    ) -> Optional[Shop]:
        for shop in self._rows.values():
            if shop.owner_id == owner_id and (status is None or shop.status == status):
                return shop.model_copy(deep=True)
        return None

    async def adjust_balance(self, shop_id: str, delta: Decimal) -> Decimal:
        await self._uow.lock(f"shop:{shop_id}")
        shop = self._rows.get(shop_id)
        if shop is None:
            raise NotFound(f"Shop {shop_id} not found")
        new_balance = shop.balance + to_amount(delta)
        if new_balance < 0:
            raise InsufficientFunds(
                "Insufficient balance",
                {"shop_id": shop_id, "balance": str(shop.balance), "delta": str(delta)},
            )
        self._uow.journal(self._rows, shop_id)
        self._rows[shop_id] = shop.model_copy(
            update={"balance": new_balance, "updated_at": utcnow()}
        )
        return new_balance


class _MemoryTransactionStore:
    def __init__(self, uow: _MemoryUnitOfWork):
        self._uow = uow
        self._rows = uow._storage._transactions

    async def insert(self, tx: Transaction) -> Transaction:
        await self._uow.lock(f"tx:{tx.id}")
        if tx.id in self._rows:
            raise Conflict(f"Transaction {tx.id} already exists")
        if tx.external_id is not None and any(
            row.external_id == tx.external_id for row in self._rows.values()
        ):
            raise Conflict(
                "Duplicate external_id", {"external_id": tx.external_id}
            )
        if tx.type is TransactionType.REFUND and tx.status is not TransactionStatus.CANCELLED:
            if tx.order_id is not None:
                await self._uow.lock(f"order:{tx.order_id}")
            if any(
                row.order_id == tx.order_id
                and row.type is TransactionType.REFUND
                and row.status is not TransactionStatus.CANCELLED
                for row in self._rows.values()
            ):
                raise Conflict("Order already refunded", {"order_id": tx.order_id})
        self._uow.journal(self._rows, tx.id)
        self._rows[tx.id] = tx.model_copy(deep=True)
        return tx.model_copy(deep=True)

    async def get(self, tx_id: str) -> Optional[Transaction]:
        tx = self._rows.get(tx_id)
        return tx.model_copy(deep=True) if tx else None

    async def update_status(
        self,
        tx_id: str,
        status: TransactionStatus,
        expected: TransactionStatus = TransactionStatus.PENDING,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        await self._uow.lock(f"tx:{tx_id}")
        tx = self._rows.get(tx_id)
        if tx is None:
            raise NotFound(f"Transaction {tx_id} not found")
        if tx.status != expected:
            return False
        merged = dict(tx.metadata)
        merged.update(metadata or {})
        self._uow.journal(self._rows, tx_id)
        self._rows[tx_id] = tx.model_copy(
            update={"status": status, "metadata": merged, "updated_at": utcnow()}
        )
        return True

    async def find_by_external_id(self, external_id: str) -> Optional[Transaction]:
        for tx in self._rows.values():
            if tx.external_id == external_id and tx.type is TransactionType.PAYMENT:
                return tx.model_copy(deep=True)
        return None

    async def find_by_order_and_type(
        self, order_id: str, tx_type: TransactionType
    ) -> List[Transaction]:
        return [
            tx.model_copy(deep=True)
            for tx in self._rows.values()
            if tx.order_id == order_id and tx.type is tx_type
        ]

    async def list(
        self, filters: TransactionFilter, pagination: Pagination
    ) -> TransactionPage:
        rows = [
            tx
            for tx in self._rows.values()
            if (filters.type is None or tx.type is filters.type)
            and (filters.user_id is None or tx.user_id == filters.user_id)
            and (filters.shop_id is None or tx.shop_id == filters.shop_id)
            and (filters.status is None or tx.status is filters.status)
        ]
        rows.sort(key=lambda tx: tx.created_at, reverse=True)
        window = rows[pagination.offset : pagination.offset + pagination.limit]
        return TransactionPage(
            items=[tx.model_copy(deep=True) for tx in window],
            page=pagination.page,
            limit=pagination.limit,
            total=len(rows),
        )


class InMemoryStorage:
    """
    Process-local storage with unit-of-work semantics.

    Example:
        storage = InMemoryStorage()
        storage.add_shop(Shop(owner_id="u1", status=ShopStatus.APPROVED))
        async with storage.atomic() as uow:
            await uow.shops.adjust_balance(shop_id, Decimal("-100"))
    """

    def __init__(self) -> None:
        self._orders: Dict[str, Order] = {}
        self._shops: Dict[str, Shop] = {}
        self._transactions: Dict[str, Transaction] = {}
        self._locks = _KeyLocks()

    def add_order(self, order: Order) -> Order:
        self._orders[order.id] = order.model_copy(deep=True)
        return order

    def add_shop(self, shop: Shop) -> Shop:
        self._shops[shop.id] = shop.model_copy(deep=True)
        return shop

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[_MemoryUnitOfWork]:
        uow = _MemoryUnitOfWork(self)
        try:
            yield uow
        except BaseException:
            uow.rollback()
            logger.debug("memory_unit_of_work_rolled_back")
            raise
        finally:
            uow.release()
