"""
SQLAlchemy storage.

One unit of work is one database transaction. Balance and status changes
are conditional UPDATE statements, so the row lock taken by the update
linearizes concurrent writers on the same shop or transaction without any
process-level lock.
"""
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, AsyncIterator, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

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
from marketplace_ledger.core.money import from_minor_units, to_minor_units
from marketplace_ledger.database.models import OrderRecord, ShopRecord, TransactionRecord

logger = structlog.get_logger(__name__)


def _order_from_record(row: OrderRecord) -> Order:
    return Order(
        id=row.id,
        user_id=row.user_id,
        shop_id=row.shop_id,
        order_number=row.order_number,
        total_amount=from_minor_units(row.total_minor),
        currency=row.currency,
        status=OrderStatus(row.status),
        payment_id=row.payment_id,
        payment_method=row.payment_method,
        updated_at=row.updated_at,
    )


def _shop_from_record(row: ShopRecord) -> Shop:
    return Shop(
        id=row.id,
        owner_id=row.owner_id,
        name=row.name,
        status=ShopStatus(row.status),
        balance=from_minor_units(row.balance_minor),
        updated_at=row.updated_at,
    )


def _tx_from_record(row: TransactionRecord) -> Transaction:
    return Transaction(
        id=row.id,
        user_id=row.user_id,
        shop_id=row.shop_id,
        order_id=row.order_id,
        type=TransactionType(row.type),
        amount=from_minor_units(row.amount_minor),
        fee=from_minor_units(row.fee_minor),
        net_amount=from_minor_units(row.net_minor),
        status=TransactionStatus(row.status),
        payment_method=row.payment_method,
        external_id=row.external_id,
        description=row.description,
        metadata=dict(row.meta or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _tx_to_record(tx: Transaction) -> TransactionRecord:
    return TransactionRecord(
        id=tx.id,
        user_id=tx.user_id,
        shop_id=tx.shop_id,
        order_id=tx.order_id,
        type=tx.type.value,
        amount_minor=to_minor_units(tx.amount),
        fee_minor=to_minor_units(tx.fee),
        net_minor=to_minor_units(tx.net_amount),
        status=tx.status.value,
        payment_method=tx.payment_method,
        external_id=tx.external_id,
        description=tx.description,
        meta=dict(tx.metadata),
        created_at=tx.created_at,
        updated_at=tx.updated_at,
    )


class SqlOrderStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, order_id: str, for_update: bool = False) -> Optional[Order]:
        stmt = select(OrderRecord).where(OrderRecord.id == order_id).execution_options(
            populate_existing=True
        )
        if for_update:
            stmt = stmt.with_for_update()
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return _order_from_record(row) if row else None

    async def update_status(
        self, order_id: str, status: OrderStatus, expected: Optional[OrderStatus] = None
    ) -> bool:
        stmt = (
            update(OrderRecord)
            .where(OrderRecord.id == order_id)
            .values(status=status.value, updated_at=utcnow())
        )
        if expected is not None:
            stmt = stmt.where(OrderRecord.status == expected.value)
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            if await self.get(order_id) is None:
                raise NotFound(f"Order {order_id} not found")
            return False
        return True

    async def set_payment_reference(self, order_id: str, payment_id: str) -> None:
        stmt = (
            update(OrderRecord)
            .where(OrderRecord.id == order_id)
            .values(payment_id=payment_id, updated_at=utcnow())
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            raise NotFound(f"Order {order_id} not found")


class SqlShopStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, shop_id: str) -> Optional[Shop]:
        row = await self.session.get(ShopRecord, shop_id, populate_existing=True)
        return _shop_from_record(row) if row else None

    async def get_by_owner(
        self, owner_id: str, status: Optional[ShopStatus] = None
    ) -> Optional[Shop]:
        stmt = select(ShopRecord).where(ShopRecord.owner_id == owner_id)
        if status is not None:
            stmt = stmt.where(ShopRecord.status == status.value)
        row = (
            await self.session.execute(stmt.limit(1).execution_options(populate_existing=True))
        ).scalar_one_or_none()
        return _shop_from_record(row) if row else None

    async def adjust_balance(self, shop_id: str, delta: Decimal) -> Decimal:
        delta_minor = to_minor_units(delta)
        stmt = (
            update(ShopRecord)
            .where(
                ShopRecord.id == shop_id,
                ShopRecord.balance_minor + delta_minor >= 0,
            )
            .values(
                balance_minor=ShopRecord.balance_minor + delta_minor,
                updated_at=utcnow(),
            )
            .returning(ShopRecord.balance_minor)
            .execution_options(synchronize_session=False)
        )
        new_minor = (await self.session.execute(stmt)).scalar_one_or_none()
        if new_minor is None:
            current = await self.session.scalar(
                select(ShopRecord.balance_minor).where(ShopRecord.id == shop_id)
            )
            if current is None:
                raise NotFound(f"Shop {shop_id} not found")
            raise InsufficientFunds(
                "Insufficient balance",
                {
                    "shop_id": shop_id,
                    "balance": str(from_minor_units(current)),
                    "delta": str(delta),
                },
            )
        return from_minor_units(new_minor)


class SqlTransactionStore:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def insert(self, tx: Transaction) -> Transaction:
        if tx.type is TransactionType.REFUND and tx.status is not TransactionStatus.CANCELLED:
            live = await self.session.scalar(
                select(func.count(TransactionRecord.id)).where(
                    TransactionRecord.order_id == tx.order_id,
                    TransactionRecord.type == TransactionType.REFUND.value,
                    TransactionRecord.status != TransactionStatus.CANCELLED.value,
                )
            )
            if live:
                raise Conflict("Order already refunded", {"order_id": tx.order_id})
        self.session.add(_tx_to_record(tx))
        try:
            await self.session.flush()
        except IntegrityError as e:
            logger.warning(
                "transaction_insert_conflict",
                transaction_id=tx.id,
                external_id=tx.external_id,
                order_id=tx.order_id,
                error=str(e.orig),
            )
            raise Conflict(
                "Transaction conflicts with an existing ledger entry",
                {"transaction_id": tx.id, "external_id": tx.external_id, "order_id": tx.order_id},
            ) from e
        return tx

    async def get(self, tx_id: str) -> Optional[Transaction]:
        row = await self.session.get(TransactionRecord, tx_id, populate_existing=True)
        return _tx_from_record(row) if row else None

    async def update_status(
        self,
        tx_id: str,
        status: TransactionStatus,
        expected: TransactionStatus = TransactionStatus.PENDING,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        values: Dict[str, Any] = {"status": status.value, "updated_at": utcnow()}
        if metadata:
            current = await self.get(tx_id)
            if current is None:
                raise NotFound(f"Transaction {tx_id} not found")
            merged = dict(current.metadata)
            merged.update(metadata)
            values["meta"] = merged
        stmt = (
            update(TransactionRecord)
            .where(
                TransactionRecord.id == tx_id,
                TransactionRecord.status == expected.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        if result.rowcount == 0:
            if await self.get(tx_id) is None:
                raise NotFound(f"Transaction {tx_id} not found")
            return False
        return True

    async def find_by_external_id(self, external_id: str) -> Optional[Transaction]:
        stmt = select(TransactionRecord).where(
            TransactionRecord.external_id == external_id,
            TransactionRecord.type == TransactionType.PAYMENT.value,
        )
        row = (await self.session.execute(stmt)).scalar_one_or_none()
        return _tx_from_record(row) if row else None

    async def find_by_order_and_type(
        self, order_id: str, tx_type: TransactionType
    ) -> List[Transaction]:
        stmt = select(TransactionRecord).where(
            TransactionRecord.order_id == order_id,
            TransactionRecord.type == tx_type.value,
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return [_tx_from_record(row) for row in rows]

    async def list(
        self, filters: TransactionFilter, pagination: Pagination
    ) -> TransactionPage:
        conditions = []
        if filters.type is not None:
            conditions.append(TransactionRecord.type == filters.type.value)
        if filters.user_id is not None:
            conditions.append(TransactionRecord.user_id == filters.user_id)
        if filters.shop_id is not None:
            conditions.append(TransactionRecord.shop_id == filters.shop_id)
        if filters.status is not None:
            conditions.append(TransactionRecord.status == filters.status.value)

        total = await self.session.scalar(
            select(func.count(TransactionRecord.id)).where(*conditions)
        )
        stmt = (
            select(TransactionRecord)
            .where(*conditions)
            .order_by(TransactionRecord.created_at.desc(), TransactionRecord.id)
            .offset(pagination.offset)
            .limit(pagination.limit)
        )
        rows = (await self.session.execute(stmt)).scalars().all()
        return TransactionPage(
            items=[_tx_from_record(row) for row in rows],
            page=pagination.page,
            limit=pagination.limit,
            total=total or 0,
        )


class SqlUnitOfWork:
    """Repositories sharing one session and one database transaction."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.orders = SqlOrderStore(session)
        self.shops = SqlShopStore(session)
        self.transactions = SqlTransactionStore(session)


class SqlStorage:
    """
    Storage backed by an async SQLAlchemy session factory.

    Args:
        session_factory: Factory from ``database.connection``
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[SqlUnitOfWork]:
        async with self.session_factory() as session:
            async with session.begin():
                yield SqlUnitOfWork(session)

    async def add_order(self, order: Order) -> Order:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    OrderRecord(
                        id=order.id,
                        user_id=order.user_id,
                        shop_id=order.shop_id,
                        order_number=order.order_number,
                        total_minor=to_minor_units(order.total_amount),
                        currency=order.currency,
                        status=order.status.value,
                        payment_id=order.payment_id,
                        payment_method=order.payment_method,
                    )
                )
        return order

    async def add_shop(self, shop: Shop) -> Shop:
        async with self.session_factory() as session:
            async with session.begin():
                session.add(
                    ShopRecord(
                        id=shop.id,
                        owner_id=shop.owner_id,
                        name=shop.name,
                        status=shop.status.value,
                        balance_minor=to_minor_units(shop.balance),
                    )
                )
        return shop
