"""
Unit tests for the in-memory storage backend.
"""
import asyncio
from decimal import Decimal

import pytest

from marketplace_ledger.core.errors import Conflict, InsufficientFunds
from marketplace_ledger.core.models import (
    Order,
    OrderStatus,
    Pagination,
    Shop,
    ShopStatus,
    Transaction,
    TransactionFilter,
    TransactionStatus,
    TransactionType,
)
from marketplace_ledger.database.memory import InMemoryStorage


def _refund(order_id: str, status: TransactionStatus = TransactionStatus.COMPLETED) -> Transaction:
    return Transaction(
        user_id="buyer-1",
        order_id=order_id,
        type=TransactionType.REFUND,
        amount=Decimal("10"),
        net_amount=Decimal("-10"),
        status=status,
    )


class TestInMemoryStorage:
    """Test suite for InMemoryStorage."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_unit_of_work_rolls_back(self, storage: InMemoryStorage) -> None:
        shop = storage.add_shop(
            Shop(owner_id="seller-1", status=ShopStatus.APPROVED, balance=Decimal("500"))
        )
        tx = Transaction(
            user_id="seller-1",
            shop_id=shop.id,
            type=TransactionType.WITHDRAWAL,
            amount=Decimal("400"),
            fee=Decimal("50"),
            net_amount=Decimal("350"),
        )

        with pytest.raises(InsufficientFunds):
            async with storage.atomic() as uow:
                await uow.transactions.insert(tx)
                await uow.shops.adjust_balance(shop.id, Decimal("-400"))
                await uow.shops.adjust_balance(shop.id, Decimal("-400"))

        async with storage.atomic() as uow:
            assert await uow.transactions.get(tx.id) is None
            assert (await uow.shops.get(shop.id)).balance == Decimal("500.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_external_id_conflicts(self, storage: InMemoryStorage) -> None:
        first = Transaction(
            user_id="u", type=TransactionType.PAYMENT, amount=Decimal("1"),
            net_amount=Decimal("1"), external_id="pay_1",
        )
        second = first.model_copy(update={"id": "other"})
        async with storage.atomic() as uow:
            await uow.transactions.insert(first)
            with pytest.raises(Conflict):
                await uow.transactions.insert(second)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_one_live_refund_per_order(self, storage: InMemoryStorage) -> None:
        async with storage.atomic() as uow:
            await uow.transactions.insert(_refund("order-1", TransactionStatus.CANCELLED))
            await uow.transactions.insert(_refund("order-1"))
            with pytest.raises(Conflict, match="already refunded"):
                await uow.transactions.insert(_refund("order-1"))
            # A different order is unaffected
            await uow.transactions.insert(_refund("order-2"))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_order_status_compare_and_set(self, storage: InMemoryStorage) -> None:
        order = storage.add_order(Order(user_id="buyer-1", total_amount=Decimal("10")))
        async with storage.atomic() as uow:
            assert await uow.orders.update_status(
                order.id, OrderStatus.PROCESSING, expected=OrderStatus.PENDING
            )
            assert not await uow.orders.update_status(
                order.id, OrderStatus.PROCESSING, expected=OrderStatus.PENDING
            )
            await uow.orders.set_payment_reference(order.id, "pay_1")
            stored = await uow.orders.get(order.id)

        assert stored.status is OrderStatus.PROCESSING
        assert stored.payment_id == "pay_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, storage: InMemoryStorage) -> None:
        shop = storage.add_shop(Shop(owner_id="seller-1"))
        async with storage.atomic() as uow:
            loaded = await uow.shops.get(shop.id)
            loaded.balance = Decimal("999")
            assert (await uow.shops.get(shop.id)).balance == Decimal("0.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_get_by_owner_filters_status(self, storage: InMemoryStorage) -> None:
        storage.add_shop(Shop(owner_id="seller-1", status=ShopStatus.PENDING))
        async with storage.atomic() as uow:
            assert await uow.shops.get_by_owner("seller-1") is not None
            assert await uow.shops.get_by_owner("seller-1", status=ShopStatus.APPROVED) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_list_pages_newest_first(self, storage: InMemoryStorage) -> None:
        async with storage.atomic() as uow:
            for i in range(5):
                await uow.transactions.insert(
                    Transaction(
                        user_id="seller-1",
                        type=TransactionType.WITHDRAWAL,
                        amount=Decimal(1000 + i),
                        fee=Decimal("50"),
                        net_amount=Decimal(950 + i),
                    )
                )
            await uow.transactions.insert(
                Transaction(
                    user_id="seller-2",
                    type=TransactionType.WITHDRAWAL,
                    amount=Decimal("1000"),
                    fee=Decimal("50"),
                    net_amount=Decimal("950"),
                )
            )
            page = await uow.transactions.list(
                TransactionFilter(type=TransactionType.WITHDRAWAL, user_id="seller-1"),
                Pagination(page=1, limit=2),
            )

        assert page.total == 5
        assert page.pages == 3
        assert len(page.items) == 2
        assert page.items[0].created_at >= page.items[1].created_at

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_row_locks_dropped_when_idle(self, storage: InMemoryStorage) -> None:
        shop = storage.add_shop(
            Shop(owner_id="seller-1", status=ShopStatus.APPROVED, balance=Decimal("100"))
        )

        async def debit() -> None:
            async with storage.atomic() as uow:
                await uow.shops.adjust_balance(shop.id, Decimal("-10"))
                await asyncio.sleep(0)

        await asyncio.gather(*[debit() for _ in range(5)])
        with pytest.raises(InsufficientFunds):
            async with storage.atomic() as uow:
                await uow.shops.adjust_balance(shop.id, Decimal("-500"))

        assert len(storage._locks) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancelled_waiter_leaves_no_lock(self, storage: InMemoryStorage) -> None:
        shop = storage.add_shop(Shop(owner_id="seller-1", balance=Decimal("100")))
        holding = asyncio.Event()
        finish = asyncio.Event()

        async def holder() -> None:
            async with storage.atomic() as uow:
                await uow.shops.adjust_balance(shop.id, Decimal("-10"))
                holding.set()
                await finish.wait()

        async def waiter() -> None:
            async with storage.atomic() as uow:
                await uow.shops.adjust_balance(shop.id, Decimal("-10"))

        held = asyncio.create_task(holder())
        await holding.wait()
        blocked = asyncio.create_task(waiter())
        await asyncio.sleep(0)
        blocked.cancel()
        with pytest.raises(asyncio.CancelledError):
            await blocked
        finish.set()
        await held

        assert len(storage._locks) == 0
        async with storage.atomic() as uow:
            assert (await uow.shops.get(shop.id)).balance == Decimal("90.00")
