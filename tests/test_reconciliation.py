"""
Tests for the reconciliation engine and worker.
"""
import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable

import pytest

from marketplace_ledger.core.errors import PartialPaymentError
from marketplace_ledger.core.models import (
    Order,
    OrderStatus,
    Shop,
    Transaction,
    TransactionStatus,
    TransactionType,
)
from marketplace_ledger.core.reconciliation import ReconciliationEngine
from marketplace_ledger.core.service import LedgerService
from marketplace_ledger.database.memory import InMemoryStorage
from marketplace_ledger.integrations.gateway import GatewayPayment, GatewayStatus
from marketplace_ledger.workers.reconciliation_worker import (
    run_reconciliation,
    start_reconciliation_worker,
)

UNTIL = datetime.now(timezone.utc)
SINCE = UNTIL - timedelta(hours=24)


@pytest.fixture
def engine(storage: InMemoryStorage, gateway: Any) -> ReconciliationEngine:
    return ReconciliationEngine(storage, gateway, page_size=2)


async def _snapshot(storage: InMemoryStorage, order: Order, shop: Shop) -> tuple:
    async with storage.atomic() as uow:
        return await uow.orders.get(order.id), await uow.shops.get(shop.id)


class TestReconciliationEngine:
    """Test suite for ReconciliationEngine."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repairs_missing_entry_and_completes(
        self,
        engine: ReconciliationEngine,
        storage: InMemoryStorage,
        gateway: Any,
        pending_order: Order,
        seller_shop: Shop,
    ) -> None:
        gateway.add_payment(
            GatewayPayment(
                id="pay_lost",
                status=GatewayStatus.SUCCEEDED,
                amount=Decimal("5000"),
                currency="RUB",
                metadata={"order_id": pending_order.id, "transaction_id": "tx-lost", "user_id": "buyer-1"},
            )
        )

        report = await engine.reconcile(SINCE, UNTIL)

        assert report.checked == 1
        assert report.repaired == 1
        assert report.completed == 1
        assert report.count("missing_in_ledger") == 1
        async with storage.atomic() as uow:
            tx = await uow.transactions.get("tx-lost")
        assert tx.status is TransactionStatus.COMPLETED
        assert tx.external_id == "pay_lost"
        assert tx.metadata["repaired_by"] == "reconciliation"
        order, shop = await _snapshot(storage, pending_order, seller_shop)
        assert order.status is OrderStatus.PROCESSING
        assert order.payment_id == "pay_lost"
        assert shop.balance == Decimal("5000.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_payment_recovered(
        self,
        service: LedgerService,
        storage: InMemoryStorage,
        gateway: Any,
        pending_order: Order,
        seller_shop: Shop,
        mocker: Any,
    ) -> None:
        """A payment whose local record failed to persist is rebuilt from gateway metadata."""
        patched = mocker.patch(
            "marketplace_ledger.core.payment_intents.TransactionLedger.record",
            side_effect=RuntimeError("database unavailable"),
        )
        with pytest.raises(PartialPaymentError) as exc_info:
            await service.create_payment(
                pending_order.id, "5000", "RUB", "https://shop.test/return", "buyer-1"
            )
        mocker.stop(patched)
        gateway.set_status(exc_info.value.external_id, GatewayStatus.SUCCEEDED)

        report = await service.reconcile(SINCE, UNTIL)

        assert report.repaired == 1
        assert report.completed == 1
        order, shop = await _snapshot(storage, pending_order, seller_shop)
        assert order.status is OrderStatus.PROCESSING
        assert shop.balance == Decimal("5000.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missed_webhook_then_late_delivery_credits_once(
        self,
        service: LedgerService,
        storage: InMemoryStorage,
        gateway: Any,
        pending_order: Order,
        seller_shop: Shop,
        sign: Callable[..., str],
        make_event: Callable[..., bytes],
    ) -> None:
        intent = await service.create_payment(
            pending_order.id, "5000", "RUB", "https://shop.test/return", "buyer-1"
        )
        gateway.set_status(intent.payment_id, GatewayStatus.SUCCEEDED)

        report = await service.reconcile(SINCE, UNTIL)
        body = make_event(intent.payment_id)
        ack = await service.confirm_webhook(body, sign(body))

        assert report.repaired == 0
        assert report.completed == 1
        assert ack.duplicate is True
        _, shop = await _snapshot(storage, pending_order, seller_shop)
        assert shop.balance == Decimal("5000.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_pass_is_a_no_op(
        self,
        engine: ReconciliationEngine,
        storage: InMemoryStorage,
        gateway: Any,
        pending_order: Order,
        seller_shop: Shop,
    ) -> None:
        gateway.add_payment(
            GatewayPayment(
                id="pay_lost",
                status=GatewayStatus.SUCCEEDED,
                amount=Decimal("5000"),
                currency="RUB",
                metadata={"order_id": pending_order.id},
            )
        )
        await engine.reconcile(SINCE, UNTIL)

        report = await engine.reconcile(SINCE, UNTIL)

        assert report.repaired == 0
        assert report.completed == 0
        assert report.is_clean
        _, shop = await _snapshot(storage, pending_order, seller_shop)
        assert shop.balance == Decimal("5000.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_conflicting_repair_reported_once(
        self,
        engine: ReconciliationEngine,
        storage: InMemoryStorage,
        gateway: Any,
        pending_order: Order,
        seller_shop: Shop,
    ) -> None:
        """A repair that collides with an existing entry is not also reported as repaired."""
        async with storage.atomic() as uow:
            await uow.transactions.insert(
                Transaction(
                    id="tx-taken",
                    user_id="buyer-2",
                    type=TransactionType.PAYMENT,
                    amount=Decimal("10"),
                    net_amount=Decimal("10"),
                    external_id="pay_other",
                )
            )
        gateway.add_payment(
            GatewayPayment(
                id="pay_lost",
                status=GatewayStatus.SUCCEEDED,
                amount=Decimal("5000"),
                currency="RUB",
                metadata={"order_id": pending_order.id, "transaction_id": "tx-taken"},
            )
        )

        report = await engine.reconcile(SINCE, UNTIL)

        assert report.count("repair_conflict") == 1
        assert report.count("missing_in_ledger") == 0
        assert report.repaired == 0
        assert report.completed == 0
        order, shop = await _snapshot(storage, pending_order, seller_shop)
        assert order.payment_id is None
        assert shop.balance == Decimal("0.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order_reported(self, engine: ReconciliationEngine, gateway: Any) -> None:
        gateway.add_payment(
            GatewayPayment(
                id="pay_orphan",
                status=GatewayStatus.SUCCEEDED,
                amount=Decimal("10"),
                currency="RUB",
                metadata={"order_id": "deleted-order"},
            )
        )

        report = await engine.reconcile(SINCE, UNTIL)

        assert report.repaired == 0
        assert report.count("unknown_order") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_amount_mismatch_reported(
        self,
        service: LedgerService,
        engine: ReconciliationEngine,
        storage: InMemoryStorage,
        gateway: Any,
        pending_order: Order,
        seller_shop: Shop,
    ) -> None:
        intent = await service.create_payment(
            pending_order.id, "5000", "RUB", "https://shop.test/return", "buyer-1"
        )
        gateway.set_status(intent.payment_id, GatewayStatus.SUCCEEDED, amount=Decimal("50"))

        report = await engine.reconcile(SINCE, UNTIL)

        assert report.count("amount_mismatch") == 1
        assert report.completed == 0
        _, shop = await _snapshot(storage, pending_order, seller_shop)
        assert shop.balance == Decimal("0.00")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_pages_through_all_payments(
        self, engine: ReconciliationEngine, storage: InMemoryStorage, gateway: Any, seller_shop: Shop
    ) -> None:
        for i in range(5):
            order = storage.add_order(
                Order(user_id="buyer-1", shop_id=seller_shop.id, total_amount=Decimal("100"))
            )
            gateway.add_payment(
                GatewayPayment(
                    id=f"pay_{i:04d}",
                    status=GatewayStatus.CANCELED,
                    amount=Decimal("100"),
                    currency="RUB",
                    metadata={"order_id": order.id},
                )
            )

        report = await engine.reconcile(SINCE, UNTIL)

        assert report.checked == 5
        assert report.repaired == 5
        assert report.failed == 5


class TestReconciliationWorker:
    """Test suite for the reconciliation worker loop."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_reconciliation(self, service: LedgerService) -> None:
        report = await run_reconciliation(service, timedelta(hours=1))
        assert report.checked == 0
        assert report.until - report.since == timedelta(hours=1)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_worker_stops_on_event(self, service: LedgerService, mocker: Any) -> None:
        reconcile = mocker.spy(service, "reconcile")
        stop = asyncio.Event()

        task = asyncio.create_task(
            start_reconciliation_worker(service=service, interval_seconds=3600, stop_event=stop)
        )
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert reconcile.call_count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_worker_survives_failed_pass(self, service: LedgerService, mocker: Any) -> None:
        mocker.patch.object(service, "reconcile", side_effect=RuntimeError("gateway down"))
        stop = asyncio.Event()

        task = asyncio.create_task(
            start_reconciliation_worker(service=service, interval_seconds=3600, stop_event=stop)
        )
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        assert task.exception() is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_worker_manages_its_own_database(self, service: LedgerService, mocker: Any) -> None:
        mocker.patch(
            "marketplace_ledger.workers.reconciliation_worker.LedgerService.from_settings",
            return_value=service,
        )
        init_db = mocker.patch(
            "marketplace_ledger.workers.reconciliation_worker.init_db", new_callable=mocker.AsyncMock
        )
        close_db = mocker.patch(
            "marketplace_ledger.workers.reconciliation_worker.close_db", new_callable=mocker.AsyncMock
        )
        stop = asyncio.Event()

        task = asyncio.create_task(
            start_reconciliation_worker(interval_seconds=3600, stop_event=stop)
        )
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)

        init_db.assert_awaited_once()
        close_db.assert_awaited_once()
