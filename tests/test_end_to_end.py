"""
End-to-end scenario through the LedgerService facade.
"""
from decimal import Decimal
from typing import Any, Callable

import pytest

from marketplace_ledger.core.errors import Conflict, LedgerError
from marketplace_ledger.core.models import (
    Order,
    OrderStatus,
    Shop,
    ShopStatus,
    TransactionStatus,
)
from marketplace_ledger.core.service import LedgerService
from marketplace_ledger.database.memory import InMemoryStorage
from marketplace_ledger.integrations.gateway import GatewayStatus


class TestMarketplaceFlow:
    """Payment, withdrawal and refund in one marketplace."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_withdrawal_refund(
        self,
        service: LedgerService,
        storage: InMemoryStorage,
        gateway: Any,
        sign: Callable[..., str],
        make_event: Callable[..., bytes],
    ) -> None:
        buyer_shop = storage.add_shop(Shop(owner_id="merchant-9", status=ShopStatus.APPROVED))
        seller = storage.add_shop(
            Shop(owner_id="seller-1", status=ShopStatus.APPROVED, balance=Decimal("3000"))
        )
        order = storage.add_order(
            Order(
                user_id="buyer-1",
                shop_id=buyer_shop.id,
                order_number="5001",
                total_amount=Decimal("5000"),
                payment_method="card",
            )
        )

        # Buyer pays 5000
        intent = await service.create_payment(
            order.id, Decimal("5000"), "RUB", "https://shop.test/return", "buyer-1"
        )
        gateway.set_status(intent.payment_id, GatewayStatus.SUCCEEDED)
        body = make_event(intent.payment_id)
        ack = await service.confirm_webhook(body, sign(body))

        assert ack.status == "completed"
        async with storage.atomic() as uow:
            payment = await uow.transactions.get(intent.transaction_id)
            stored_order = await uow.orders.get(order.id)
            credited = await uow.shops.get(buyer_shop.id)
        assert payment.status is TransactionStatus.COMPLETED
        assert stored_order.status is OrderStatus.PROCESSING
        assert credited.balance == Decimal("5000.00")

        status = await service.get_payment_status(intent.payment_id)
        assert status.status == GatewayStatus.SUCCEEDED
        assert status.amount == Decimal("5000.00")

        # Seller withdraws 2000 of 3000
        withdrawal = await service.request_withdrawal(
            "seller-1", Decimal("2000"), "bank_card", {"card_number": "2200 0000 0000 0001"}
        )
        assert withdrawal.fee == Decimal("50.00")
        assert withdrawal.net_amount == Decimal("1950.00")
        async with storage.atomic() as uow:
            assert (await uow.shops.get(seller.id)).balance == Decimal("1000.00")

        # Order is delivered, then refunded by an admin
        async with storage.atomic() as uow:
            await uow.orders.update_status(order.id, OrderStatus.DELIVERED)

        refund = await service.process_refund(order.id, "Item not as described", admin_id="admin-1")
        assert refund.net_amount == Decimal("-5000.00")
        async with storage.atomic() as uow:
            assert (await uow.orders.get(order.id)).status is OrderStatus.REFUNDED

        with pytest.raises(Conflict) as exc_info:
            await service.process_refund(order.id, "Again", admin_id="admin-1")
        assert exc_info.value.to_dict()["error"] == "conflict"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_errors_carry_stable_codes(self, service: LedgerService) -> None:
        with pytest.raises(LedgerError) as exc_info:
            await service.request_withdrawal("nobody", Decimal("2000"), "bank_card", {"x": "y"})

        payload = exc_info.value.to_dict()
        assert payload["error"] == "forbidden"
        assert payload["details"] == {"user_id": "nobody"}

    @pytest.mark.unit
    def test_service_uses_configured_policy(self, service: LedgerService) -> None:
        assert service.withdrawals.min_amount == Decimal("1000.00")
        assert service.withdrawals.methods == frozenset({"bank_card", "bank_account", "yoomoney"})
        assert service.payments.supported_currencies == frozenset({"RUB", "USD"})
