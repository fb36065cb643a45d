"""
Pytest configuration and fixtures.
"""
import hashlib
import hmac
import itertools
import json
import time
from decimal import Decimal
from typing import Any, AsyncGenerator, Callable, Dict, List, Optional

import pytest
import pytest_asyncio

from marketplace_ledger.config import Settings
from marketplace_ledger.core.errors import GatewayError
from marketplace_ledger.core.models import Order, Shop, ShopStatus, utcnow
from marketplace_ledger.core.service import LedgerService
from marketplace_ledger.database.connection import create_engine_from_url, make_session_factory
from marketplace_ledger.database.memory import InMemoryStorage
from marketplace_ledger.database.models import Base
from marketplace_ledger.database.sql import SqlStorage
from marketplace_ledger.integrations.gateway import (
    GatewayPayment,
    GatewayPaymentPage,
    GatewayStatus,
)

WEBHOOK_SECRET = "whsec_test_fake_secret"


class FakeGateway:
    """
    In-process payment gateway.

    Payments live in a dict; tests flip their status with ``set_status``.
    ``fail_create`` / ``fail_get`` make the next calls raise.
    """

    name = "fake"

    def __init__(self) -> None:
        self.payments: Dict[str, GatewayPayment] = {}
        self.idempotency_keys: List[str] = []
        self.create_calls = 0
        self.get_calls = 0
        self.fail_create: Optional[GatewayError] = None
        self.fail_get: Optional[GatewayError] = None
        self._ids = itertools.count(1)

    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        return_url: str,
        idempotency_key: str,
        description: str = "",
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayPayment:
        self.create_calls += 1
        self.idempotency_keys.append(idempotency_key)
        if self.fail_create is not None:
            raise self.fail_create
        payment_id = f"pay_{next(self._ids):04d}"
        payment = GatewayPayment(
            id=payment_id,
            status=GatewayStatus.PENDING,
            amount=amount,
            currency=currency,
            confirmation_url=f"https://gateway.test/checkout/{payment_id}",
            created_at=utcnow(),
            metadata=dict(metadata or {}),
        )
        self.payments[payment_id] = payment
        return payment

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        self.get_calls += 1
        if self.fail_get is not None:
            raise self.fail_get
        if payment_id not in self.payments:
            raise GatewayError(f"No such payment: {payment_id}")
        return self.payments[payment_id].model_copy(deep=True)

    async def list_payments(
        self,
        created_gte: Any = None,
        created_lte: Any = None,
        limit: int = 100,
        starting_after: Optional[str] = None,
    ) -> GatewayPaymentPage:
        items = sorted(self.payments.values(), key=lambda p: p.id)
        if starting_after is not None:
            items = [p for p in items if p.id > starting_after]
        page = items[:limit]
        return GatewayPaymentPage(
            items=[p.model_copy(deep=True) for p in page],
            has_more=len(items) > limit,
        )

    def set_status(self, payment_id: str, status: str, amount: Optional[Decimal] = None) -> None:
        update: Dict[str, Any] = {"status": status}
        if status == GatewayStatus.SUCCEEDED:
            update["captured_at"] = utcnow()
        if amount is not None:
            update["amount"] = amount
        self.payments[payment_id] = self.payments[payment_id].model_copy(update=update)

    def add_payment(self, payment: GatewayPayment) -> GatewayPayment:
        """Register a payment the ledger never heard about."""
        self.payments[payment.id] = payment
        return payment


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    """Build a ``Stripe-Signature`` header for ``payload``."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode("utf-8") + payload
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def event_body(payment_id: str, event_type: str = "checkout.session.completed") -> bytes:
    return json.dumps(
        {"id": "evt_test_1", "type": event_type, "data": {"object": {"id": payment_id}}}
    ).encode("utf-8")


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret=WEBHOOK_SECRET,
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url=None,
        app_name="marketplace-ledger-test",
        app_env="test",
        log_level="DEBUG",
        supported_currencies="RUB,USD",
        withdrawal_fee_rate=Decimal("0.02"),
        withdrawal_min_fee=Decimal("50"),
        min_withdrawal_amount=Decimal("1000"),
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def sign() -> Callable[..., str]:
    return sign_payload


@pytest.fixture
def make_event() -> Callable[..., bytes]:
    return event_body


@pytest.fixture
def seller_shop(storage: InMemoryStorage) -> Shop:
    """Approved shop with an empty balance."""
    return storage.add_shop(
        Shop(owner_id="seller-1", name="Test Shop", status=ShopStatus.APPROVED)
    )


@pytest.fixture
def pending_order(storage: InMemoryStorage, seller_shop: Shop) -> Order:
    """Buyer's unpaid 5000 RUB order from the seller's shop."""
    return storage.add_order(
        Order(
            user_id="buyer-1",
            shop_id=seller_shop.id,
            order_number="1001",
            total_amount=Decimal("5000"),
            currency="RUB",
            payment_method="card",
        )
    )


@pytest.fixture
def service(
    storage: InMemoryStorage, gateway: FakeGateway, test_settings: Settings
) -> LedgerService:
    return LedgerService(storage, gateway, test_settings)


@pytest_asyncio.fixture
async def sql_storage(tmp_path: Any) -> AsyncGenerator[SqlStorage, Any]:
    """SQL storage on a throwaway SQLite database file."""
    engine = create_engine_from_url(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield SqlStorage(make_session_factory(engine))

    await engine.dispose()
