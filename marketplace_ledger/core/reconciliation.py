"""
Reconciliation engine for comparing gateway payments with the ledger.

Runs periodically to detect and repair:
- Gateway payments with no ledger entry (a persist failure after creation)
- Succeeded payments whose webhook never arrived
- Amount mismatches
- Status mismatches on closed entries
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field

from marketplace_ledger.core.completion import SettlementOutcome, apply_gateway_status
from marketplace_ledger.core.errors import Conflict
from marketplace_ledger.core.fees import FeeCalculator
from marketplace_ledger.core.ledger import TransactionLedger
from marketplace_ledger.core.models import Transaction, TransactionStatus, TransactionType, new_id
from marketplace_ledger.database.base import Storage, UnitOfWork
from marketplace_ledger.integrations.gateway import GatewayPayment, GatewayStatus, PaymentGateway
from marketplace_ledger.monitoring import metrics

logger = structlog.get_logger(__name__)


class Discrepancy(BaseModel):
    type: str
    payment_id: str
    transaction_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)


class ReconciliationReport(BaseModel):
    """Outcome of one reconciliation pass."""

    since: datetime
    until: datetime
    checked: int = 0
    repaired: int = 0
    completed: int = 0
    failed: int = 0
    discrepancies: List[Discrepancy] = Field(default_factory=list)

    def add(self, kind: str, payment: GatewayPayment, tx_id: Optional[str] = None, **details: Any) -> None:
        self.discrepancies.append(
            Discrepancy(type=kind, payment_id=payment.id, transaction_id=tx_id, details=details)
        )

    def count(self, kind: str) -> int:
        return sum(1 for d in self.discrepancies if d.type == kind)

    @property
    def is_clean(self) -> bool:
        return not self.discrepancies


class ReconciliationEngine:
    """
    Walks gateway payments in a time window and settles the ledger to match.

    Repairs go through the same completion path the webhook uses, so a
    payment reconciled here and later redelivered by webhook is credited
    once.

    Args:
        storage: Ledger storage
        gateway: Payment gateway
        fee_calculator: Fee policy for repaired entries
        page_size: Gateway listing page size
    """

    def __init__(
        self,
        storage: Storage,
        gateway: PaymentGateway,
        fee_calculator: Optional[FeeCalculator] = None,
        page_size: int = 100,
    ):
        self.storage = storage
        self.gateway = gateway
        self.fee_calculator = fee_calculator or FeeCalculator()
        self.page_size = page_size
        logger.info("reconciliation_engine_initialized")

    async def reconcile(self, since: datetime, until: datetime) -> ReconciliationReport:
        """
        Reconcile every gateway payment created in ``[since, until]``.

        Args:
            since: Start of window
            until: End of window

        Returns:
            ReconciliationReport: Counts and discrepancies found

        Raises:
            GatewayError: If the gateway cannot be listed
        """
        report = ReconciliationReport(since=since, until=until)
        logger.info("reconciliation_started", since=since.isoformat(), until=until.isoformat())

        starting_after: Optional[str] = None
        while True:
            page = await self.gateway.list_payments(
                created_gte=since,
                created_lte=until,
                limit=self.page_size,
                starting_after=starting_after,
            )
            for payment in page.items:
                report.checked += 1
                try:
                    await self._reconcile_payment(payment, report)
                except Conflict as e:
                    # Another writer recorded it between our read and insert.
                    logger.warning(
                        "reconciliation_repair_conflict",
                        payment_id=payment.id,
                        error=e.message,
                    )
                    report.add("repair_conflict", payment)

            if not page.has_more or not page.items:
                break
            starting_after = page.items[-1].id

        metrics.set_reconciliation_metrics(len(report.discrepancies), report.repaired)

        log = logger.info if report.is_clean else logger.warning
        log(
            "reconciliation_completed",
            checked=report.checked,
            repaired=report.repaired,
            completed=report.completed,
            failed=report.failed,
            discrepancies_count=len(report.discrepancies),
        )
        return report

    async def _reconcile_payment(self, payment: GatewayPayment, report: ReconciliationReport) -> None:
        missing = False
        outcome = None
        async with self.storage.atomic() as uow:
            tx = await TransactionLedger(uow.transactions).find_by_external_id(payment.id)
            if tx is None:
                missing = True
                tx = await self._repair(uow, payment, report)
            if tx is not None:
                outcome = await apply_gateway_status(uow, tx, payment, actor="reconciliation")

        # Only reached once the repair has committed.
        if missing:
            report.add("missing_in_ledger", payment, amount=str(payment.amount))
            if tx is None:
                return
            report.repaired += 1

        if outcome is SettlementOutcome.COMPLETED:
            report.completed += 1
        elif outcome is SettlementOutcome.FAILED:
            report.failed += 1
        elif outcome is SettlementOutcome.AMOUNT_MISMATCH:
            report.add(
                "amount_mismatch",
                payment,
                tx.id,
                ledger_amount=str(tx.amount),
                gateway_amount=str(payment.amount),
            )
        elif outcome is SettlementOutcome.ALREADY_TERMINAL and payment.status == GatewayStatus.SUCCEEDED:
            report.add("status_mismatch", payment, tx.id, ledger_status=tx.status.value)
        elif outcome is SettlementOutcome.DUPLICATE and payment.status == GatewayStatus.CANCELED:
            report.add("status_mismatch", payment, tx.id, ledger_status=tx.status.value)

    async def _repair(
        self, uow: UnitOfWork, payment: GatewayPayment, report: ReconciliationReport
    ) -> Optional[Transaction]:
        """Insert the pending entry a failed persist left out."""
        order_id = payment.metadata.get("order_id")
        order = await uow.orders.get(order_id) if order_id else None
        if order is None:
            report.add("unknown_order", payment, order_id=order_id)
            logger.error("reconciliation_unknown_order", payment_id=payment.id, order_id=order_id)
            return None

        if payment.amount != order.total_amount:
            report.add(
                "amount_mismatch",
                payment,
                order_total=str(order.total_amount),
                gateway_amount=str(payment.amount),
            )
            logger.error(
                "reconciliation_order_amount_mismatch",
                payment_id=payment.id,
                order_id=order.id,
                order_total=order.total_amount,
                gateway_amount=payment.amount,
            )
            return None

        amount = payment.amount
        breakdown = self.fee_calculator.compute_fee(TransactionType.PAYMENT, amount)
        tx = Transaction(
            id=payment.metadata.get("transaction_id") or new_id(),
            user_id=payment.metadata.get("user_id") or order.user_id,
            shop_id=order.shop_id,
            order_id=order.id,
            type=TransactionType.PAYMENT,
            amount=amount,
            fee=breakdown.fee,
            net_amount=breakdown.net_amount,
            status=TransactionStatus.PENDING,
            payment_method=self.gateway.name,
            external_id=payment.id,
            description=f"Payment for order #{order.order_number or order.id}",
            metadata={"repaired_by": "reconciliation"},
        )
        tx = await TransactionLedger(uow.transactions).record(tx, actor="reconciliation")
        await uow.orders.set_payment_reference(order.id, payment.id)

        logger.warning(
            "reconciliation_repaired_missing_transaction",
            payment_id=payment.id,
            transaction_id=tx.id,
            order_id=order.id,
        )
        return tx
