"""
Payment gateway interface and retry policy.

The ledger consumes the gateway only through ``PaymentGateway``. Transient
failures are retried with exponential backoff, always reusing the caller's
idempotency key so the gateway deduplicates the retried request.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, TypeVar

import structlog
from pydantic import BaseModel, Field
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from marketplace_ledger.core.errors import GatewayError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class GatewayStatus:
    """Normalized gateway payment statuses."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


class GatewayPayment(BaseModel):
    """A payment as the gateway reports it."""

    id: str
    status: str
    amount: Decimal
    currency: str
    confirmation_url: Optional[str] = None
    created_at: Optional[datetime] = None
    captured_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class GatewayPaymentPage(BaseModel):
    items: List[GatewayPayment]
    has_more: bool = False


class PaymentGateway(Protocol):
    """What the ledger needs from a payment gateway."""

    name: str

    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        return_url: str,
        idempotency_key: str,
        description: str = "",
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayPayment:
        ...

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        ...

    async def list_payments(
        self,
        created_gte: Optional[datetime] = None,
        created_lte: Optional[datetime] = None,
        limit: int = 100,
        starting_after: Optional[str] = None,
    ) -> GatewayPaymentPage:
        ...


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, GatewayError) and error.retryable


async def call_with_retry(
    operation: str,
    func: Callable[[], Awaitable[T]],
    attempts: int = 5,
    max_wait: float = 16.0,
    min_wait: float = 1.0,
) -> T:
    """
    Run a gateway call, retrying retryable ``GatewayError`` failures.

    ``func`` must close over its own idempotency key so that every attempt
    sends the same key.

    Args:
        operation: Name used in logs
        func: Zero-argument coroutine factory
        attempts: Maximum attempts
        max_wait: Upper bound on backoff between attempts (seconds)
        min_wait: First backoff interval (seconds)

    Returns:
        The call's result

    Raises:
        GatewayError: Last failure once attempts are exhausted, or the
            first non-retryable failure
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        reraise=True,
    ):
        with attempt:
            if attempt.retry_state.attempt_number > 1:
                logger.info(
                    "gateway_call_retry",
                    operation=operation,
                    attempt=attempt.retry_state.attempt_number,
                )
            return await func()
    raise AssertionError("unreachable")  # pragma: no cover
