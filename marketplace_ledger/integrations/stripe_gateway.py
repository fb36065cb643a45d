"""
Stripe gateway with retry logic and error classification.

Payments are Stripe Checkout Sessions: the session id is the gateway
payment id and the session URL is where the buyer is redirected.

Implements:
- Exponential backoff for transient errors (same idempotency key)
- Circuit breaker pattern
- Error classification into retryable / permanent
"""
import asyncio
import threading
import time
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, Optional, TypeVar

import stripe
import structlog

from marketplace_ledger.config import Settings, get_settings
from marketplace_ledger.core.errors import GatewayError
from marketplace_ledger.core.money import from_minor_units, to_minor_units
from marketplace_ledger.integrations.gateway import (
    GatewayPayment,
    GatewayPaymentPage,
    GatewayStatus,
    call_with_retry,
)
from marketplace_ledger.monitoring import metrics

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class StripeErrorType(Enum):
    """Classification of Stripe errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with longer backoff


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Prevents cascading failures by temporarily stopping requests
    when error rate exceeds threshold.

    Calls arrive from worker threads, so every state change happens under
    ``_lock``; the guarded call itself runs outside it.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        """
        Initialize circuit breaker.

        Args:
            failure_threshold: Number of failures before opening circuit
            timeout: Seconds before attempting to close circuit
            success_threshold: Successful calls needed to close circuit
        """
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open
        self._lock = threading.Lock()

    def call(self, func: Callable[[], T]) -> T:
        """
        Execute function with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open (retryable, nothing was sent)
        """
        self._admit()
        try:
            result = func()
        except stripe.StripeError as e:
            if self._counts_as_failure(e):
                self.on_failure()
            raise
        self.on_success()
        return result

    def _admit(self) -> None:
        with self._lock:
            if self.state != "open":
                return
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self.state = "half_open"
                self.success_count = 0
                metrics.set_circuit_breaker_state(self.state)
                logger.info("circuit_breaker_half_open")
                return
        raise GatewayError("Circuit breaker is open", retryable=True)

    @staticmethod
    def _counts_as_failure(error: stripe.StripeError) -> bool:
        # A declined card or bad request says nothing about gateway health.
        return not isinstance(error, (stripe.CardError, stripe.InvalidRequestError))

    def on_success(self) -> None:
        """Record successful call."""
        with self._lock:
            self.failure_count = 0
            if self.state == "half_open":
                self.success_count += 1
                if self.success_count >= self.success_threshold:
                    self.state = "closed"
                    metrics.set_circuit_breaker_state(self.state)
                    logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        with self._lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            if self.failure_count >= self.failure_threshold and self.state != "open":
                self.state = "open"
                metrics.set_circuit_breaker_state(self.state)
                logger.warning(
                    "circuit_breaker_opened",
                    failure_count=self.failure_count,
                )


def _timestamp(value: Optional[int]) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def session_status(session: Any) -> str:
    """Map a Checkout Session to a normalized gateway status."""
    if session.get("payment_status") == "paid":
        return GatewayStatus.SUCCEEDED
    if session.get("status") == "expired":
        return GatewayStatus.CANCELED
    return GatewayStatus.PENDING


def session_to_payment(session: Any) -> GatewayPayment:
    status = session_status(session)
    return GatewayPayment(
        id=session["id"],
        status=status,
        amount=from_minor_units(session.get("amount_total") or 0),
        currency=(session.get("currency") or "").upper(),
        confirmation_url=session.get("url"),
        created_at=_timestamp(session.get("created")),
        captured_at=_timestamp(session.get("created")) if status == GatewayStatus.SUCCEEDED else None,
        metadata=dict(session.get("metadata") or {}),
    )


class StripeGateway:
    """
    ``PaymentGateway`` implementation on Stripe Checkout.

    Features:
    - Automatic retry with exponential backoff
    - Circuit breaker pattern
    - Idempotent payment creation
    - Comprehensive error classification
    """

    name = "stripe"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry_min_wait: float = 1.0,
    ) -> None:
        """
        Initialize Stripe gateway.

        Args:
            settings: Optional settings (defaults to environment)
            circuit_breaker: Optional circuit breaker instance
            retry_min_wait: First retry backoff interval (seconds)
        """
        self.settings = settings or get_settings()
        stripe.api_key = self.settings.stripe_secret_key
        stripe.api_version = self.settings.stripe_api_version
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self.retry_min_wait = retry_min_wait

        logger.info(
            "stripe_gateway_initialized",
            api_version=self.settings.stripe_api_version,
            test_mode=self.settings.is_test_mode,
        )

    @staticmethod
    def _classify_error(error: stripe.StripeError) -> StripeErrorType:
        """
        Classify Stripe error for retry logic.

        Args:
            error: Stripe error

        Returns:
            StripeErrorType: Error classification
        """
        if isinstance(error, stripe.RateLimitError):
            return StripeErrorType.RATE_LIMIT
        elif isinstance(error, (stripe.APIConnectionError, stripe.APIError)):
            return StripeErrorType.TRANSIENT
        elif isinstance(
            error,
            (
                stripe.CardError,
                stripe.InvalidRequestError,
                stripe.AuthenticationError,
                stripe.PermissionError,
                stripe.IdempotencyError,
            ),
        ):
            return StripeErrorType.PERMANENT
        else:
            # Unknown errors are treated as transient
            return StripeErrorType.TRANSIENT

    def _to_gateway_error(self, operation: str, error: stripe.StripeError) -> GatewayError:
        error_type = self._classify_error(error)
        metrics.record_gateway_error(error_type.value)

        logger.error(
            "stripe_api_error",
            operation=operation,
            error_type=error_type.value,
            error_code=getattr(error, "code", None),
            error_message=str(error),
        )

        return GatewayError(
            f"Stripe {operation} failed: {error}",
            retryable=error_type is not StripeErrorType.PERMANENT,
            same_key_safe=True,
            details={"error_type": error_type.value, "error_code": getattr(error, "code", None)},
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """Run one blocking Stripe call off the event loop, with breaker and metrics."""
        start = time.monotonic()
        try:
            result = await asyncio.to_thread(self.circuit_breaker.call, func)
        except stripe.StripeError as e:
            metrics.record_gateway_call(operation, "error", time.monotonic() - start)
            raise self._to_gateway_error(operation, e) from e
        metrics.record_gateway_call(operation, "success", time.monotonic() - start)
        return result

    async def _with_retry(self, operation: str, func: Callable[[], T]) -> T:
        return await call_with_retry(
            operation,
            lambda: self._call(operation, func),
            attempts=self.settings.gateway_retry_attempts,
            max_wait=self.settings.gateway_retry_max_wait,
            min_wait=self.retry_min_wait,
        )

    async def create_payment(
        self,
        amount: Decimal,
        currency: str,
        return_url: str,
        idempotency_key: str,
        description: str = "",
        metadata: Optional[Dict[str, str]] = None,
    ) -> GatewayPayment:
        """
        Create a Checkout Session with idempotency.

        Args:
            amount: Gross amount
            currency: Currency code (e.g., 'RUB')
            return_url: Where the buyer lands after paying
            idempotency_key: Sent unchanged on every retry
            description: Line item name shown to the buyer
            metadata: Optional metadata (order and transaction ids)

        Returns:
            GatewayPayment: Created payment with its confirmation URL

        Raises:
            GatewayError: If creation fails
        """
        logger.info(
            "creating_checkout_session",
            amount=amount,
            currency=currency,
            idempotency_key=idempotency_key,
        )

        def _create() -> Any:
            return stripe.checkout.Session.create(
                mode="payment",
                line_items=[
                    {
                        "price_data": {
                            "currency": currency.lower(),
                            "unit_amount": to_minor_units(amount),
                            "product_data": {"name": description or "Order payment"},
                        },
                        "quantity": 1,
                    }
                ],
                success_url=return_url,
                cancel_url=return_url,
                metadata=metadata or {},
                payment_intent_data={"metadata": metadata or {}},
                idempotency_key=idempotency_key,
            )

        session = await self._with_retry("create_payment", _create)
        payment = session_to_payment(session)

        logger.info(
            "checkout_session_created",
            payment_id=payment.id,
            status=payment.status,
        )
        return payment

    async def get_payment(self, payment_id: str) -> GatewayPayment:
        """
        Retrieve the authoritative state of a payment.

        Raises:
            GatewayError: If retrieval fails
        """
        logger.info("retrieving_checkout_session", payment_id=payment_id)
        session = await self._with_retry(
            "get_payment", lambda: stripe.checkout.Session.retrieve(payment_id)
        )
        return session_to_payment(session)

    async def list_payments(
        self,
        created_gte: Optional[datetime] = None,
        created_lte: Optional[datetime] = None,
        limit: int = 100,
        starting_after: Optional[str] = None,
    ) -> GatewayPaymentPage:
        """
        List Checkout Sessions with pagination.

        Args:
            created_gte: Filter by creation time (greater than or equal)
            created_lte: Filter by creation time (less than or equal)
            limit: Number of items to return
            starting_after: Cursor for pagination

        Returns:
            GatewayPaymentPage: One page of payments
        """
        logger.info("listing_checkout_sessions", limit=limit, starting_after=starting_after)

        def _list() -> Any:
            kwargs: Dict[str, Any] = {"limit": limit}
            if starting_after:
                kwargs["starting_after"] = starting_after
            if created_gte or created_lte:
                kwargs["created"] = {}
                if created_gte:
                    kwargs["created"]["gte"] = int(created_gte.timestamp())
                if created_lte:
                    kwargs["created"]["lte"] = int(created_lte.timestamp())
            return stripe.checkout.Session.list(**kwargs)

        result = await self._with_retry("list_payments", _list)
        return GatewayPaymentPage(
            items=[session_to_payment(session) for session in result["data"]],
            has_more=bool(result.get("has_more")),
        )
