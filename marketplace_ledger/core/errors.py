"""
Ledger error taxonomy.

Every failure surfaced by the ledger is a ``LedgerError`` subclass with a
stable ``code``. The HTTP layer maps codes to status codes and localized
messages; that mapping lives outside this package.
"""
from typing import Any, Dict, Optional


class LedgerError(Exception):
    """Base exception for ledger errors."""

    code = "ledger_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        """
        Initialize ledger error.

        Args:
            message: Human-readable message
            details: Optional structured context
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Tagged error payload for the calling layer."""
        return {"error": self.code, "message": self.message, "details": self.details}


class ValidationError(LedgerError):
    """Malformed or out-of-range input."""

    code = "validation_error"


class NotFound(LedgerError):
    """Order, shop or transaction does not exist."""

    code = "not_found"


class Forbidden(LedgerError):
    """Caller may not perform the operation."""

    code = "forbidden"


class InsufficientFunds(Forbidden):
    """A debit would make a shop balance negative."""

    code = "insufficient_funds"


class Conflict(LedgerError):
    """Operation clashes with current state (duplicate refund, processed order)."""

    code = "conflict"


class SignatureInvalid(LedgerError):
    """Webhook authentication failed."""

    code = "signature_invalid"


class GatewayError(LedgerError):
    """
    Upstream payment gateway failure.

    ``retryable`` tells the caller whether trying again can help at all;
    ``same_key_safe`` tells it the retry must reuse the original idempotency
    key (so the gateway deduplicates) rather than start a new payment.
    """

    code = "gateway_error"

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        same_key_safe: bool = True,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.retryable = retryable
        self.same_key_safe = same_key_safe

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["retryable"] = self.retryable
        payload["same_key_safe"] = self.same_key_safe
        return payload


class PartialPaymentError(GatewayError):
    """
    Gateway accepted the payment but the local record could not be written.

    Never retried automatically; the reconciliation pass repairs it.
    """

    code = "partial_payment"

    def __init__(self, message: str, external_id: str, details: Optional[Dict[str, Any]] = None):
        merged = {"external_id": external_id}
        merged.update(details or {})
        super().__init__(message, retryable=False, same_key_safe=False, details=merged)
        self.external_id = external_id
