"""
Error taxonomy for payment processing.

Every error carries a stable ``error_code`` for clients and the HTTP status
the API layer answers with:

- ValidationError      400  malformed caller input, never retried
- ProviderRejected     400  provider declined the request synchronously
- ProviderUnreachable  503  network failure or timeout, outcome unknown
- DuplicateKey         409  correlation id already stored
- NotFound             404  unknown correlation id
- Unauthorized         403  callback authenticity check failed
- StoreError           500  storage write failed
"""
from typing import Any, Dict, List, Optional


class PaymentError(Exception):
    """Base exception for payment processing errors."""

    error_code = "payment_error"
    http_status = 500

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses."""
        return {
            "success": False,
            "error": self.error_code,
            "message": self.message,
        }


class ValidationError(PaymentError):
    """Raised when caller input is missing or malformed."""

    error_code = "validation_error"
    http_status = 400

    def __init__(self, message: str, details: Optional[List[str]] = None, **context: Any):
        super().__init__(message, **context)
        self.details = details or []

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        if self.details:
            payload["details"] = self.details
        return payload


class ProviderError(PaymentError):
    """Base class for failures talking to a payment provider."""

    error_code = "provider_error"
    http_status = 502


class ProviderRejected(ProviderError):
    """Provider declined the request (bad credentials, payer, amount bounds)."""

    error_code = "provider_rejected"
    http_status = 400


class ProviderUnreachable(ProviderError):
    """
    Provider could not be reached or did not answer in time.

    This is never a verdict on the payment: callers treat it as
    "status unknown, retry later".
    """

    error_code = "provider_unreachable"
    http_status = 503


class DuplicateKey(PaymentError):
    """A transaction with the same correlation id already exists."""

    error_code = "duplicate_key"
    http_status = 409


class NotFound(PaymentError):
    """No transaction matches the given correlation id."""

    error_code = "not_found"
    http_status = 404


class Unauthorized(PaymentError):
    """Inbound callback failed its authenticity check."""

    error_code = "unauthorized"
    http_status = 403

    def __init__(self, message: str, http_status: int = 403, **context: Any):
        super().__init__(message, **context)
        self.http_status = http_status


class StoreError(PaymentError):
    """Storage layer failed to persist a change."""

    error_code = "store_error"
    http_status = 500
