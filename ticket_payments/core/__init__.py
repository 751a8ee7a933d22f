"""Core payment lifecycle logic."""
from .errors import (
    DuplicateKey,
    NotFound,
    PaymentError,
    ProviderError,
    ProviderRejected,
    ProviderUnreachable,
    StoreError,
    Unauthorized,
    ValidationError,
)
from .state_machine import TransactionStatus, TransitionDecision, classify_transition

__all__ = [
    "DuplicateKey",
    "NotFound",
    "PaymentError",
    "ProviderError",
    "ProviderRejected",
    "ProviderUnreachable",
    "StoreError",
    "TransactionStatus",
    "TransitionDecision",
    "Unauthorized",
    "ValidationError",
    "classify_transition",
]
