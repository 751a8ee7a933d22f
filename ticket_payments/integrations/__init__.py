"""External payment provider integrations."""
from .mpesa_client import MpesaClient, TokenCache
from .provider import (
    CircuitBreaker,
    InitiationResult,
    ProviderClient,
    QueryOutcome,
    StatusQueryResult,
)
from .stripe_client import StripeCheckoutClient
from .webhook_handler import StripeWebhookGateway, WebhookError

__all__ = [
    "CircuitBreaker",
    "InitiationResult",
    "MpesaClient",
    "ProviderClient",
    "QueryOutcome",
    "StatusQueryResult",
    "StripeCheckoutClient",
    "StripeWebhookGateway",
    "TokenCache",
    "WebhookError",
]
