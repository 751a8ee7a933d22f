"""Service wiring and FastAPI dependency providers."""
from dataclasses import dataclass, field
from typing import Dict, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ticket_payments.config import Settings, get_settings
from ticket_payments.core.initiation import PaymentInitiator
from ticket_payments.core.rate_limit import SlidingWindowRateLimiter
from ticket_payments.core.reconciliation import ReconciliationEngine
from ticket_payments.core.store import TransactionStore
from ticket_payments.database.connection import get_session_factory
from ticket_payments.integrations.mpesa_client import MpesaClient
from ticket_payments.integrations.provider import ProviderClient
from ticket_payments.integrations.stripe_client import StripeCheckoutClient
from ticket_payments.integrations.webhook_handler import StripeWebhookGateway
from ticket_payments.monitoring.health import HealthCheck
from ticket_payments.notifications.email import EmailNotifier


@dataclass
class Services:
    """Process-scoped collaborators shared by every request."""

    settings: Settings
    store: TransactionStore
    engine: ReconciliationEngine
    initiator: PaymentInitiator
    gateway: StripeWebhookGateway
    rate_limiter: SlidingWindowRateLimiter
    health: HealthCheck
    providers: Dict[str, ProviderClient] = field(default_factory=dict)

    async def close(self) -> None:
        for provider in self.providers.values():
            await provider.close()


def build_services(
    settings: Optional[Settings] = None,
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    mpesa: Optional[MpesaClient] = None,
    stripe_client: Optional[StripeCheckoutClient] = None,
    notifier: Optional[EmailNotifier] = None,
    rate_limiter: Optional[SlidingWindowRateLimiter] = None,
) -> Services:
    """Wire store, providers, engine and boundary components together."""
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()

    mpesa = mpesa or MpesaClient(settings)
    stripe_client = stripe_client or StripeCheckoutClient(settings)
    notifier = notifier or EmailNotifier(settings)
    providers: Dict[str, ProviderClient] = {"mpesa": mpesa, "stripe": stripe_client}

    store = TransactionStore(session_factory)
    engine = ReconciliationEngine(store, providers, notifier)
    return Services(
        settings=settings,
        store=store,
        engine=engine,
        initiator=PaymentInitiator(store, mpesa, stripe_client, notifier, settings),
        gateway=StripeWebhookGateway(engine, settings),
        rate_limiter=rate_limiter
        or SlidingWindowRateLimiter(
            settings.rate_limit_per_minute, settings.rate_limit_window_seconds
        ),
        health=HealthCheck(session_factory, providers),
        providers=providers,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def get_store(request: Request) -> TransactionStore:
    return get_services(request).store


def get_engine(request: Request) -> ReconciliationEngine:
    return get_services(request).engine


def get_initiator(request: Request) -> PaymentInitiator:
    return get_services(request).initiator


def get_gateway(request: Request) -> StripeWebhookGateway:
    return get_services(request).gateway


def get_health_check(request: Request) -> HealthCheck:
    return get_services(request).health


def get_provider(request: Request, name: str) -> ProviderClient:
    return get_services(request).providers[name]
