"""
Pytest configuration and fixtures.
"""
import os

# Settings are read from the environment on first import
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_fake_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_fake_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("NOTIFICATIONS_ENABLED", "false")

from typing import Any, AsyncGenerator, Awaitable, Callable, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ticket_payments.config import Settings
from ticket_payments.core.reconciliation import ReconciliationEngine
from ticket_payments.core.state_machine import TransactionStatus
from ticket_payments.core.store import TransactionStore
from ticket_payments.database.connection import create_session_factory, init_db
from ticket_payments.database.models import Transaction
from ticket_payments.integrations.provider import (
    InitiationResult,
    ProviderClient,
    QueryOutcome,
    StatusQueryResult,
)


class FakeProvider(ProviderClient):
    """Scriptable provider: returns ``result`` or raises ``error`` from query_status."""

    def __init__(
        self,
        name: str,
        result: Optional[StatusQueryResult] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.name = name
        self.result = result or StatusQueryResult(QueryOutcome.PENDING, None, None)
        self.error = error
        self.queries: List[str] = []
        self.initiations: List[Dict[str, Any]] = []
        self.initiation_result: Optional[InitiationResult] = None
        self.line_item_price: Optional[str] = "price_early_bird"

    async def initiate(
        self, payer: str, amount: float, reference: str, description: str, **context: Any
    ) -> InitiationResult:
        self.initiations.append(
            {"payer": payer, "amount": amount, "reference": reference, **context}
        )
        if self.error:
            raise self.error
        assert self.initiation_result is not None
        return self.initiation_result

    async def query_status(self, correlation_id: str) -> StatusQueryResult:
        self.queries.append(correlation_id)
        if self.error:
            raise self.error
        return self.result

    async def first_line_item_price(self, session_id: str) -> Optional[str]:
        return self.line_item_price


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        stripe_secret_key="sk_test_fake_key_for_testing",
        stripe_webhook_secret="whsec_test_fake_secret",
        database_url="sqlite+aiosqlite://",
        mpesa_consumer_key="consumer_key",
        mpesa_consumer_secret="consumer_secret",
        mpesa_passkey="passkey",
        mpesa_business_short_code="174379",
        mpesa_callback_url="https://tickets.example.com/mpesa/callback",
        mpesa_env="sandbox",
        notifications_enabled=False,
        app_name="ticket-payments-test",
        app_env="test",
        log_level="DEBUG",
        rate_limit_per_minute=3,
        debug=True,
    )


@pytest_asyncio.fixture
async def db_engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """File-backed SQLite engine with the schema created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'payments_test.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(db_engine)


@pytest.fixture
def store(session_factory: async_sessionmaker[AsyncSession]) -> TransactionStore:
    return TransactionStore(session_factory)


@pytest.fixture
def mpesa_provider() -> FakeProvider:
    return FakeProvider("mpesa")


@pytest.fixture
def stripe_provider() -> FakeProvider:
    return FakeProvider("stripe")


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.send_confirmation.return_value = True
    return mock


@pytest.fixture
def recon(
    store: TransactionStore,
    mpesa_provider: FakeProvider,
    stripe_provider: FakeProvider,
    notifier: AsyncMock,
) -> ReconciliationEngine:
    return ReconciliationEngine(
        store, {"mpesa": mpesa_provider, "stripe": stripe_provider}, notifier
    )


@pytest.fixture
def create_transaction(store: TransactionStore) -> Callable[..., Awaitable[Transaction]]:
    """Factory for stored transactions; defaults to a pending M-Pesa STK Push."""

    async def _create(**overrides: Any) -> Transaction:
        provider = overrides.get("provider", "mpesa")
        values: Dict[str, Any] = {
            "provider": provider,
            "request_id": "ws_CO_191220191020363925",
            "merchant_request_id": "29115-34620561-1" if provider == "mpesa" else None,
            "amount": 100 if provider == "mpesa" else 5000,
            "currency": "KES" if provider == "mpesa" else "usd",
            "customer_email": "jane@example.com",
            "customer": {
                "firstName": "Jane",
                "lastName": "Doe",
                "email": "jane@example.com",
                "country": "Kenya",
            },
            "phone_number": "254712345678" if provider == "mpesa" else None,
            "ticket_id": "early-bird",
            "ticket_label": "Early Bird",
            "status": TransactionStatus.PENDING.value,
            "details": {},
        }
        values.update(overrides)
        return await store.create(Transaction(**values))

    return _create


@pytest.fixture
def mpesa_success_callback() -> Dict[str, Any]:
    """Daraja STK callback body for a completed payment."""
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": 100.0},
                        {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                        {"Name": "TransactionDate", "Value": 20191219102115},
                        {"Name": "PhoneNumber", "Value": 254712345678},
                    ]
                },
            }
        }
    }


@pytest.fixture
def checkout_session() -> Dict[str, Any]:
    """A paid ``checkout.session.completed`` payload object."""
    return {
        "id": "cs_test_a1b2c3",
        "object": "checkout.session",
        "status": "complete",
        "payment_status": "paid",
        "payment_intent": "pi_test_123",
        "amount_total": 5000,
        "currency": "usd",
        "customer_details": {"email": "Jane@Example.com"},
        "total_details": {"amount_discount": 1000},
        "metadata": {
            "customerInfo": (
                '{"firstName": "Jane", "lastName": "Doe", '
                '"email": "jane@example.com", "phone": "0712345678", "country": "Kenya"}'
            ),
            "promoCode": "EARLY10",
            "idempotencyKey": "idem-1",
            "ticketLabel": "Early Bird",
        },
    }