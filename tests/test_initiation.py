"""
Unit tests for payment initiation on both rails and free registration.
"""
import re
from typing import Any, Callable, Dict
from unittest.mock import AsyncMock

import pytest

from ticket_payments.config import Settings
from ticket_payments.core.errors import ProviderRejected, ProviderUnreachable, ValidationError
from ticket_payments.core.initiation import (
    PaymentInitiator,
    free_registration_id,
    validate_customer,
)
from ticket_payments.core.store import TransactionStore
from ticket_payments.integrations.provider import InitiationResult

CUSTOMER: Dict[str, Any] = {
    "firstName": "Jane",
    "lastName": "Doe",
    "email": " Jane@Example.com ",
    "phone": "0712345678",
    "country": "Kenya",
}


@pytest.fixture
def initiator(
    store: TransactionStore,
    mpesa_provider: Any,
    stripe_provider: Any,
    notifier: AsyncMock,
    test_settings: Settings,
) -> PaymentInitiator:
    mpesa_provider.initiation_result = InitiationResult(
        accepted=True,
        correlation_ids={
            "checkout_request_id": "ws_CO_191220191020363925",
            "merchant_request_id": "29115-34620561-1",
        },
        human_message="Success. Request accepted for processing",
    )
    stripe_provider.initiation_result = InitiationResult(
        accepted=True,
        correlation_ids={"session_id": "cs_test_a1b2c3"},
        human_message="Checkout session created",
        raw={"client_secret": "secret", "amount_total": 5000, "currency": "usd"},
    )
    return PaymentInitiator(store, mpesa_provider, stripe_provider, notifier, test_settings)


class TestValidateCustomer:
    """Customer identity block checks."""

    @pytest.mark.unit
    def test_normalises_email(self) -> None:
        assert validate_customer(CUSTOMER)["email"] == "jane@example.com"

    @pytest.mark.unit
    def test_lists_every_missing_field(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            validate_customer({"firstName": "Jane", "email": "jane@example.com"})

        assert exc_info.value.details == [
            "customerInfo.lastName",
            "customerInfo.phone",
            "customerInfo.country",
        ]

    @pytest.mark.unit
    def test_bad_email(self) -> None:
        with pytest.raises(ValidationError, match="Invalid email"):
            validate_customer({**CUSTOMER, "email": "not-an-email"})

    @pytest.mark.unit
    def test_free_registration_id_format(self) -> None:
        registration_id = free_registration_id(clock=lambda: 1700000000.123)

        assert re.fullmatch(r"free_1700000000123_[a-z0-9]{9}", registration_id)


class TestInitiateMpesa:
    """STK Push initiation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_records_pending_transaction(
        self, initiator: PaymentInitiator, mpesa_provider: Any, store: TransactionStore
    ) -> None:
        initiated = await initiator.initiate_mpesa(
            "0712 345 678", 99.4, CUSTOMER, ticket_id="early-bird", ticket_label="Early Bird"
        )

        assert mpesa_provider.initiations[0]["payer"] == "254712345678"
        assert mpesa_provider.initiations[0]["reference"] == "early-bird"

        stored = await store.find_by_correlation_id("ws_CO_191220191020363925")
        assert stored.id == initiated.transaction.id
        assert stored.status == "pending"
        assert stored.amount == 100
        assert stored.currency == "KES"
        assert stored.merchant_request_id == "29115-34620561-1"
        assert stored.customer_email == "jane@example.com"
        assert stored.description == "Payment for Early Bird"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, 0.5, 150001, "abc", None])
    async def test_amount_bounds(
        self, initiator: PaymentInitiator, mpesa_provider: Any, amount: Any
    ) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await initiator.initiate_mpesa("0712345678", amount, CUSTOMER)

        assert exc_info.value.details == ["amount"]
        assert mpesa_provider.initiations == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_phone_never_reaches_provider(
        self, initiator: PaymentInitiator, mpesa_provider: Any
    ) -> None:
        with pytest.raises(ValidationError, match="phone number"):
            await initiator.initiate_mpesa("12345", 100, CUSTOMER)

        assert mpesa_provider.initiations == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_phone_not_required_in_customer_block(
        self, initiator: PaymentInitiator
    ) -> None:
        customer = {key: value for key, value in CUSTOMER.items() if key != "phone"}

        initiated = await initiator.initiate_mpesa("0712345678", 100, customer)

        assert initiated.transaction.phone_number == "254712345678"

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error", [ProviderRejected("Invalid Access Token"), ProviderUnreachable("timed out")]
    )
    async def test_provider_error_stores_nothing(
        self,
        initiator: PaymentInitiator,
        mpesa_provider: Any,
        store: TransactionStore,
        error: Exception,
    ) -> None:
        mpesa_provider.error = error

        with pytest.raises(type(error)):
            await initiator.initiate_mpesa("0712345678", 100, CUSTOMER)

        assert (await store.list_transactions())[1] == 0


class TestCreateCheckoutSession:
    """Stripe checkout session initiation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_records_pending_session(
        self, initiator: PaymentInitiator, stripe_provider: Any, store: TransactionStore
    ) -> None:
        initiated = await initiator.create_checkout_session(
            "price_early_bird", CUSTOMER, idempotency_key="idem-1", ticket_label="Early Bird"
        )

        assert initiated.result is not None
        assert initiated.result.raw["client_secret"] == "secret"
        call = stripe_provider.initiations[0]
        assert call["payer"] == "jane@example.com"
        assert call["idempotency_key"] == "idem-1"
        assert call["discounts"] == []

        stored = await store.find_by_correlation_id("cs_test_a1b2c3")
        assert stored.provider == "stripe"
        assert stored.status == "pending"
        assert stored.amount == 5000
        assert stored.idempotency_key == "idem-1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_promo_code_resolved_first(
        self, initiator: PaymentInitiator, stripe_provider: Any
    ) -> None:
        stripe_provider.resolve_promo_code = AsyncMock(
            return_value=[{"promotion_code": "promo_1"}]
        )

        initiated = await initiator.create_checkout_session(
            "price_early_bird", CUSTOMER, promo_code="EARLY10"
        )

        stripe_provider.resolve_promo_code.assert_awaited_once_with("EARLY10")
        assert stripe_provider.initiations[0]["discounts"] == [{"promotion_code": "promo_1"}]
        assert initiated.transaction.promo_code == "EARLY10"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_promo_code(
        self, initiator: PaymentInitiator, stripe_provider: Any
    ) -> None:
        stripe_provider.resolve_promo_code = AsyncMock(
            side_effect=ValidationError("Invalid promo code", details=["promoCode"])
        )

        with pytest.raises(ValidationError, match="Invalid promo code"):
            await initiator.create_checkout_session("price_1", CUSTOMER, promo_code="NOPE")
        assert stripe_provider.initiations == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_ticket_id(self, initiator: PaymentInitiator) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await initiator.create_checkout_session("", CUSTOMER)

        assert exc_info.value.details == ["ticketId"]

    @pytest.mark.unit
    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_webhook_record_landed_first(
        self,
        initiator: PaymentInitiator,
        create_transaction: Callable[..., Any],
    ) -> None:
        existing = await create_transaction(
            provider="stripe", request_id="cs_test_a1b2c3", status="succeeded"
        )

        initiated = await initiator.create_checkout_session("price_early_bird", CUSTOMER)

        assert initiated.transaction.id == existing.id
        assert initiated.transaction.status == "succeeded"


class TestRegisterFree:
    """Zero-amount registration."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_created_succeeded(
        self, initiator: PaymentInitiator, notifier: AsyncMock, store: TransactionStore
    ) -> None:
        initiated = await initiator.register_free("free-pass", CUSTOMER, ticket_label="Free")

        stored = await store.find_by_correlation_id(initiated.transaction.request_id)
        assert stored.request_id.startswith("free_")
        assert stored.provider == "free"
        assert stored.status == "succeeded"
        assert stored.amount == 0
        assert stored.settled_at is not None
        notifier.send_confirmation.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_email_failure_does_not_fail_registration(
        self, initiator: PaymentInitiator, notifier: AsyncMock
    ) -> None:
        notifier.send_confirmation.side_effect = OSError("smtp down")

        initiated = await initiator.register_free("free-pass", CUSTOMER)

        assert initiated.transaction.status == "succeeded"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_customer_validated(self, initiator: PaymentInitiator, notifier: AsyncMock) -> None:
        with pytest.raises(ValidationError):
            await initiator.register_free("free-pass", {"email": "jane@example.com"})

        notifier.send_confirmation.assert_not_awaited()
