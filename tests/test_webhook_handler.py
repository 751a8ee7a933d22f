"""
Unit tests for the Stripe webhook gateway.
"""
import hashlib
import hmac
import json
import time
from typing import Any, Dict
from unittest.mock import AsyncMock, MagicMock

import pytest

from ticket_payments.config import Settings
from ticket_payments.core.errors import Unauthorized, ValidationError
from ticket_payments.integrations.webhook_handler import (
    StripeWebhookGateway,
    WebhookError,
    WebhookNotConfigured,
)

SECRET = "whsec_test_fake_secret"


def sign(payload: bytes, secret: str = SECRET, timestamp: int | None = None) -> str:
    """Build a Stripe-Signature header the way Stripe does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def event_payload(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> bytes:
    return json.dumps(
        {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "data": {"object": obj},
        }
    ).encode("utf-8")


@pytest.fixture
def engine() -> MagicMock:
    engine = MagicMock()
    engine.apply_checkout_session_completed = AsyncMock()
    engine.apply_checkout_session_expired = AsyncMock()
    engine.apply_payment_intent_succeeded = AsyncMock()
    engine.apply_payment_intent_failed = AsyncMock()
    engine.apply_charge_refunded = AsyncMock()
    return engine


@pytest.fixture
def gateway(engine: MagicMock, test_settings: Settings) -> StripeWebhookGateway:
    return StripeWebhookGateway(engine, test_settings)


class TestVerify:
    """Signature verification."""

    @pytest.mark.unit
    def test_valid_signature(self, gateway: StripeWebhookGateway) -> None:
        payload = event_payload("checkout.session.completed", {"id": "cs_test_1"})

        event = gateway.verify(payload, sign(payload))

        assert event["id"] == "evt_1"
        assert event["data"]["object"]["id"] == "cs_test_1"

    @pytest.mark.unit
    def test_wrong_secret_rejected(self, gateway: StripeWebhookGateway) -> None:
        payload = event_payload("checkout.session.completed", {"id": "cs_test_1"})

        with pytest.raises(Unauthorized) as exc_info:
            gateway.verify(payload, sign(payload, secret="whsec_other"))

        assert exc_info.value.http_status == 400
        assert "Webhook Error" in exc_info.value.message

    @pytest.mark.unit
    def test_tampered_body_rejected(self, gateway: StripeWebhookGateway) -> None:
        payload = event_payload("checkout.session.completed", {"id": "cs_test_1"})
        header = sign(payload)
        tampered = event_payload("checkout.session.completed", {"id": "cs_test_2"})

        with pytest.raises(Unauthorized):
            gateway.verify(tampered, header)

    @pytest.mark.unit
    def test_missing_signature(self, gateway: StripeWebhookGateway) -> None:
        with pytest.raises(Unauthorized, match="Missing Stripe-Signature"):
            gateway.verify(b"{}", None)

    @pytest.mark.unit
    def test_no_secret_configured(self, engine: MagicMock, test_settings: Settings) -> None:
        gateway = StripeWebhookGateway(
            engine, test_settings.model_copy(update={"stripe_webhook_secret": ""})
        )
        payload = event_payload("checkout.session.completed", {"id": "cs_test_1"})

        with pytest.raises(WebhookNotConfigured) as exc_info:
            gateway.verify(payload, sign(payload))
        assert exc_info.value.http_status == 500

    @pytest.mark.unit
    def test_signed_garbage_is_invalid_payload(self, gateway: StripeWebhookGateway) -> None:
        payload = b"not json"

        with pytest.raises(ValidationError):
            gateway.verify(payload, sign(payload))


class TestProcessEvent:
    """Event routing."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "event_type,handler_name",
        [
            ("checkout.session.completed", "apply_checkout_session_completed"),
            ("checkout.session.expired", "apply_checkout_session_expired"),
            ("payment_intent.succeeded", "apply_payment_intent_succeeded"),
            ("payment_intent.payment_failed", "apply_payment_intent_failed"),
            ("charge.refunded", "apply_charge_refunded"),
        ],
    )
    async def test_routes_to_engine(
        self,
        gateway: StripeWebhookGateway,
        engine: MagicMock,
        event_type: str,
        handler_name: str,
    ) -> None:
        obj = {"id": "obj_1"}
        payload = event_payload(event_type, obj)

        result = await gateway.handle(payload, sign(payload))

        assert result == {"status": "success", "event_id": "evt_1", "event_type": event_type}
        getattr(engine, handler_name).assert_awaited_once_with(obj)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_type_ignored(self, gateway: StripeWebhookGateway) -> None:
        result = await gateway.process_event(
            {"id": "evt_2", "type": "customer.created", "data": {"object": {}}}
        )

        assert result["status"] == "ignored"
        assert result["event_type"] == "customer.created"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handler_failure_raises_webhook_error(
        self, gateway: StripeWebhookGateway, engine: MagicMock
    ) -> None:
        engine.apply_charge_refunded.side_effect = RuntimeError("db down")

        with pytest.raises(WebhookError, match="evt_3") as exc_info:
            await gateway.process_event(
                {"id": "evt_3", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}
            )
        assert exc_info.value.http_status == 500

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_register_handler(self, gateway: StripeWebhookGateway) -> None:
        handler = AsyncMock()
        gateway.register_handler("invoice.paid", handler)

        result = await gateway.process_event(
            {"id": "evt_4", "type": "invoice.paid", "data": {"object": {"id": "in_1"}}}
        )

        assert result["status"] == "success"
        handler.assert_awaited_once_with({"id": "in_1"})
