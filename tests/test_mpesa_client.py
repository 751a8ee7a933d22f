"""
Tests for the Daraja STK Push client.

Daraja is replaced by an ``httpx.MockTransport``; nothing leaves the process.
"""
import asyncio
import base64
import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import httpx
import pytest

from ticket_payments.config import Settings
from ticket_payments.core.callbacks import EAT
from ticket_payments.core.errors import ProviderRejected, ProviderUnreachable, ValidationError
from ticket_payments.integrations.mpesa_client import (
    MpesaClient,
    TokenCache,
    classify_query_response,
    convert_usd_to_kes,
    format_phone_number,
    generate_password,
    stk_timestamp,
)
from ticket_payments.integrations.provider import QueryOutcome

FIXED_NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=EAT)

STK_ACCEPTED = {
    "MerchantRequestID": "29115-34620561-1",
    "CheckoutRequestID": "ws_CO_191220191020363925",
    "ResponseCode": "0",
    "ResponseDescription": "Success. Request accepted for processing",
    "CustomerMessage": "Success. Request accepted for processing",
}


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class Daraja:
    """Minimal Daraja stand-in recording every request."""

    def __init__(self) -> None:
        self.requests: List[httpx.Request] = []
        self.token_response: Tuple[int, Dict[str, Any]] = (
            200,
            {"access_token": "tok_1", "expires_in": "3599"},
        )
        self.stk_response: Tuple[int, Dict[str, Any]] = (200, STK_ACCEPTED)
        self.query_response: Tuple[int, Dict[str, Any]] = (
            200,
            {"ResponseCode": "0", "ResultCode": "0", "ResultDesc": "ok"},
        )
        self.error: Optional[Exception] = None

    def count(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        routes: Dict[str, Tuple[int, Dict[str, Any]]] = {
            "/oauth/v1/generate": self.token_response,
            "/mpesa/stkpush/v1/processrequest": self.stk_response,
            "/mpesa/stkpushquery/v1/query": self.query_response,
        }
        status_code, body = routes[request.url.path]
        return httpx.Response(status_code, json=body)


@pytest.fixture
def daraja() -> Daraja:
    return Daraja()


@pytest.fixture
def make_client(test_settings: Settings, daraja: Daraja) -> Callable[..., MpesaClient]:
    def _make(settings: Optional[Settings] = None) -> MpesaClient:
        settings = settings or test_settings
        http = httpx.AsyncClient(
            transport=httpx.MockTransport(daraja), base_url=settings.mpesa_base_url
        )
        return MpesaClient(settings, http_client=http, now=lambda: FIXED_NOW)

    return _make


class TestHelpers:
    """Pure helper functions."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "raw",
        ["0712345678", "254712345678", "+254 712 345 678", "712345678", "(0712)-345-678"],
    )
    def test_format_phone_number(self, raw: str) -> None:
        assert format_phone_number(raw) == "254712345678"

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", ["", "12345", "07123456789", "07123abc78"])
    def test_format_phone_number_invalid(self, raw: str) -> None:
        with pytest.raises(ValidationError) as exc_info:
            format_phone_number(raw)
        assert exc_info.value.details == ["phoneNumber"]

    @pytest.mark.unit
    def test_password_and_timestamp(self) -> None:
        timestamp = stk_timestamp(datetime(2024, 1, 2, 0, 4, 5, tzinfo=timezone.utc))
        assert timestamp == "20240102030405"

        password = generate_password("174379", "passkey", timestamp)
        assert base64.b64decode(password).decode() == "174379passkey20240102030405"

    @pytest.mark.unit
    def test_convert_usd_to_kes_rounds_up(self) -> None:
        assert convert_usd_to_kes(10) == 1500
        assert convert_usd_to_kes(10.01) == 1502


class TestClassifyQueryResponse:
    """Daraja query result code mapping."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "body,outcome",
        [
            ({"ResultCode": "0", "ResultDesc": "ok"}, QueryOutcome.SUCCEEDED),
            ({"ResultCode": 0}, QueryOutcome.SUCCEEDED),
            ({"ResultCode": "1032", "ResultDesc": "cancelled"}, QueryOutcome.PENDING),
            ({"ResultCode": "4999"}, QueryOutcome.PENDING),
            ({"ResponseCode": "0"}, QueryOutcome.PENDING),
            ({"errorCode": "500.001.1001", "errorMessage": "processing"}, QueryOutcome.PENDING),
            ({"ResultCode": "1", "ResultDesc": "insufficient"}, QueryOutcome.FAILED),
            ({"ResultCode": "2001"}, QueryOutcome.FAILED),
        ],
    )
    def test_outcomes(self, body: Dict[str, Any], outcome: QueryOutcome) -> None:
        assert classify_query_response(body).outcome is outcome

    @pytest.mark.unit
    def test_result_code_is_string(self) -> None:
        result = classify_query_response({"ResultCode": 1, "ResultDesc": "insufficient"})
        assert result.result_code == "1"
        assert result.result_description == "insufficient"


class TestTokenCache:
    """OAuth token memoisation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_served_until_safety_margin(self) -> None:
        clock = FakeClock()
        cache = TokenCache(safety_margin_seconds=99, clock=clock)
        fetches = 0

        async def fetch() -> Tuple[str, int]:
            nonlocal fetches
            fetches += 1
            return f"tok_{fetches}", 3599

        assert await cache.get(fetch) == "tok_1"
        clock.now = 3499.9
        assert await cache.get(fetch) == "tok_1"
        clock.now = 3500.0
        assert await cache.get(fetch) == "tok_2"
        assert fetches == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalidate(self) -> None:
        cache = TokenCache(clock=FakeClock())

        async def fetch() -> Tuple[str, int]:
            return "tok", 3599

        await cache.get(fetch)
        assert cache.peek() == "tok"
        cache.invalidate()
        assert cache.peek() is None

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_refresh_collapses_to_one_fetch(self) -> None:
        cache = TokenCache(clock=FakeClock())
        fetches = 0

        async def fetch() -> Tuple[str, int]:
            nonlocal fetches
            fetches += 1
            await asyncio.sleep(0.01)
            return "tok", 3599

        tokens = await asyncio.gather(*(cache.get(fetch) for _ in range(10)))

        assert tokens == ["tok"] * 10
        assert fetches == 1


class TestMpesaClient:
    """Initiation and status query against a mocked Daraja."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_initiate_sends_stk_push(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        client = make_client()

        result = await client.initiate("0712345678", 100.4, "early-bird", "Payment for Early Bird")

        assert result.accepted
        assert result.correlation_ids == {
            "merchant_request_id": "29115-34620561-1",
            "checkout_request_id": "ws_CO_191220191020363925",
        }
        assert result.human_message == STK_ACCEPTED["CustomerMessage"]

        token_request, stk_request = daraja.requests
        expected_basic = base64.b64encode(b"consumer_key:consumer_secret").decode()
        assert token_request.headers["Authorization"] == f"Basic {expected_basic}"
        assert token_request.url.params["grant_type"] == "client_credentials"
        assert stk_request.headers["Authorization"] == "Bearer tok_1"

        payload = json.loads(stk_request.content)
        assert payload["Amount"] == 101
        assert payload["PartyA"] == "254712345678"
        assert payload["PhoneNumber"] == "254712345678"
        assert payload["PartyB"] == "174379"
        assert payload["TransactionType"] == "CustomerPayBillOnline"
        assert payload["Timestamp"] == "20240102030405"
        assert payload["Password"] == generate_password("174379", "passkey", "20240102030405")
        assert payload["CallBackURL"] == "https://tickets.example.com/mpesa/callback"
        assert payload["AccountReference"] == "early-bird"
        await client.close()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_token_reused_across_calls(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        client = make_client()

        await client.initiate("0712345678", 100, "ref", "desc")
        await client.query_status("ws_CO_191220191020363925")

        assert daraja.count("/oauth/v1/generate") == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_invalid_phone_never_calls_daraja(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        with pytest.raises(ValidationError):
            await make_client().initiate("12345", 100, "ref", "desc")
        assert daraja.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_declined_response_code(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        daraja.stk_response = (200, {"ResponseCode": "1", "ResponseDescription": "Rejected"})

        with pytest.raises(ProviderRejected, match="Rejected"):
            await make_client().initiate("0712345678", 100, "ref", "desc")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_400_is_rejected(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        daraja.stk_response = (400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid Amount"})

        with pytest.raises(ProviderRejected, match="Invalid Amount"):
            await make_client().initiate("0712345678", 100, "ref", "desc")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_http_500_is_unreachable(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        daraja.stk_response = (503, {"errorMessage": "Service unavailable"})

        with pytest.raises(ProviderUnreachable):
            await make_client().initiate("0712345678", 100, "ref", "desc")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_transport_failure_is_unreachable(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        daraja.error = httpx.ConnectError("connection refused")

        with pytest.raises(ProviderUnreachable):
            await make_client().initiate("0712345678", 100, "ref", "desc")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_timeout_is_unreachable(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        daraja.error = httpx.ReadTimeout("timed out")

        with pytest.raises(ProviderUnreachable, match="timed out"):
            await make_client().query_status("ws_CO_1")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_credentials(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        daraja.token_response = (400, {"errorMessage": "Invalid Authentication passed"})

        with pytest.raises(ProviderRejected, match="Invalid M-Pesa credentials"):
            await make_client().initiate("0712345678", 100, "ref", "desc")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_credentials(
        self, make_client: Callable[..., MpesaClient], test_settings: Settings, daraja: Daraja
    ) -> None:
        settings = test_settings.model_copy(update={"mpesa_consumer_key": ""})

        with pytest.raises(ProviderRejected, match="not configured"):
            await make_client(settings).initiate("0712345678", 100, "ref", "desc")
        assert daraja.requests == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_query_processing_error_is_pending(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        daraja.query_response = (
            500,
            {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
        )

        result = await make_client().query_status("ws_CO_1")

        assert result.outcome is QueryOutcome.PENDING
        assert result.result_code == "500.001.1001"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_query_failure(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        daraja.query_response = (
            200,
            {"ResponseCode": "0", "ResultCode": "1", "ResultDesc": "The balance is insufficient"},
        )

        result = await make_client().query_status("ws_CO_1")

        assert result.outcome is QueryOutcome.FAILED
        payload = json.loads(daraja.requests[-1].content)
        assert payload["CheckoutRequestID"] == "ws_CO_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_401_invalidates_cached_token(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        client = make_client()
        daraja.query_response = (401, {"errorMessage": "Invalid Access Token"})

        with pytest.raises(ProviderRejected):
            await client.query_status("ws_CO_1")

        assert client.token_cache.peek() is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_circuit_opens_after_repeated_transport_failures(
        self, make_client: Callable[..., MpesaClient], daraja: Daraja
    ) -> None:
        client = make_client()
        await client.get_access_token()
        daraja.error = httpx.ConnectError("down")

        for _ in range(client.circuit_breaker.failure_threshold):
            with pytest.raises(ProviderUnreachable):
                await client.query_status("ws_CO_1")
        sent = len(daraja.requests)

        with pytest.raises(ProviderUnreachable, match="circuit breaker is open"):
            await client.query_status("ws_CO_1")
        assert len(daraja.requests) == sent
        assert not await client.health_check()
