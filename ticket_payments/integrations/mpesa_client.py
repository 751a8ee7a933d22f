"""
Safaricom Daraja (M-Pesa) STK Push client.

Implements:
- OAuth client_credentials token memoised with a safety margin
- STK Push initiation (CustomerPayBillOnline)
- STK Push status query with result code classification
- Circuit breaker around every outbound call
"""
import asyncio
import base64
import math
import re
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import httpx
import structlog

from ticket_payments.config import Settings, get_settings
from ticket_payments.core.callbacks import EAT, RESULT_OK, RESULT_USER_CANCELLED
from ticket_payments.core.errors import ProviderRejected, ProviderUnreachable, ValidationError
from ticket_payments.integrations.provider import (
    CircuitBreaker,
    InitiationResult,
    ProviderClient,
    QueryOutcome,
    StatusQueryResult,
)
from ticket_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

# Query-side codes meaning the payer has not finished yet
PENDING_QUERY_CODES = frozenset({RESULT_USER_CANCELLED, "4999"})
PENDING_ERROR_CODES = frozenset({"500.001.1001"})

DEFAULT_USD_KES_RATE = 150

_PHONE_NOISE = re.compile(r"[\s\-\+\(\)]")


def format_phone_number(phone: str) -> str:
    """
    Normalise a Kenyan phone number to ``254XXXXXXXXX``.

    Raises:
        ValidationError: If the result is not 12 digits
    """
    formatted = _PHONE_NOISE.sub("", phone or "")

    if formatted.startswith("0"):
        formatted = "254" + formatted[1:]
    if not formatted.startswith("254"):
        formatted = "254" + formatted

    if len(formatted) != 12 or not formatted.isdigit():
        raise ValidationError(
            "Invalid phone number format. Expected format: 254XXXXXXXXX",
            details=["phoneNumber"],
        )
    return formatted


def stk_timestamp(now: Optional[datetime] = None) -> str:
    """Daraja timestamp, ``YYYYMMDDHHmmss`` in East Africa Time."""
    return (now or datetime.now(EAT)).astimezone(EAT).strftime("%Y%m%d%H%M%S")


def generate_password(short_code: str, passkey: str, timestamp: str) -> str:
    """STK password: base64(shortcode + passkey + timestamp)."""
    return base64.b64encode(f"{short_code}{passkey}{timestamp}".encode()).decode()


def convert_usd_to_kes(usd_amount: float, rate: float = DEFAULT_USD_KES_RATE) -> int:
    """Convert USD to whole KES at a fixed rate, rounding up."""
    return math.ceil(usd_amount * rate)


class TokenCache:
    """
    Process-wide OAuth token cache.

    A token is served until ``expires_in - safety_margin`` seconds after it
    was fetched and never after. Concurrent callers that find the cache
    empty wait on one refresh instead of each fetching their own.
    """

    def __init__(
        self,
        safety_margin_seconds: int = 99,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.safety_margin_seconds = safety_margin_seconds
        self._clock = clock
        self._token: Optional[str] = None
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def peek(self) -> Optional[str]:
        """Return the cached token if it is still inside its margin."""
        if self._token is not None and self._clock() < self._expires_at:
            return self._token
        return None

    async def get(self, fetch: Callable[[], Awaitable[Tuple[str, int]]]) -> str:
        """
        Return a valid token, calling ``fetch`` at most once per expiry.

        Args:
            fetch: Coroutine factory returning ``(token, expires_in_seconds)``
        """
        token = self.peek()
        if token is not None:
            return token

        async with self._lock:
            # Another caller may have refreshed while we waited
            token = self.peek()
            if token is not None:
                return token

            token, expires_in = await fetch()
            lifetime = max(int(expires_in) - self.safety_margin_seconds, 0)
            self._token = token
            self._expires_at = self._clock() + lifetime
            logger.info("mpesa_token_cached", cached_for_seconds=lifetime)
            return token

    def invalidate(self) -> None:
        """Drop the cached token."""
        self._token = None
        self._expires_at = 0.0


class MpesaClient(ProviderClient):
    """
    Async Daraja client.

    Args:
        settings: Application settings (defaults to ``get_settings()``)
        http_client: Optional preconfigured ``httpx.AsyncClient``
        token_cache: Optional shared token cache
        now: Wall-clock source for STK timestamps
    """

    name = "mpesa"

    def __init__(
        self,
        settings: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        token_cache: Optional[TokenCache] = None,
        now: Callable[[], datetime] = lambda: datetime.now(EAT),
    ) -> None:
        self.settings = settings or get_settings()
        self._http = http_client or httpx.AsyncClient(
            base_url=self.settings.mpesa_base_url,
            timeout=self.settings.provider_timeout_seconds,
        )
        self.token_cache = token_cache or TokenCache(
            self.settings.mpesa_token_safety_margin_seconds
        )
        self.circuit_breaker = CircuitBreaker(self.name)
        self._now = now

        logger.info(
            "mpesa_client_initialized",
            mpesa_env=self.settings.mpesa_env,
            short_code=self.settings.mpesa_business_short_code,
        )

    async def close(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    async def get_access_token(self) -> str:
        """Return a cached or freshly fetched OAuth token."""
        return await self.token_cache.get(self._fetch_token)

    async def _fetch_token(self) -> Tuple[str, int]:
        settings = self.settings
        if not settings.mpesa_consumer_key or not settings.mpesa_consumer_secret:
            raise ProviderRejected("M-Pesa Consumer Key or Consumer Secret is not configured")

        credentials = base64.b64encode(
            f"{settings.mpesa_consumer_key}:{settings.mpesa_consumer_secret}".encode()
        ).decode()

        async def _request() -> httpx.Response:
            return await self._send(
                "token",
                "GET",
                "/oauth/v1/generate",
                params={"grant_type": "client_credentials"},
                headers={"Authorization": f"Basic {credentials}"},
            )

        response = await self.circuit_breaker.call(_request)

        if response.status_code in (400, 401):
            metrics.record_token_refresh("rejected")
            logger.error("mpesa_token_rejected", status_code=response.status_code)
            raise ProviderRejected(
                "Invalid M-Pesa credentials. Verify the consumer key, consumer secret "
                "and environment (sandbox/production)."
            )
        if response.status_code >= 400:
            metrics.record_token_refresh("failed")
            raise ProviderRejected(
                f"Failed to authenticate with M-Pesa: {_error_message(response)}"
            )

        data = _json(response)
        token = data.get("access_token")
        if not token:
            metrics.record_token_refresh("failed")
            raise ProviderRejected("M-Pesa token response did not include an access token")

        metrics.record_token_refresh("success")
        return token, int(data.get("expires_in") or 3599)

    def _password(self) -> Tuple[str, str]:
        timestamp = stk_timestamp(self._now())
        password = generate_password(
            self.settings.mpesa_business_short_code, self.settings.mpesa_passkey, timestamp
        )
        return password, timestamp

    # ------------------------------------------------------------------
    # ProviderClient
    # ------------------------------------------------------------------

    async def initiate(
        self,
        payer: str,
        amount: float,
        reference: str,
        description: str,
        **context: Any,
    ) -> InitiationResult:
        """
        Send an STK Push prompt to ``payer``.

        Returns:
            InitiationResult: correlation ids ``merchant_request_id`` and
                ``checkout_request_id``; ``human_message`` is the provider's
                CustomerMessage

        Raises:
            ValidationError: Malformed phone number
            ProviderRejected: Daraja declined the request
            ProviderUnreachable: Network failure, timeout or 5xx
        """
        phone = format_phone_number(payer)
        whole_amount = math.ceil(float(amount))
        token = await self.get_access_token()
        password, timestamp = self._password()
        short_code = self.settings.mpesa_business_short_code

        payload = {
            "BusinessShortCode": short_code,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_amount,
            "PartyA": phone,
            "PartyB": short_code,
            "PhoneNumber": phone,
            "CallBackURL": self.settings.mpesa_callback_url,
            "AccountReference": reference,
            "TransactionDesc": description or "Payment",
        }

        logger.info("mpesa_stk_push_initiating", phone=phone, amount=whole_amount, reference=reference)
        data = await self._post_json("stk_push", "/mpesa/stkpush/v1/processrequest", payload, token)

        if str(data.get("ResponseCode")) != RESULT_OK:
            message = data.get("errorMessage") or data.get("ResponseDescription") or (
                "Failed to initiate M-Pesa payment"
            )
            logger.warning("mpesa_stk_push_declined", response=data)
            raise ProviderRejected(message, response=data)

        logger.info(
            "mpesa_stk_push_accepted",
            checkout_request_id=data.get("CheckoutRequestID"),
            merchant_request_id=data.get("MerchantRequestID"),
        )
        return InitiationResult(
            accepted=True,
            correlation_ids={
                "merchant_request_id": data["MerchantRequestID"],
                "checkout_request_id": data["CheckoutRequestID"],
            },
            human_message=data.get("CustomerMessage") or "Please check your phone",
            raw={**data, "Amount": whole_amount, "PhoneNumber": phone},
        )

    async def query_status(self, correlation_id: str) -> StatusQueryResult:
        """
        Query an STK Push by CheckoutRequestID.

        ``ResultCode`` "0" is success; "1032", "4999" and the
        "transaction is being processed" error mean the payer has not
        finished; anything else is a failure.
        """
        token = await self.get_access_token()
        password, timestamp = self._password()
        payload = {
            "BusinessShortCode": self.settings.mpesa_business_short_code,
            "Password": password,
            "Timestamp": timestamp,
            "CheckoutRequestID": correlation_id,
        }

        data = await self._post_json(
            "stk_query", "/mpesa/stkpushquery/v1/query", payload, token, pending_ok=True
        )
        result = classify_query_response(data)
        logger.info(
            "mpesa_stk_query_result",
            checkout_request_id=correlation_id,
            result_code=result.result_code,
            outcome=result.outcome.value,
        )
        return result

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _post_json(
        self,
        operation: str,
        path: str,
        payload: Dict[str, Any],
        token: str,
        pending_ok: bool = False,
    ) -> Dict[str, Any]:
        async def _request() -> httpx.Response:
            response = await self._send(
                operation,
                "POST",
                path,
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
            )
            if response.status_code >= 500 and not (
                pending_ok and _json(response).get("errorCode") in PENDING_ERROR_CODES
            ):
                raise ProviderUnreachable(
                    f"M-Pesa {operation} failed: {_error_message(response)}",
                    status_code=response.status_code,
                )
            return response

        response = await self.circuit_breaker.call(_request)
        data = _json(response)

        if response.status_code == 401:
            # Token revoked early; next call fetches a new one
            self.token_cache.invalidate()
        if 400 <= response.status_code < 500:
            logger.warning(
                "mpesa_request_rejected",
                operation=operation,
                status_code=response.status_code,
                response=data,
            )
            raise ProviderRejected(_error_message(response), response=data)
        return data

    async def _send(self, operation: str, method: str, path: str, **kwargs: Any) -> httpx.Response:
        start = time.perf_counter()
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            metrics.record_provider_call(self.name, operation, "timeout", time.perf_counter() - start)
            logger.error("mpesa_request_timeout", operation=operation, error=str(e))
            raise ProviderUnreachable(f"M-Pesa {operation} timed out") from e
        except httpx.TransportError as e:
            metrics.record_provider_call(self.name, operation, "unreachable", time.perf_counter() - start)
            logger.error("mpesa_request_unreachable", operation=operation, error=str(e))
            raise ProviderUnreachable(
                "Unable to connect to M-Pesa API. Please check your internet connection."
            ) from e

        metrics.record_provider_call(
            self.name, operation, str(response.status_code), time.perf_counter() - start
        )
        return response


def classify_query_response(data: Dict[str, Any]) -> StatusQueryResult:
    """Map a Daraja STK query body to a provider-neutral result."""
    error_code = data.get("errorCode")
    if error_code in PENDING_ERROR_CODES:
        return StatusQueryResult(
            outcome=QueryOutcome.PENDING,
            result_code=str(error_code),
            result_description=data.get("errorMessage") or "The transaction is being processed",
            raw_result=data,
        )

    code = data.get("ResultCode")
    code = str(code) if code is not None else None
    description = data.get("ResultDesc")

    if code == RESULT_OK:
        outcome = QueryOutcome.SUCCEEDED
    elif code is None or code in PENDING_QUERY_CODES:
        outcome = QueryOutcome.PENDING
    else:
        outcome = QueryOutcome.FAILED

    return StatusQueryResult(
        outcome=outcome,
        result_code=code,
        result_description=description,
        raw_result=data,
    )


def _json(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_message(response: httpx.Response) -> str:
    data = _json(response)
    return str(
        data.get("errorMessage")
        or data.get("errorCode")
        or data.get("ResponseDescription")
        or f"HTTP {response.status_code}"
    )
