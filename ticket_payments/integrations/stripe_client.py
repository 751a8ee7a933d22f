"""
Stripe embedded checkout client.

Implements:
- Checkout session creation with promo code resolution
- Checkout session status query
- Error classification into rejected (4xx) and unreachable (transient)
- Circuit breaker and a hard timeout around every blocking SDK call
"""
import asyncio
import json
import time
from typing import Any, Callable, Dict, List, Optional, TypeVar

import stripe
import structlog

from ticket_payments.config import Settings, get_settings
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

T = TypeVar("T")

MAX_TICKETS_PER_SESSION = 10

# "no_payment_required" is a session fully covered by a discount
PAID_PAYMENT_STATUSES = frozenset({"paid", "no_payment_required"})

# Stripe answered and said no
REJECTED_ERRORS = (
    stripe.CardError,
    stripe.InvalidRequestError,
    stripe.AuthenticationError,
    stripe.PermissionError,
    stripe.IdempotencyError,
)


class StripeCheckoutClient(ProviderClient):
    """
    Wrapper for the Stripe Checkout API.

    The Stripe SDK is synchronous; every call runs in the default executor
    bounded by ``provider_timeout_seconds``.
    """

    name = "stripe"

    def __init__(self, settings: Optional[Settings] = None) -> None:
        settings = settings or get_settings()
        stripe.api_key = settings.stripe_secret_key
        stripe.api_version = settings.stripe_api_version
        self.settings = settings
        self.circuit_breaker = CircuitBreaker(self.name)

        logger.info(
            "stripe_client_initialized",
            api_version=stripe.api_version,
            test_mode=settings.is_test_mode,
        )

    async def _call(self, operation: str, func: Callable[[], T]) -> T:
        """
        Run a blocking SDK call under the circuit breaker and timeout.

        Raises:
            ProviderRejected: Stripe declined the request
            ProviderUnreachable: Network failure, Stripe 5xx, rate limit or timeout
        """

        async def _run() -> T:
            loop = asyncio.get_running_loop()
            start = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    loop.run_in_executor(None, func),
                    timeout=self.settings.provider_timeout_seconds,
                )
            except asyncio.TimeoutError as e:
                metrics.record_provider_call(self.name, operation, "timeout", time.perf_counter() - start)
                logger.error("stripe_api_timeout", operation=operation)
                raise ProviderUnreachable(f"Stripe {operation} timed out") from e
            except REJECTED_ERRORS as e:
                metrics.record_provider_call(self.name, operation, "rejected", time.perf_counter() - start)
                logger.warning(
                    "stripe_api_rejected",
                    operation=operation,
                    error_code=getattr(e, "code", None),
                    error_message=str(e),
                )
                raise ProviderRejected(
                    getattr(e, "user_message", None) or str(e),
                    stripe_code=getattr(e, "code", None),
                ) from e
            except stripe.StripeError as e:
                # APIConnectionError, APIError, RateLimitError and anything unclassified
                metrics.record_provider_call(self.name, operation, "unreachable", time.perf_counter() - start)
                logger.error(
                    "stripe_api_error",
                    operation=operation,
                    error_type=type(e).__name__,
                    error_message=str(e),
                )
                raise ProviderUnreachable(f"Stripe {operation} failed: {e}") from e

            metrics.record_provider_call(self.name, operation, "success", time.perf_counter() - start)
            return result

        return await self.circuit_breaker.call(_run)

    async def resolve_promo_code(self, promo_code: str) -> List[Dict[str, str]]:
        """
        Look up an active promotion code.

        Returns:
            List[Dict[str, str]]: ``discounts`` parameter for session creation

        Raises:
            ValidationError: If no active promotion code matches
        """
        promotion_codes = await self._call(
            "list_promotion_codes",
            lambda: stripe.PromotionCode.list(code=promo_code, active=True, limit=1),
        )
        if not promotion_codes.data:
            logger.info("stripe_promo_code_invalid", promo_code=promo_code)
            raise ValidationError("Invalid promo code", details=["promoCode"])

        promotion = promotion_codes.data[0]
        coupon = getattr(promotion, "coupon", None)
        logger.info(
            "stripe_promo_code_applied",
            promo_code=promo_code,
            percent_off=getattr(coupon, "percent_off", None),
            amount_off=getattr(coupon, "amount_off", None),
        )
        return [{"promotion_code": promotion.id}]

    async def initiate(
        self,
        payer: str,
        amount: float,
        reference: str,
        description: str,
        **context: Any,
    ) -> InitiationResult:
        """
        Create an embedded checkout session.

        Args:
            payer: Customer email
            amount: Unused; the price object fixes the amount
            reference: Stripe price id of the ticket
            description: Ticket label
            **context: ``customer`` dict, ``promo_code``, ``idempotency_key``
                and ``discounts``
        """
        customer = context.get("customer") or {}
        promo_code = context.get("promo_code") or ""
        idempotency_key = context.get("idempotency_key") or ""
        discounts = context.get("discounts") or []

        params: Dict[str, Any] = {
            "ui_mode": "embedded",
            "line_items": [
                {
                    "price": reference,
                    "quantity": 1,
                    "adjustable_quantity": {
                        "enabled": True,
                        "minimum": 1,
                        "maximum": MAX_TICKETS_PER_SESSION,
                    },
                }
            ],
            "discounts": discounts,
            "mode": "payment",
            "customer_email": payer,
            "metadata": {
                "customerInfo": json.dumps(customer),
                "promoCode": promo_code,
                "idempotencyKey": idempotency_key,
                "ticketLabel": description or "",
            },
            "return_url": f"{self.settings.frontend_url}/return?session_id={{CHECKOUT_SESSION_ID}}",
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key

        logger.info("creating_checkout_session", ticket_id=reference, customer_email=payer)
        session = await self._call(
            "create_checkout_session", lambda: stripe.checkout.Session.create(**params)
        )
        logger.info("checkout_session_created", session_id=session.id)

        return InitiationResult(
            accepted=True,
            correlation_ids={"session_id": session.id},
            human_message="Checkout session created",
            raw={
                "client_secret": getattr(session, "client_secret", None),
                "amount_total": getattr(session, "amount_total", None),
                "currency": getattr(session, "currency", None),
            },
        )

    async def retrieve_session(self, session_id: str) -> Any:
        """Retrieve a checkout session object."""
        return await self._call(
            "retrieve_checkout_session", lambda: stripe.checkout.Session.retrieve(session_id)
        )

    async def query_status(self, correlation_id: str) -> StatusQueryResult:
        """
        Status of a checkout session.

        A paid (or fully discounted) session is success, an expired session is
        cancelled, anything else is still pending.
        """
        session = await self.retrieve_session(correlation_id)
        payment_status = getattr(session, "payment_status", None)
        session_status = getattr(session, "status", None)

        if payment_status in PAID_PAYMENT_STATUSES:
            outcome = QueryOutcome.SUCCEEDED
        elif session_status == "expired":
            outcome = QueryOutcome.CANCELLED
        else:
            outcome = QueryOutcome.PENDING

        customer_details = getattr(session, "customer_details", None)
        return StatusQueryResult(
            outcome=outcome,
            result_code=payment_status,
            result_description=f"session {session_status}, payment {payment_status}",
            raw_result={
                "id": getattr(session, "id", correlation_id),
                "status": session_status,
                "payment_status": payment_status,
                "payment_intent": getattr(session, "payment_intent", None),
                "amount_total": getattr(session, "amount_total", None),
                "currency": getattr(session, "currency", None),
                "customer_email": getattr(customer_details, "email", None),
            },
        )

    async def first_line_item_price(self, session_id: str) -> Optional[str]:
        """
        Price id of the session's first line item.

        Multi-item sessions only report the first item.
        """
        line_items = await self._call(
            "list_line_items",
            lambda: stripe.checkout.Session.list_line_items(session_id, limit=1),
        )
        if not line_items.data:
            return None
        price = getattr(line_items.data[0], "price", None)
        return getattr(price, "id", None)
