"""
API routes for ticket payments.

M-Pesa STK Push, Stripe embedded checkout, free registration, the two
provider callback surfaces, admin listings and monitoring.
"""
import math
import time
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from ticket_payments.core.callbacks import parse_stk_callback
from ticket_payments.core.errors import NotFound
from ticket_payments.core.initiation import PaymentInitiator
from ticket_payments.core.reconciliation import ReconciliationEngine, StatusView
from ticket_payments.core.state_machine import TransactionStatus
from ticket_payments.core.store import TransactionStore
from ticket_payments.integrations.webhook_handler import StripeWebhookGateway
from ticket_payments.monitoring.health import HealthCheck
from ticket_payments.monitoring.metrics import metrics

from .dependencies import (
    get_engine,
    get_gateway,
    get_health_check,
    get_initiator,
    get_provider,
    get_services,
    get_store,
)
from .schemas import (
    CheckoutSessionRequest,
    CheckoutSessionResponse,
    FreeRegistrationRequest,
    FreeRegistrationResponse,
    HealthCheckResponse,
    MpesaInitiateRequest,
    MpesaInitiateResponse,
    MpesaQueryResponse,
    MpesaStatusResponse,
    PaymentListResponse,
    SessionStatusResponse,
    WebhookResponse,
)
from .security import rate_limit_initiation, verify_callback_ip

logger = structlog.get_logger(__name__)

CORRELATION_ID_PATTERN = r"^[a-zA-Z0-9\-_]+$"
STATUS_PATTERN = "^(" + "|".join(s.value for s in TransactionStatus) + ")$"
MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Success"}

# Create routers
mpesa_router = APIRouter(prefix="/mpesa", tags=["mpesa"])
payment_router = APIRouter(tags=["payments"])
webhook_router = APIRouter(tags=["webhooks"])
admin_router = APIRouter(prefix="/admin", tags=["admin"])
monitoring_router = APIRouter(tags=["monitoring"])


def _paid(view: StatusView) -> str:
    return (
        "paid"
        if view.status in (TransactionStatus.SUCCEEDED.value, TransactionStatus.REFUNDED.value)
        else "unpaid"
    )


# ----------------------------------------------------------------------
# M-Pesa
# ----------------------------------------------------------------------


@mpesa_router.post(
    "/initiate",
    response_model=MpesaInitiateResponse,
    summary="Initiate STK Push",
    description="Send an M-Pesa STK Push prompt to the payer's phone",
    dependencies=[Depends(rate_limit_initiation)],
)
async def mpesa_initiate(
    request: MpesaInitiateRequest,
    initiator: PaymentInitiator = Depends(get_initiator),
) -> Dict[str, Any]:
    """
    Initiate an STK Push.

    A successful response means Daraja accepted the request, not that the
    payer has paid. Poll ``/mpesa/status/{checkoutRequestId}``.
    """
    logger.info(
        "api_mpesa_initiate_request",
        amount=request.amount,
        ticket_id=request.ticket_id,
    )
    initiated = await initiator.initiate_mpesa(
        phone_number=request.phone_number,
        amount=request.amount,
        customer=request.customer_info.snapshot(),
        ticket_id=request.ticket_id,
        ticket_label=request.ticket_label,
        promo_code=request.promo_code,
    )
    return {
        "success": True,
        "checkout_request_id": initiated.transaction.request_id,
        "message": initiated.result.human_message if initiated.result else "STK Push sent",
    }


@mpesa_router.post(
    "/callback",
    summary="M-Pesa callback",
    description="Daraja STK Push result callback",
    dependencies=[Depends(verify_callback_ip)],
)
async def mpesa_callback(
    request: Request,
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """
    Handle a Daraja STK callback.

    Always acknowledged once past the IP allow-list; Daraja does not retry
    usefully and the status query reconciles anything lost here.
    """
    start_time = time.time()
    outcome = "processed"
    try:
        body = await request.json()
        callback = parse_stk_callback(body)
        logger.info(
            "api_mpesa_callback_received",
            checkout_request_id=callback.checkout_request_id,
            result_code=callback.result_code,
        )
        await engine.apply_mpesa_callback(callback)
    except Exception as e:
        outcome = "error"
        logger.error(
            "api_mpesa_callback_error",
            error=str(e),
            error_type=type(e).__name__,
        )

    metrics.record_callback("mpesa", "stk_callback", outcome, time.time() - start_time)
    return MPESA_ACK


@mpesa_router.get(
    "/status/{checkout_request_id}",
    response_model=MpesaStatusResponse,
    summary="STK Push status",
    description="Stored status, refreshed from Daraja while pending",
)
async def mpesa_status(
    checkout_request_id: str = Path(..., pattern=CORRELATION_ID_PATTERN),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """Reconcile-on-query for an STK Push."""
    view = await engine.reconcile_on_query(checkout_request_id)
    return {
        "success": True,
        "status": view.status,
        "mpesa_receipt_number": view.provider_reference,
        "result_desc": view.result_description,
        "amount": view.amount,
        "transaction_date": view.settled_at.isoformat() if view.settled_at else None,
        "provider_reachable": view.provider_reachable,
    }


@mpesa_router.get(
    "/query/{checkout_request_id}",
    response_model=MpesaQueryResponse,
    summary="Query Daraja directly",
    description="Ask Daraja for the status of an STK Push without touching stored state",
)
async def mpesa_query(
    request: Request,
    checkout_request_id: str = Path(..., pattern=CORRELATION_ID_PATTERN),
) -> Dict[str, Any]:
    """Direct provider query. Nothing is written."""
    provider = get_provider(request, "mpesa")
    result = await provider.query_status(checkout_request_id)
    raw = result.raw_result or {}
    return {
        "success": True,
        "result_code": result.result_code,
        "result_desc": result.result_description,
        "merchant_request_id": raw.get("MerchantRequestID"),
        "checkout_request_id": raw.get("CheckoutRequestID") or checkout_request_id,
        "outcome": result.outcome.value,
    }


@mpesa_router.get(
    "/summary",
    summary="M-Pesa summary",
    description="Counts by status and total succeeded amount for M-Pesa",
)
async def mpesa_summary(store: TransactionStore = Depends(get_store)) -> Dict[str, Any]:
    return {"success": True, "data": await store.summary(provider="mpesa")}


@mpesa_router.get(
    "/customer/{email}",
    summary="M-Pesa transactions for a customer",
)
async def mpesa_customer_transactions(
    email: str = Path(..., min_length=3),
    store: TransactionStore = Depends(get_store),
) -> Dict[str, Any]:
    transactions = await store.find_by_customer(email, provider="mpesa")
    return {
        "success": True,
        "count": len(transactions),
        "data": [t.to_dict() for t in transactions],
    }


# ----------------------------------------------------------------------
# Card payments and free registration
# ----------------------------------------------------------------------


@payment_router.post(
    "/create-checkout-session",
    response_model=CheckoutSessionResponse,
    summary="Create checkout session",
    description="Create a Stripe embedded checkout session for one ticket",
)
async def create_checkout_session(
    request: CheckoutSessionRequest,
    initiator: PaymentInitiator = Depends(get_initiator),
) -> Dict[str, Any]:
    logger.info(
        "api_create_checkout_session_request",
        ticket_id=request.ticket_id,
        has_promo_code=bool(request.promo_code),
    )
    initiated = await initiator.create_checkout_session(
        ticket_id=request.ticket_id,
        customer=request.customer_info.snapshot(),
        promo_code=request.promo_code,
        idempotency_key=request.idempotency_key,
        ticket_label=request.ticket_label,
    )
    raw = initiated.result.raw if initiated.result else {}
    return {
        "success": True,
        "client_secret": raw.get("client_secret"),
        "session_id": initiated.transaction.request_id,
    }


@payment_router.get(
    "/session-status",
    response_model=SessionStatusResponse,
    summary="Checkout session status",
    description="Stored status of a card session, refreshed from Stripe while pending",
)
async def session_status(
    request: Request,
    session_id: str = Query(..., pattern=CORRELATION_ID_PATTERN),
    engine: ReconciliationEngine = Depends(get_engine),
) -> Dict[str, Any]:
    """
    Reconcile-on-query for a card session.

    A session Stripe knows about but that was never recorded here is
    reported straight from Stripe.
    """
    try:
        view = await engine.reconcile_on_query(session_id)
    except NotFound:
        result = await get_provider(request, "stripe").query_status(session_id)
        raw = result.raw_result or {}
        return {
            "success": True,
            "status": raw.get("status") or result.outcome.value,
            "payment_status": raw.get("payment_status") or "unpaid",
            "customer_email": raw.get("customer_email"),
        }

    return {
        "success": True,
        "status": view.status,
        "payment_status": _paid(view),
        "customer_email": view.customer_email,
        "provider_reachable": view.provider_reachable,
    }


@payment_router.get(
    "/api/payments",
    response_model=PaymentListResponse,
    summary="List payments",
)
async def list_payments(
    email: Optional[str] = Query(default=None),
    payment_status: Optional[str] = Query(default=None, alias="status", pattern=STATUS_PATTERN),
    provider: Optional[str] = Query(default=None, pattern="^(mpesa|stripe|free)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    store: TransactionStore = Depends(get_store),
) -> Dict[str, Any]:
    items, total = await store.list_transactions(
        provider=provider, email=email, status=payment_status, page=page, limit=limit
    )
    return {
        "success": True,
        "payments": [t.to_dict() for t in items],
        "pagination": {
            "total": total,
            "page": page,
            "limit": limit,
            "pages": math.ceil(total / limit) if total else 0,
        },
    }


@payment_router.get(
    "/api/payment/{session_id}",
    summary="Payment by session id",
)
async def get_payment(
    session_id: str = Path(..., pattern=CORRELATION_ID_PATTERN),
    store: TransactionStore = Depends(get_store),
) -> Dict[str, Any]:
    transaction = await store.find_by_correlation_id(session_id)
    return {"success": True, "payment": transaction.to_dict()}


@payment_router.get(
    "/api/payment-stats",
    summary="Payment statistics",
)
async def payment_stats(
    provider: Optional[str] = Query(default=None, pattern="^(mpesa|stripe|free)$"),
    store: TransactionStore = Depends(get_store),
) -> Dict[str, Any]:
    return {"success": True, "stats": await store.stats(provider=provider)}


@payment_router.get(
    "/api/payments/customer/{email}",
    summary="Card payments for a customer",
)
async def customer_payments(
    email: str = Path(..., min_length=3),
    store: TransactionStore = Depends(get_store),
) -> Dict[str, Any]:
    transactions = await store.find_by_customer(email, provider="stripe")
    return {
        "success": True,
        "count": len(transactions),
        "payments": [t.to_dict() for t in transactions],
    }


@payment_router.post(
    "/api/free-registration",
    response_model=FreeRegistrationResponse,
    summary="Free registration",
    description="Register a zero-amount ticket without a payment provider",
)
async def free_registration(
    request: FreeRegistrationRequest,
    initiator: PaymentInitiator = Depends(get_initiator),
) -> Dict[str, Any]:
    initiated = await initiator.register_free(
        ticket_id=request.ticket_id,
        customer=request.customer_info.snapshot(),
        ticket_label=request.ticket_label,
        idempotency_key=request.idempotency_key,
    )
    registration_id = initiated.transaction.request_id
    return {
        "success": True,
        "message": "Registration successful",
        "registration_id": registration_id,
        "session_id": registration_id,
    }


# ----------------------------------------------------------------------
# Stripe webhook
# ----------------------------------------------------------------------


@webhook_router.post(
    "/webhook",
    response_model=WebhookResponse,
    summary="Stripe webhook endpoint",
    description="Handle Stripe webhook events",
)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    gateway: StripeWebhookGateway = Depends(get_gateway),
) -> Dict[str, Any]:
    """
    Verify and process a Stripe event.

    Signature failures answer 400; processing failures answer 500 so that
    Stripe retries.
    """
    body = await request.body()
    result = await gateway.handle(body, stripe_signature)
    return {"received": True, "status": result["status"], "event_type": result.get("event_type")}


# ----------------------------------------------------------------------
# Admin
# ----------------------------------------------------------------------


@admin_router.get(
    "/summary",
    summary="Transaction summary",
    description="Counts by status and total succeeded amount across providers",
)
async def admin_summary(store: TransactionStore = Depends(get_store)) -> Dict[str, Any]:
    return {"success": True, "data": await store.summary()}


@admin_router.get(
    "/stale-pending",
    summary="Stale pending transactions",
    description="Pending transactions older than the configured threshold",
)
async def stale_pending(
    request: Request,
    minutes: Optional[int] = Query(default=None, ge=1),
    store: TransactionStore = Depends(get_store),
) -> Dict[str, Any]:
    minutes_old = minutes or get_services(request).settings.stale_pending_minutes
    transactions = await store.find_stale_pending(minutes_old)
    return {
        "success": True,
        "minutes": minutes_old,
        "count": len(transactions),
        "data": [t.to_dict() for t in transactions],
    }


# ----------------------------------------------------------------------
# Monitoring
# ----------------------------------------------------------------------


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {
            "status": "unhealthy",
            "checks": {"error": str(e)},
        }


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    return await health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(health_check: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
