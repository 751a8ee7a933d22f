"""
Boundary checks applied before a request reaches the payment core.

- M-Pesa callback source IP allow-list (production Daraja only)
- Sliding window rate limit on payment initiation
"""
from typing import Optional

import structlog
from fastapi import Request

from ticket_payments.core.errors import PaymentError, Unauthorized
from ticket_payments.monitoring.metrics import metrics

from .dependencies import get_services

logger = structlog.get_logger(__name__)


class RateLimited(PaymentError):
    """Caller exceeded the initiation rate limit."""

    error_code = "rate_limited"
    http_status = 429


def client_ip(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


async def verify_callback_ip(request: Request) -> None:
    """
    Reject M-Pesa callbacks that do not come from a Safaricom address.

    Skipped unless ``mpesa_env`` is production.

    Raises:
        Unauthorized: Source IP not allow-listed (HTTP 403)
    """
    settings = get_services(request).settings
    if not settings.mpesa_ip_check_enabled:
        logger.debug("mpesa_callback_ip_check_skipped", mpesa_env=settings.mpesa_env)
        return

    ip = client_ip(request)
    if ip not in settings.get_mpesa_callback_ips():
        logger.warning("mpesa_callback_unauthorized_ip", client_ip=ip)
        raise Unauthorized("Unauthorized", http_status=403, client_ip=ip)


async def rate_limit_initiation(request: Request) -> None:
    """
    Apply the per-caller sliding window limit.

    Raises:
        RateLimited: Caller is over the limit (HTTP 429)
    """
    limiter = get_services(request).rate_limiter
    identity = client_ip(request) or "unknown"
    if not limiter.hit(identity):
        metrics.record_rate_limited(request.url.path)
        logger.warning(
            "rate_limit_exceeded",
            client_ip=identity,
            retry_after_seconds=round(limiter.retry_after(identity), 1),
        )
        raise RateLimited("Too many requests. Please try again later.")
