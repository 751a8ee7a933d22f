"""
Stripe webhook gateway.

Implements:
- Signature verification against the endpoint signing secret
- Event type routing to the reconciliation engine

There is no delivery dedup store: every handler is idempotent because the
lifecycle rules turn a replayed event into a no-op.
"""
import json
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, Mapping, Optional

import stripe
import structlog

from ticket_payments.config import Settings, get_settings
from ticket_payments.core.errors import PaymentError, Unauthorized, ValidationError
from ticket_payments.monitoring.metrics import metrics

if TYPE_CHECKING:
    from ticket_payments.core.reconciliation import ReconciliationEngine

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Mapping[str, Any]], Awaitable[Any]]


class WebhookError(PaymentError):
    """Raised when a verified event could not be processed; Stripe will redeliver."""

    error_code = "webhook_processing_error"
    http_status = 500


class WebhookNotConfigured(PaymentError):
    """No signing secret is configured, so no event can be trusted."""

    error_code = "webhook_not_configured"
    http_status = 500


class StripeWebhookGateway:
    """
    Verifies Stripe webhook deliveries and hands them to the engine.

    Args:
        engine: Reconciliation engine
        settings: Application settings (defaults to ``get_settings()``)
    """

    def __init__(self, engine: "ReconciliationEngine", settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        self.event_handlers: Dict[str, EventHandler] = {
            "checkout.session.completed": engine.apply_checkout_session_completed,
            "checkout.session.expired": engine.apply_checkout_session_expired,
            "payment_intent.succeeded": engine.apply_payment_intent_succeeded,
            "payment_intent.payment_failed": engine.apply_payment_intent_failed,
            "charge.refunded": engine.apply_charge_refunded,
        }

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """Register (or replace) the handler for a Stripe event type."""
        self.event_handlers[event_type] = handler
        logger.info("webhook_handler_registered", event_type=event_type)

    def verify(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Verify a delivery and return the event as a plain dict.

        Raises:
            WebhookNotConfigured: No signing secret configured
            Unauthorized: Missing or invalid signature (HTTP 400)
            ValidationError: Body is not a Stripe event
        """
        secret = self.settings.stripe_webhook_secret
        if not secret:
            logger.error("webhook_secret_not_configured")
            raise WebhookNotConfigured("Webhook secret not configured")
        if not signature:
            logger.warning("webhook_missing_signature")
            raise Unauthorized("Missing Stripe-Signature header", http_status=400)

        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=secret)
        except stripe.SignatureVerificationError as e:
            logger.error("webhook_signature_verification_failed", error=str(e))
            raise Unauthorized(f"Webhook Error: {e}", http_status=400) from e
        except ValueError as e:
            logger.error("webhook_invalid_payload", error=str(e))
            raise ValidationError(f"Invalid webhook payload: {e}") from e

        event = json.loads(payload)
        logger.info("webhook_signature_verified", event_id=event.get("id"), event_type=event.get("type"))
        return event

    async def process_event(self, event: Mapping[str, Any]) -> Dict[str, Any]:
        """
        Route a verified event to its handler.

        Unknown event types are acknowledged and logged.

        Raises:
            WebhookError: If the handler failed
        """
        event_id = event.get("id")
        event_type = event.get("type", "unknown")
        handler = self.event_handlers.get(event_type)

        if handler is None:
            logger.info("webhook_unhandled_event_type", event_id=event_id, event_type=event_type)
            metrics.record_callback("stripe", event_type, "ignored", 0.0)
            return {"status": "ignored", "event_id": event_id, "event_type": event_type}

        start = time.perf_counter()
        try:
            await handler(event["data"]["object"])
        except Exception as e:
            metrics.record_callback("stripe", event_type, "failed", time.perf_counter() - start)
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            raise WebhookError(f"Failed to process event {event_id}: {e}") from e

        metrics.record_callback("stripe", event_type, "success", time.perf_counter() - start)
        logger.info("webhook_event_processed", event_id=event_id, event_type=event_type)
        return {"status": "success", "event_id": event_id, "event_type": event_type}

    async def handle(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify then process one delivery."""
        return await self.process_event(self.verify(payload, signature))
