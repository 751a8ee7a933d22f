"""
Reconciliation engine.

Drives stored transactions through their lifecycle from three independent
triggers: provider callbacks (M-Pesa STK callback, Stripe webhooks), and
on-demand status queries against the provider. Triggers may arrive in any
order, more than once, or not at all:

- a callback for a record that is already terminal is a no-op
- a Stripe checkout completion for an unknown session creates the record
- any other event for an unknown id is logged and discarded
- a query that cannot reach the provider leaves the record untouched

The lifecycle rules themselves are enforced by the store under a row lock,
so the engine never reads a status and writes a decision in two steps.
"""
import json
import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import structlog

from ticket_payments.core.callbacks import StkCallback
from ticket_payments.core.errors import NotFound, ProviderError
from ticket_payments.core.state_machine import TransactionStatus, TransitionDecision
from ticket_payments.core.store import TransactionStore, TransitionOutcome
from ticket_payments.database.models import Transaction
from ticket_payments.integrations.provider import ProviderClient, QueryOutcome
from ticket_payments.integrations.stripe_client import PAID_PAYMENT_STATUSES
from ticket_payments.monitoring.metrics import metrics
from ticket_payments.notifications.email import EmailNotifier

logger = structlog.get_logger(__name__)

QUERY_TARGETS = {
    QueryOutcome.SUCCEEDED: TransactionStatus.SUCCEEDED,
    QueryOutcome.FAILED: TransactionStatus.FAILED,
    QueryOutcome.CANCELLED: TransactionStatus.CANCELLED,
}

CUSTOMER_FALLBACK_FIELDS = ("firstName", "lastName", "phone", "company", "jobTitle", "country")


@dataclass
class StatusView:
    """What a caller polling a transaction gets back."""

    request_id: str
    provider: str
    status: str
    provider_reference: Optional[str]
    result_code: Optional[str]
    result_description: Optional[str]
    amount: int
    currency: str
    settled_at: Optional[datetime]
    customer_email: Optional[str] = None
    provider_reachable: bool = True

    @classmethod
    def from_transaction(
        cls, transaction: Transaction, provider_reachable: bool = True
    ) -> "StatusView":
        return cls(
            request_id=transaction.request_id,
            provider=transaction.provider,
            status=transaction.status,
            provider_reference=transaction.provider_reference,
            result_code=transaction.result_code,
            result_description=transaction.result_description,
            amount=transaction.amount,
            currency=transaction.currency,
            settled_at=transaction.settled_at,
            customer_email=transaction.customer_email,
            provider_reachable=provider_reachable,
        )


def _get(obj: Optional[Mapping[str, Any]], key: str, default: Any = None) -> Any:
    if not obj:
        return default
    value = obj.get(key, default)
    return default if value is None else value


def parse_session_customer(session: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Customer snapshot from a checkout session.

    Prefers the JSON ``customerInfo`` metadata written at session creation;
    if that does not parse, rebuilds it field by field from the remaining
    metadata and Stripe's own customer details.
    """
    metadata = _get(session, "metadata", {})
    raw = metadata.get("customerInfo")
    if raw:
        try:
            customer = json.loads(raw) if isinstance(raw, str) else dict(raw)
            if isinstance(customer, dict):
                return customer
        except (TypeError, ValueError) as e:
            logger.error(
                "checkout_session_customer_parse_failed",
                session_id=session.get("id"),
                error=str(e),
            )

    customer = {name: metadata.get(name, "") for name in CUSTOMER_FALLBACK_FIELDS}
    customer["email"] = _get(_get(session, "customer_details", {}), "email", "")
    return customer


class ReconciliationEngine:
    """
    Applies provider outcomes to stored transactions.

    Args:
        store: Transaction store
        providers: Provider clients keyed by ``Transaction.provider``
        notifier: Optional confirmation email sender
    """

    def __init__(
        self,
        store: TransactionStore,
        providers: Dict[str, ProviderClient],
        notifier: Optional[EmailNotifier] = None,
    ):
        self.store = store
        self.providers = providers
        self.notifier = notifier

    # ------------------------------------------------------------------
    # M-Pesa
    # ------------------------------------------------------------------

    async def apply_mpesa_callback(self, callback: StkCallback) -> Optional[TransitionOutcome]:
        """
        Apply an STK callback.

        Result code "0" settles the payment with the receipt, amount and
        transaction date from the callback metadata. "1032" leaves the record
        pending (the prompt may still be answered). Anything else fails it.
        """
        log = logger.bind(checkout_request_id=callback.checkout_request_id)

        if callback.is_still_pending:
            log.info("mpesa_callback_still_pending", result_code=callback.result_code)
            metrics.record_transition("mpesa", "callback", "noop")
            return None

        extra: Dict[str, Any] = {}
        if callback.is_success:
            target = TransactionStatus.SUCCEEDED
            meta = callback.metadata
            extra["provider_reference"] = meta.receipt_number
            extra["settled_at"] = (
                meta.transaction_date.astimezone(timezone.utc)
                if meta.transaction_date
                else datetime.now(timezone.utc)
            )
            if meta.amount is not None:
                extra["amount"] = math.ceil(meta.amount)
            if meta.phone_number:
                extra["phone_number"] = meta.phone_number
            log.info("mpesa_payment_successful", receipt_number=meta.receipt_number)
        else:
            target = TransactionStatus.FAILED
            log.info("mpesa_payment_failed", result_code=callback.result_code)

        return await self._apply(
            "callback",
            "mpesa",
            callback.checkout_request_id,
            target,
            lambda: self.store.apply_transition(
                callback.checkout_request_id,
                target,
                result_code=callback.result_code,
                result_description=callback.result_description,
                extra={k: v for k, v in extra.items() if v is not None},
                event_type="mpesa.stk_callback",
            ),
        )

    # ------------------------------------------------------------------
    # On-demand query
    # ------------------------------------------------------------------

    async def reconcile_on_query(self, correlation_id: str) -> StatusView:
        """
        Return the status of a transaction, asking the provider if still pending.

        Provider failures never change stored state; the last-known view is
        returned with ``provider_reachable=False``.

        Raises:
            NotFound: If no transaction matches ``correlation_id``
        """
        transaction = await self.store.find_by_correlation_id(correlation_id)
        if transaction.status != TransactionStatus.PENDING.value:
            return StatusView.from_transaction(transaction)

        provider = self.providers.get(transaction.provider)
        if provider is None:
            return StatusView.from_transaction(transaction)

        try:
            result = await provider.query_status(transaction.request_id)
        except ProviderError as e:
            logger.warning(
                "status_query_provider_error",
                request_id=transaction.request_id,
                provider=transaction.provider,
                error=e.message,
            )
            return StatusView.from_transaction(transaction, provider_reachable=False)

        target = QUERY_TARGETS.get(result.outcome)
        if target is None:
            metrics.record_transition(transaction.provider, "query", "noop")
            return StatusView.from_transaction(transaction)

        extra: Dict[str, Any] = {}
        raw = result.raw_result or {}
        if transaction.provider == "stripe" and target is TransactionStatus.SUCCEEDED:
            extra = {
                "amount": raw.get("amount_total"),
                "currency": raw.get("currency"),
                "payment_intent_id": raw.get("payment_intent"),
                "provider_reference": raw.get("payment_intent"),
            }

        outcome = await self._apply(
            "query",
            transaction.provider,
            transaction.request_id,
            target,
            lambda: self.store.apply_transition(
                transaction.request_id,
                target,
                result_code=result.result_code,
                result_description=result.result_description,
                extra={k: v for k, v in extra.items() if v is not None},
                event_type=f"{transaction.provider}.status_query",
            ),
        )
        return StatusView.from_transaction(outcome.transaction if outcome else transaction)

    # ------------------------------------------------------------------
    # Stripe webhooks
    # ------------------------------------------------------------------

    async def apply_checkout_session_completed(
        self, session: Mapping[str, Any]
    ) -> TransitionOutcome:
        """
        Upsert the transaction for a completed checkout session.

        The webhook can arrive before, or instead of, the record created at
        session creation, so a miss creates the record.
        """
        session_id = session["id"]
        payment_status = session.get("payment_status")
        target = (
            TransactionStatus.SUCCEEDED
            if payment_status in PAID_PAYMENT_STATUSES
            else TransactionStatus.PENDING
        )

        customer = parse_session_customer(session)
        metadata = _get(session, "metadata", {})
        values: Dict[str, Any] = {
            "payment_intent_id": session.get("payment_intent"),
            "provider_reference": (
                session.get("payment_intent") if target is TransactionStatus.SUCCEEDED else None
            ),
            "amount": session.get("amount_total"),
            "currency": session.get("currency"),
            "discount_amount": _get(_get(session, "total_details", {}), "amount_discount", 0),
            "customer": customer,
            "customer_email": customer.get("email")
            or _get(_get(session, "customer_details", {}), "email", ""),
            "ticket_id": await self._first_line_item_price(session_id),
            "ticket_label": metadata.get("ticketLabel") or None,
            "promo_code": metadata.get("promoCode") or None,
            "idempotency_key": metadata.get("idempotencyKey") or None,
            "details": {
                "session_status": session.get("status"),
                "payment_status": payment_status,
            },
        }

        outcome = await self.store.upsert_checkout_session(
            session_id,
            target,
            values,
            result_code=payment_status,
            result_description="Checkout session completed",
            event_type="checkout.session.completed",
        )
        self._record("webhook", "stripe", outcome, target)
        logger.info(
            "checkout_session_reconciled",
            session_id=session_id,
            created=outcome.created,
            status=outcome.transaction.status,
        )
        if outcome.changed and outcome.transaction.status == TransactionStatus.SUCCEEDED.value:
            await self._notify(outcome.transaction)
        return outcome

    async def apply_checkout_session_expired(
        self, session: Mapping[str, Any]
    ) -> Optional[TransitionOutcome]:
        """An expired session that was never paid is cancelled."""
        session_id = session["id"]
        return await self._apply(
            "webhook",
            "stripe",
            session_id,
            TransactionStatus.CANCELLED,
            lambda: self.store.apply_transition(
                session_id,
                TransactionStatus.CANCELLED,
                result_code="expired",
                result_description="Checkout session expired",
                event_type="checkout.session.expired",
            ),
        )

    async def apply_payment_intent_succeeded(
        self, intent: Mapping[str, Any]
    ) -> Optional[TransitionOutcome]:
        """Settle the transaction owning this PaymentIntent and refresh its amount."""
        intent_id = intent["id"]
        extra = {
            "amount": intent.get("amount"),
            "currency": intent.get("currency"),
            "provider_reference": intent_id,
        }
        return await self._apply(
            "webhook",
            "stripe",
            intent_id,
            TransactionStatus.SUCCEEDED,
            lambda: self.store.apply_transition_by_payment_intent(
                intent_id,
                TransactionStatus.SUCCEEDED,
                result_code=intent.get("status") or "succeeded",
                result_description="Payment succeeded",
                extra={k: v for k, v in extra.items() if v is not None},
                event_type="payment_intent.succeeded",
            ),
        )

    async def apply_payment_intent_failed(
        self, intent: Mapping[str, Any]
    ) -> Optional[TransitionOutcome]:
        """Fail the transaction owning this PaymentIntent, keeping Stripe's failure code."""
        intent_id = intent["id"]
        error = _get(intent, "last_payment_error", {})
        failure_code = error.get("code")
        failure_message = error.get("message") or "Unknown error"
        return await self._apply(
            "webhook",
            "stripe",
            intent_id,
            TransactionStatus.FAILED,
            lambda: self.store.apply_transition_by_payment_intent(
                intent_id,
                TransactionStatus.FAILED,
                result_code=failure_code,
                result_description=failure_message,
                extra={
                    "details": {"failure_code": failure_code, "failure_message": failure_message}
                },
                event_type="payment_intent.payment_failed",
            ),
        )

    async def apply_charge_refunded(
        self, charge: Mapping[str, Any]
    ) -> Optional[TransitionOutcome]:
        """Refund the succeeded transaction behind this charge."""
        intent_id = charge.get("payment_intent")
        if not intent_id:
            logger.warning("charge_refunded_no_payment_intent", charge_id=charge.get("id"))
            return None

        return await self._apply(
            "webhook",
            "stripe",
            intent_id,
            TransactionStatus.REFUNDED,
            lambda: self.store.apply_transition_by_payment_intent(
                intent_id,
                TransactionStatus.REFUNDED,
                result_code="refunded",
                result_description="Charge refunded",
                extra={
                    "refund_amount": charge.get("amount_refunded") or 0,
                    "refunded_at": datetime.now(timezone.utc),
                },
                event_type="charge.refunded",
            ),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _apply(
        self,
        trigger: str,
        provider: str,
        lookup: str,
        target: TransactionStatus,
        apply: Callable[[], Awaitable[TransitionOutcome]],
    ) -> Optional[TransitionOutcome]:
        try:
            outcome = await apply()
        except NotFound:
            logger.warning(
                "reconciliation_transaction_not_found",
                trigger=trigger,
                provider=provider,
                lookup=lookup,
            )
            metrics.record_transition(provider, trigger, "not_found")
            return None

        self._record(trigger, provider, outcome, target)
        if outcome.changed and outcome.transaction.status == TransactionStatus.SUCCEEDED.value:
            await self._notify(outcome.transaction)
        return outcome

    def _record(
        self,
        trigger: str,
        provider: str,
        outcome: TransitionOutcome,
        target: TransactionStatus,
    ) -> None:
        if outcome.decision is TransitionDecision.REJECT:
            logger.warning(
                "transition_rejected",
                trigger=trigger,
                request_id=outcome.transaction.request_id,
                current_status=outcome.transaction.status,
                requested_status=target.value,
            )
        metrics.record_transition(
            provider,
            trigger,
            outcome.decision.value,
            from_status=outcome.previous_status,
            to_status=outcome.transaction.status,
        )

    async def _first_line_item_price(self, session_id: str) -> Optional[str]:
        provider = self.providers.get("stripe")
        lookup = getattr(provider, "first_line_item_price", None)
        if lookup is None:
            return None
        try:
            return await lookup(session_id)
        except ProviderError as e:
            logger.warning("checkout_line_items_unavailable", session_id=session_id, error=e.message)
            return None

    async def _notify(self, transaction: Transaction) -> None:
        if self.notifier is None:
            return
        try:
            await self.notifier.send_confirmation(transaction)
        except Exception as e:
            # Status is already committed; a lost email is logged only
            logger.error(
                "confirmation_email_failed",
                request_id=transaction.request_id,
                email=transaction.customer_email,
                error=str(e),
            )
