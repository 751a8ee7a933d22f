"""
Payment initiation.

Validates caller input, asks the provider to start a payment and records
the pending transaction once the provider has accepted the request.
Acceptance is not payment: the record only settles through reconciliation.
"""
import math
import re
import secrets
import string
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import structlog

from ticket_payments.config import Settings, get_settings
from ticket_payments.core.errors import DuplicateKey, ProviderError, ValidationError
from ticket_payments.core.state_machine import TransactionStatus
from ticket_payments.core.store import TransactionStore
from ticket_payments.database.models import Transaction
from ticket_payments.integrations.mpesa_client import MpesaClient, format_phone_number
from ticket_payments.integrations.provider import InitiationResult
from ticket_payments.integrations.stripe_client import StripeCheckoutClient
from ticket_payments.monitoring.metrics import metrics
from ticket_payments.notifications.email import EmailNotifier

logger = structlog.get_logger(__name__)

REQUIRED_CUSTOMER_FIELDS = ("firstName", "lastName", "email", "phone", "country")
# The STK payer phone stands in for the contact phone
MPESA_REQUIRED_CUSTOMER_FIELDS = ("firstName", "lastName", "email", "country")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_ID_ALPHABET = string.ascii_lowercase + string.digits


def validate_customer(
    customer: Optional[Dict[str, Any]],
    required: Tuple[str, ...] = REQUIRED_CUSTOMER_FIELDS,
) -> Dict[str, Any]:
    """
    Check the customer identity block.

    Raises:
        ValidationError: Listing every missing required field
    """
    customer = customer or {}
    missing = [name for name in required if not customer.get(name)]
    if missing:
        raise ValidationError(
            "Missing required customer information",
            details=[f"customerInfo.{name}" for name in missing],
        )

    email = str(customer["email"]).lower().strip()
    if not EMAIL_PATTERN.match(email):
        raise ValidationError("Invalid email format", details=["customerInfo.email"])
    return {**customer, "email": email}


def free_registration_id(clock: Callable[[], float] = time.time) -> str:
    """``free_<epoch ms>_<9 random base36 chars>``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"free_{int(clock() * 1000)}_{suffix}"


@dataclass
class Initiated:
    """A stored pending (or free, succeeded) transaction and the provider's answer."""

    transaction: Transaction
    result: Optional[InitiationResult] = None


class PaymentInitiator:
    """
    Starts payments on either rail.

    Args:
        store: Transaction store
        mpesa: M-Pesa client
        stripe_client: Stripe checkout client
        notifier: Optional confirmation email sender, used by free registration
        settings: Application settings
    """

    def __init__(
        self,
        store: TransactionStore,
        mpesa: Optional[MpesaClient] = None,
        stripe_client: Optional[StripeCheckoutClient] = None,
        notifier: Optional[EmailNotifier] = None,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.mpesa = mpesa
        self.stripe = stripe_client
        self.notifier = notifier
        self.settings = settings or get_settings()

    async def initiate_mpesa(
        self,
        phone_number: str,
        amount: float,
        customer: Dict[str, Any],
        ticket_id: Optional[str] = None,
        ticket_label: Optional[str] = None,
        promo_code: Optional[str] = None,
    ) -> Initiated:
        """
        Send an STK Push and record the pending transaction.

        Raises:
            ValidationError: Bad amount, phone number or customer block
            ProviderRejected: Daraja declined the request
            ProviderUnreachable: Daraja could not be reached
            DuplicateKey: The returned CheckoutRequestID is already stored
        """
        customer = validate_customer(customer, MPESA_REQUIRED_CUSTOMER_FIELDS)
        self._check_mpesa_amount(amount)
        phone = format_phone_number(phone_number)
        if self.mpesa is None:
            raise ValidationError("M-Pesa payments are not configured")

        description = f"Payment for {ticket_label or 'Event Ticket'}"
        try:
            result = await self.mpesa.initiate(
                phone, amount, reference=ticket_id or "TICKET", description=description
            )
        except ProviderError as e:
            metrics.record_initiation("mpesa", e.error_code)
            raise

        whole_amount = math.ceil(float(amount))
        transaction = await self.store.create(
            Transaction(
                provider="mpesa",
                request_id=result.correlation_ids["checkout_request_id"],
                merchant_request_id=result.correlation_ids["merchant_request_id"],
                amount=whole_amount,
                currency="KES",
                customer_email=customer["email"],
                customer=customer,
                phone_number=phone,
                ticket_id=ticket_id,
                ticket_label=ticket_label,
                promo_code=promo_code or None,
                description=description,
                status=TransactionStatus.PENDING.value,
                details={},
            )
        )
        metrics.record_initiation("mpesa", "accepted", whole_amount)
        logger.info(
            "mpesa_transaction_saved",
            checkout_request_id=transaction.request_id,
            customer_email=transaction.customer_email,
        )
        return Initiated(transaction=transaction, result=result)

    async def create_checkout_session(
        self,
        ticket_id: str,
        customer: Dict[str, Any],
        promo_code: Optional[str] = None,
        idempotency_key: Optional[str] = None,
        ticket_label: Optional[str] = None,
    ) -> Initiated:
        """
        Create a Stripe embedded checkout session and its pending record.

        The ``checkout.session.completed`` webhook may land first; the record
        it created is kept as is.
        """
        customer = validate_customer(customer)
        if not ticket_id:
            raise ValidationError("ticketId is required", details=["ticketId"])
        if self.stripe is None:
            raise ValidationError("Card payments are not configured")

        try:
            discounts: List[Dict[str, str]] = []
            if promo_code:
                discounts = await self.stripe.resolve_promo_code(promo_code)

            result = await self.stripe.initiate(
                customer["email"],
                0,
                reference=ticket_id,
                description=ticket_label or "",
                customer=customer,
                promo_code=promo_code,
                idempotency_key=idempotency_key,
                discounts=discounts,
            )
        except (ProviderError, ValidationError) as e:
            metrics.record_initiation("stripe", e.error_code)
            raise

        session_id = result.correlation_ids["session_id"]
        record = Transaction(
            provider="stripe",
            request_id=session_id,
            amount=result.raw.get("amount_total") or 0,
            currency=result.raw.get("currency") or "usd",
            customer_email=customer["email"],
            customer=customer,
            ticket_id=ticket_id,
            ticket_label=ticket_label,
            promo_code=promo_code or None,
            idempotency_key=idempotency_key or None,
            status=TransactionStatus.PENDING.value,
            details={},
        )
        try:
            transaction = await self.store.create(record)
        except DuplicateKey:
            logger.info("checkout_session_already_recorded", session_id=session_id)
            transaction = await self.store.find_by_correlation_id(session_id)

        metrics.record_initiation("stripe", "accepted", transaction.amount)
        return Initiated(transaction=transaction, result=result)

    async def register_free(
        self,
        ticket_id: Optional[str],
        customer: Dict[str, Any],
        ticket_label: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Initiated:
        """
        Register a zero-amount ticket.

        No provider is involved: the record is created already succeeded and
        the confirmation email is sent best-effort.
        """
        customer = validate_customer(customer)
        registration_id = free_registration_id()

        transaction = await self.store.create(
            Transaction(
                provider="free",
                request_id=registration_id,
                amount=0,
                currency="usd",
                customer_email=customer["email"],
                customer=customer,
                ticket_id=ticket_id,
                ticket_label=ticket_label,
                idempotency_key=idempotency_key or None,
                status=TransactionStatus.SUCCEEDED.value,
                result_code="free",
                result_description="Free registration",
                settled_at=datetime.now(timezone.utc),
                details={"registration_type": "free"},
            )
        )
        metrics.record_initiation("free", "accepted", 0)
        logger.info(
            "free_registration_created",
            registration_id=registration_id,
            customer_email=transaction.customer_email,
        )

        if self.notifier is not None:
            try:
                await self.notifier.send_confirmation(transaction)
            except Exception as e:
                logger.error(
                    "confirmation_email_failed",
                    request_id=registration_id,
                    email=transaction.customer_email,
                    error=str(e),
                )
        return Initiated(transaction=transaction)

    def _check_mpesa_amount(self, amount: Any) -> None:
        try:
            value = float(amount)
        except (TypeError, ValueError):
            raise ValidationError("amount must be a number", details=["amount"]) from None

        low, high = self.settings.mpesa_min_amount, self.settings.mpesa_max_amount
        if not (low <= value <= high):
            raise ValidationError(
                f"Amount must be between {low} and {high} KES", details=["amount"]
            )
