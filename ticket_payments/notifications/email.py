"""
Registration confirmation emails over SMTP (STARTTLS).

Delivery is best-effort: callers log and swallow failures, and a missed
email is never retried or backfilled.
"""
import asyncio
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Any, Callable, Optional

import structlog

from ticket_payments.config import Settings, get_settings
from ticket_payments.database.models import Transaction
from ticket_payments.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)

PAYMENT_METHOD_LABELS = {
    "mpesa": "M-Pesa",
    "stripe": "Card",
    "free": "Complimentary",
}


def format_amount(transaction: Transaction) -> str:
    """Human amount: M-Pesa stores whole KES, Stripe stores minor units."""
    currency = (transaction.currency or "").upper()
    if transaction.provider == "stripe":
        return f"{currency} {transaction.amount / 100:,.2f}"
    return f"{currency} {transaction.amount:,}"


def customer_name(transaction: Transaction) -> str:
    customer = transaction.customer or {}
    name = " ".join(
        part for part in (customer.get("firstName"), customer.get("lastName")) if part
    )
    return name or transaction.customer_email


class EmailNotifier:
    """
    Sends a confirmation email for a succeeded transaction.

    Args:
        settings: Application settings (defaults to ``get_settings()``)
        smtp_factory: ``smtplib.SMTP``-compatible constructor
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        smtp_factory: Callable[..., Any] = smtplib.SMTP,
    ) -> None:
        self.settings = settings or get_settings()
        self._smtp_factory = smtp_factory

    @property
    def enabled(self) -> bool:
        return bool(
            self.settings.notifications_enabled
            and self.settings.smtp_host
            and self.settings.sender_address
        )

    def build_message(self, transaction: Transaction) -> EmailMessage:
        """Plain-text and HTML confirmation for one transaction."""
        event_name = self.settings.event_name
        name = customer_name(transaction)
        rows = [
            ("Event", event_name),
            ("Ticket Type", transaction.ticket_label or transaction.ticket_id or "Ticket"),
            ("Amount Paid", format_amount(transaction)),
            ("Payment Method", PAYMENT_METHOD_LABELS.get(transaction.provider, transaction.provider)),
        ]
        if transaction.provider == "mpesa" and transaction.provider_reference:
            rows.append(("M-Pesa Receipt", transaction.provider_reference))

        text_rows = "\n".join(f"{label}: {value}" for label, value in rows)
        html_rows = "".join(
            f"<tr><td><strong>{escape(label)}</strong></td><td>{escape(str(value))}</td></tr>"
            for label, value in rows
        )

        message = EmailMessage()
        message["Subject"] = f"Registration Confirmed - {event_name}"
        message["From"] = f"{event_name} <{self.settings.sender_address}>"
        message["To"] = transaction.customer_email
        message.set_content(
            f"Dear {name},\n\n"
            f"Thank you for registering for {event_name}. Your payment is confirmed.\n\n"
            f"{text_rows}\n"
        )
        message.add_alternative(
            "<html><body>"
            f"<p>Dear {escape(name)},</p>"
            f"<p>Thank you for registering for <strong>{escape(event_name)}</strong>. "
            "Your payment is confirmed.</p>"
            f"<table>{html_rows}</table>"
            "</body></html>",
            subtype="html",
        )
        return message

    def _deliver(self, message: EmailMessage) -> None:
        settings = self.settings
        with self._smtp_factory(
            settings.smtp_host, settings.smtp_port, timeout=settings.provider_timeout_seconds
        ) as server:
            server.starttls()
            if settings.smtp_user:
                server.login(settings.smtp_user, settings.smtp_password)
            server.send_message(message)

    async def send_confirmation(self, transaction: Transaction) -> bool:
        """
        Send the confirmation email.

        Returns:
            bool: False if notifications are disabled

        Raises:
            smtplib.SMTPException, OSError: On delivery failure
        """
        if not self.enabled:
            metrics.record_notification("disabled")
            logger.info("confirmation_email_skipped", request_id=transaction.request_id)
            return False

        message = self.build_message(transaction)
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, self._deliver, message)
        except (smtplib.SMTPException, OSError):
            metrics.record_notification("failed")
            raise

        metrics.record_notification("sent")
        logger.info(
            "confirmation_email_sent",
            request_id=transaction.request_id,
            email=transaction.customer_email,
        )
        return True
