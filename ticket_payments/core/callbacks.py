"""
M-Pesa STK callback parsing.

Daraja posts ``{"Body": {"stkCallback": {...}}}`` where the settlement
details arrive as a loosely typed ``CallbackMetadata.Item`` list of
``{"Name": ..., "Value": ...}`` pairs. Failed and cancelled callbacks carry
no metadata at all, so every field is optional.
"""
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog

from ticket_payments.core.errors import ValidationError

logger = structlog.get_logger(__name__)

RESULT_OK = "0"
RESULT_USER_CANCELLED = "1032"

# Daraja timestamps are East Africa Time without an offset
EAT = timezone(timedelta(hours=3))
TRANSACTION_DATE_FORMAT = "%Y%m%d%H%M%S"


@dataclass
class CallbackMetadata:
    """Named items from ``CallbackMetadata.Item``."""

    amount: Optional[float] = None
    receipt_number: Optional[str] = None
    transaction_date: Optional[datetime] = None
    phone_number: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_items(cls, items: Optional[List[Dict[str, Any]]]) -> "CallbackMetadata":
        values: Dict[str, Any] = {}
        for item in items or []:
            if isinstance(item, dict) and "Name" in item:
                values[item["Name"]] = item.get("Value")

        metadata = cls(
            amount=_to_float(values.pop("Amount", None)),
            receipt_number=_to_str(values.pop("MpesaReceiptNumber", None)),
            transaction_date=parse_transaction_date(values.pop("TransactionDate", None)),
            phone_number=_to_str(values.pop("PhoneNumber", None)),
        )
        metadata.extra = values
        return metadata


@dataclass
class StkCallback:
    merchant_request_id: Optional[str]
    checkout_request_id: str
    result_code: str
    result_description: Optional[str]
    metadata: CallbackMetadata

    @property
    def is_success(self) -> bool:
        return self.result_code == RESULT_OK

    @property
    def is_still_pending(self) -> bool:
        """The user dismissed or has not answered the prompt."""
        return self.result_code == RESULT_USER_CANCELLED


def parse_transaction_date(value: Any) -> Optional[datetime]:
    """Parse a ``YYYYMMDDHHmmss`` value (int or str) as East Africa Time."""
    if value in (None, ""):
        return None
    try:
        parsed = datetime.strptime(str(value), TRANSACTION_DATE_FORMAT)
    except ValueError:
        logger.warning("mpesa_callback_bad_transaction_date", value=value)
        return None
    return parsed.replace(tzinfo=EAT)


def parse_stk_callback(body: Any) -> StkCallback:
    """
    Extract an STK callback from a Daraja request body.

    Raises:
        ValidationError: If ``Body.stkCallback`` or its CheckoutRequestID is missing
    """
    stk = (body or {}).get("Body", {}).get("stkCallback") if isinstance(body, dict) else None
    if not isinstance(stk, dict):
        raise ValidationError("Invalid callback format", details=["Body.stkCallback"])

    checkout_request_id = stk.get("CheckoutRequestID")
    if not checkout_request_id:
        raise ValidationError(
            "Callback missing CheckoutRequestID", details=["Body.stkCallback.CheckoutRequestID"]
        )

    result_code = stk.get("ResultCode")
    return StkCallback(
        merchant_request_id=stk.get("MerchantRequestID"),
        checkout_request_id=str(checkout_request_id),
        result_code=str(result_code) if result_code is not None else "",
        result_description=stk.get("ResultDesc"),
        metadata=CallbackMetadata.from_items((stk.get("CallbackMetadata") or {}).get("Item")),
    )


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)
