"""
Pydantic schemas for API request/response models.

The browser client speaks camelCase; fields are snake_case in Python and
aliased on the wire.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerInfo(CamelModel):
    """Buyer identity captured at initiation."""

    first_name: str = Field(..., min_length=1, description="First name")
    last_name: str = Field(..., min_length=1, description="Last name")
    email: str = Field(..., min_length=3, description="Email address")
    phone: Optional[str] = Field(default=None, description="Contact phone")
    country: str = Field(..., min_length=1, description="Country")
    company: Optional[str] = Field(default=None, description="Company")
    job_title: Optional[str] = Field(default=None, description="Job title")
    agree_to_terms: Optional[bool] = Field(default=None, description="Terms accepted")

    def snapshot(self) -> Dict[str, Any]:
        """Customer dict as stored and sent to providers (camelCase keys)."""
        return self.model_dump(by_alias=True, exclude_none=True)


class MpesaInitiateRequest(CamelModel):
    """Request schema for an STK Push."""

    phone_number: str = Field(..., min_length=9, description="Payer phone (07XX... or 254XX...)")
    amount: float = Field(..., gt=0, description="Amount in KES")
    ticket_id: Optional[str] = Field(default=None, description="Ticket reference")
    ticket_label: Optional[str] = Field(default=None, description="Ticket display name")
    customer_info: CustomerInfo
    promo_code: Optional[str] = Field(default=None, description="Promo code")

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "examples": [
                {
                    "phoneNumber": "0712345678",
                    "amount": 100,
                    "ticketId": "early-bird",
                    "ticketLabel": "Early Bird",
                    "customerInfo": {
                        "firstName": "Jane",
                        "lastName": "Doe",
                        "email": "jane@example.com",
                        "phone": "0712345678",
                        "country": "Kenya",
                    },
                }
            ]
        },
    )


class MpesaInitiateResponse(CamelModel):
    success: bool = True
    checkout_request_id: str
    message: str


class MpesaStatusResponse(CamelModel):
    """Last-known (or freshly reconciled) status of an STK Push."""

    success: bool = True
    status: str
    mpesa_receipt_number: Optional[str] = None
    result_desc: Optional[str] = None
    amount: int
    transaction_date: Optional[str] = None
    provider_reachable: bool = True


class MpesaQueryResponse(CamelModel):
    """Raw Daraja query answer; no local state is changed."""

    success: bool = True
    result_code: Optional[str] = None
    result_desc: Optional[str] = None
    merchant_request_id: Optional[str] = None
    checkout_request_id: Optional[str] = None
    outcome: str


class CheckoutSessionRequest(CamelModel):
    """Request schema for a Stripe embedded checkout session."""

    ticket_id: str = Field(..., min_length=1, description="Stripe price id")
    ticket_label: Optional[str] = Field(default=None, description="Ticket display name")
    promo_code: Optional[str] = Field(default=None, description="Promotion code")
    idempotency_key: Optional[str] = Field(default=None, description="Client idempotency key")
    customer_info: CustomerInfo


class CheckoutSessionResponse(CamelModel):
    success: bool = True
    client_secret: Optional[str] = None
    session_id: str


class SessionStatusResponse(BaseModel):
    success: bool = True
    status: str
    payment_status: str
    customer_email: Optional[str] = None
    provider_reachable: bool = True


class FreeRegistrationRequest(CamelModel):
    """Request schema for a zero-amount ticket."""

    ticket_id: Optional[str] = Field(default=None, description="Ticket reference")
    ticket_label: Optional[str] = Field(default=None, description="Ticket display name")
    idempotency_key: Optional[str] = Field(default=None, description="Client idempotency key")
    customer_info: CustomerInfo


class FreeRegistrationResponse(CamelModel):
    success: bool = True
    message: str
    registration_id: str
    session_id: str


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


class PaymentListResponse(BaseModel):
    success: bool = True
    payments: List[Dict[str, Any]]
    pagination: Pagination


class WebhookResponse(BaseModel):
    received: bool = True
    status: Optional[str] = None
    event_type: Optional[str] = None


class HealthCheckResponse(BaseModel):
    """Response schema for health check."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual checks")
    message: Optional[str] = Field(default=None, description="Health message")
