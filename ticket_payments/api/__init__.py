"""FastAPI application and routes."""
from .main import app
from .schemas import (
    CheckoutSessionRequest,
    CustomerInfo,
    FreeRegistrationRequest,
    MpesaInitiateRequest,
)

__all__ = [
    "app",
    "CheckoutSessionRequest",
    "CustomerInfo",
    "FreeRegistrationRequest",
    "MpesaInitiateRequest",
]
