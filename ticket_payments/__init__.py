"""Payment backend for event ticket sales (Stripe checkout and M-Pesa STK Push)."""

__version__ = "1.0.0"
