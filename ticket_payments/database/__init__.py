"""Database package for ticket payments."""
from .connection import close_db, create_session_factory, get_session_factory, init_db
from .models import Base, Transaction, TransactionEvent

__all__ = [
    "Base",
    "Transaction",
    "TransactionEvent",
    "close_db",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
