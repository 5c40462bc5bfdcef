"""Database package for the payment security core."""
from .connection import close_db, create_engine, create_session_factory, get_session_factory, init_db
from .models import Base, CustomerOrderKey, FirstOrderGrant, PaymentRecordRow
from .repository import PaymentRepository, SqlOrderHistory

__all__ = [
    "Base",
    "CustomerOrderKey",
    "FirstOrderGrant",
    "PaymentRecordRow",
    "PaymentRepository",
    "SqlOrderHistory",
    "close_db",
    "create_engine",
    "create_session_factory",
    "get_session_factory",
    "init_db",
]
