"""Storage backends for the ledger."""
from .base import OrderStore, ShopStore, Storage, TransactionStore, UnitOfWork
from .connection import close_db, get_engine, get_session_factory, init_db
from .memory import InMemoryStorage
from .models import Base, OrderRecord, ShopRecord, TransactionRecord
from .sql import SqlStorage

__all__ = [
    "Base",
    "InMemoryStorage",
    "OrderRecord",
    "OrderStore",
    "ShopRecord",
    "ShopStore",
    "SqlStorage",
    "Storage",
    "TransactionRecord",
    "TransactionStore",
    "UnitOfWork",
    "close_db",
    "get_engine",
    "get_session_factory",
    "init_db",
]
