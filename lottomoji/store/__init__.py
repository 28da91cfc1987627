"""Document store abstraction consumed by the draw coordinator."""

from .base import (
    SettlementStore,
    StoreError,
    StoreTransaction,
    StoreUnavailable,
    StoredDocument,
    TransactionAborted,
    TransactionConflict,
)
from .memory import InMemoryDocumentStore
from .sql import SQLAlchemyDocumentStore

__all__ = [
    "InMemoryDocumentStore",
    "SQLAlchemyDocumentStore",
    "SettlementStore",
    "StoreError",
    "StoreTransaction",
    "StoreUnavailable",
    "StoredDocument",
    "TransactionAborted",
    "TransactionConflict",
]
