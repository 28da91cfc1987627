"""Thread-safe in-memory document store."""

from __future__ import annotations

import copy
import threading
from typing import Any, Callable, Mapping, Optional, TypeVar

from ..models.utils import generate_document_key
from .base import (
    DocKey,
    PendingWrite,
    SettlementStore,
    StoreTransaction,
    StoredDocument,
    TransactionConflict,
    is_blind,
    resulting_fields,
)

T = TypeVar("T")


class _MemoryTransaction(StoreTransaction):
    def __init__(self, store: "InMemoryDocumentStore") -> None:
        super().__init__()
        self._store = store

    def _load(self, collection: str, key: str) -> Optional[tuple[dict[str, Any], int]]:
        return self._store._snapshot(collection, key)

    def _query(
        self, collection: str, field_name: str, value: Any, limit: Optional[int]
    ) -> list[tuple[str, dict[str, Any], int]]:
        return self._store._matching(collection, field_name, value, limit)


class InMemoryDocumentStore(SettlementStore):
    """Document store kept in a process-local dict.

    Transactions follow the same optimistic rules as
    :class:`~lottomoji.store.sql.SQLAlchemyDocumentStore`: reads record the
    version they saw, and the commit is validated and applied under one lock.
    Threads sharing an instance therefore behave like independent processes
    sharing a database.
    """

    def __init__(self, *, max_attempts: int = 5) -> None:
        super().__init__(max_attempts=max_attempts)
        self._docs: dict[DocKey, tuple[dict[str, Any], int]] = {}
        self._lock = threading.RLock()

    # -------- internal helpers --------
    def _snapshot(self, collection: str, key: str) -> Optional[tuple[dict[str, Any], int]]:
        with self._lock:
            record = self._docs.get((collection, key))
            if record is None:
                return None
            data, version = record
            return copy.deepcopy(data), version

    def _matching(
        self, collection: str, field_name: str, value: Any, limit: Optional[int]
    ) -> list[tuple[str, dict[str, Any], int]]:
        matches: list[tuple[str, dict[str, Any], int]] = []
        with self._lock:
            for (coll, key), (data, version) in self._docs.items():
                if coll != collection or field_name not in data:
                    continue
                if data[field_name] != value:
                    continue
                matches.append((key, copy.deepcopy(data), version))
                if limit is not None and len(matches) >= limit:
                    break
        return matches

    def _write(self, collection: str, key: str, fields: dict[str, Any]) -> None:
        current = self._docs.get((collection, key))
        version = 1 if current is None else current[1] + 1
        self._docs[(collection, key)] = (copy.deepcopy(fields), version)

    def _validate(self, write: PendingWrite) -> None:
        if is_blind(write):
            return
        current = self._docs.get((write.collection, write.key))
        current_version = None if current is None else current[1]
        if current_version != write.expected_version:
            raise TransactionConflict(
                f"{write.collection}/{write.key} changed during the transaction"
            )

    # -------- SettlementStore API --------
    def get_document(self, collection: str, key: str) -> Optional[StoredDocument]:
        snapshot = self._snapshot(collection, key)
        if snapshot is None:
            return None
        return StoredDocument(collection, key, snapshot[0])

    def set_document(
        self,
        collection: str,
        key: str,
        fields: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        with self._lock:
            current = self._docs.get((collection, key))
            write = PendingWrite(collection, key, dict(fields), merge, None)
            self._write(
                collection,
                key,
                resulting_fields(write, None if current is None else current[0]),
            )

    def add_document(self, collection: str, fields: Mapping[str, Any]) -> str:
        with self._lock:
            key = generate_document_key()
            while (collection, key) in self._docs:
                key = generate_document_key()
            self._write(collection, key, dict(fields))
            return key

    def query_by_field(
        self,
        collection: str,
        field_name: str,
        value: Any,
        *,
        limit: Optional[int] = None,
    ) -> list[StoredDocument]:
        return [
            StoredDocument(collection, key, data)
            for key, data, _ in self._matching(collection, field_name, value, limit)
        ]

    def list_all(self, collection: str) -> list[StoredDocument]:
        with self._lock:
            return [
                StoredDocument(coll, key, copy.deepcopy(data))
                for (coll, key), (data, _) in self._docs.items()
                if coll == collection
            ]

    def _run_once(self, fn: Callable[[StoreTransaction], T]) -> T:
        tx = _MemoryTransaction(self)
        result = fn(tx)
        with self._lock:
            writes = tx.writes
            # Validate every write against the pre-commit state, then apply.
            for write in writes:
                self._validate(write)
            for write in writes:
                current = self._docs.get((write.collection, write.key))
                self._write(
                    write.collection,
                    write.key,
                    resulting_fields(write, None if current is None else current[0]),
                )
        return result


__all__ = ["InMemoryDocumentStore"]
