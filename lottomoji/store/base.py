"""Interface of the persistent document store used by the draw engine."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DocKey = tuple[str, str]

_BLIND = object()


class StoreError(RuntimeError):
    """Base class for document store failures."""


class StoreUnavailable(StoreError):
    """The backing store could not be reached or refused the operation."""


class TransactionConflict(StoreError):
    """A document read by a transaction changed before the transaction committed.

    Raised internally; :meth:`SettlementStore.run_transaction` retries on it.
    """


class TransactionAborted(StoreError):
    """A transaction kept conflicting and ran out of attempts."""


@dataclass(frozen=True)
class StoredDocument:
    """Snapshot of a document as read from the store.

    Attributes
    ----------
    collection : str
        Collection the document lives in.
    key : str
        Document key within ``collection``.
    fields : Mapping[str, Any]
        Document fields. Treat as read-only.
    """

    collection: str
    key: str
    fields: Mapping[str, Any] = field(default_factory=dict)

    @property
    def id(self) -> str:
        return self.key

    def get(self, name: str, default: Any = None) -> Any:
        return self.fields.get(name, default)


@dataclass
class PendingWrite:
    collection: str
    key: str
    fields: dict[str, Any]
    merge: bool
    expected_version: Any
    """``None`` when the document must not exist, an int when it must still be
    at that version, or the blind-write marker when it was never read."""


class StoreTransaction(ABC):
    """Read-then-write unit of work handed to a transaction function.

    All reads must happen before the first write. Writes are buffered and
    applied atomically when the transaction function returns; if any document
    read by the transaction changed in the meantime the whole attempt is
    discarded and retried.
    """

    def __init__(self) -> None:
        self._read_versions: dict[DocKey, Optional[int]] = {}
        self._writes: list[PendingWrite] = []

    # -------- backend hooks --------
    @abstractmethod
    def _load(self, collection: str, key: str) -> Optional[tuple[dict[str, Any], int]]:
        """Return ``(fields, version)`` or ``None`` when the document is absent."""

    @abstractmethod
    def _query(
        self, collection: str, field_name: str, value: Any, limit: Optional[int]
    ) -> list[tuple[str, dict[str, Any], int]]:
        """Return ``(key, fields, version)`` for documents matching ``value``."""

    # -------- public API --------
    def get(self, collection: str, key: str) -> Optional[StoredDocument]:
        self._ensure_reading()
        loaded = self._load(collection, key)
        if loaded is None:
            self._remember(collection, key, None)
            return None
        data, version = loaded
        self._remember(collection, key, version)
        return StoredDocument(collection, key, dict(data))

    def query_by_field(
        self,
        collection: str,
        field_name: str,
        value: Any,
        *,
        limit: Optional[int] = None,
    ) -> list[StoredDocument]:
        self._ensure_reading()
        docs: list[StoredDocument] = []
        for key, data, version in self._query(collection, field_name, value, limit):
            self._remember(collection, key, version)
            docs.append(StoredDocument(collection, key, dict(data)))
        return docs

    def set(
        self,
        collection: str,
        key: str,
        fields: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        doc_key = (collection, key)
        expected = self._read_versions.get(doc_key, _BLIND)
        self._writes.append(
            PendingWrite(collection, key, dict(fields), merge, expected)
        )

    @property
    def writes(self) -> list[PendingWrite]:
        return list(self._writes)

    def _ensure_reading(self) -> None:
        if self._writes:
            raise StoreError("Transactions must perform all reads before any write")

    def _remember(self, collection: str, key: str, version: Optional[int]) -> None:
        doc_key = (collection, key)
        self._read_versions.setdefault(doc_key, version)


def is_blind(write: PendingWrite) -> bool:
    return write.expected_version is _BLIND


def resulting_fields(
    write: PendingWrite, current: Optional[dict[str, Any]]
) -> dict[str, Any]:
    """Return the fields ``write`` leaves behind when applied on top of ``current``."""

    if write.merge and current is not None:
        combined = dict(current)
        combined.update(write.fields)
        return combined
    return dict(write.fields)


class SettlementStore(ABC):
    """Keyed document store with query and transaction primitives.

    Implementations must make :meth:`run_transaction` atomic across processes:
    either every buffered write of one transaction attempt becomes visible, or
    none does.
    """

    def __init__(self, *, max_attempts: int = 5) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        self.max_attempts = max_attempts

    @abstractmethod
    def get_document(self, collection: str, key: str) -> Optional[StoredDocument]:
        """Return the document or ``None`` when it does not exist."""

    @abstractmethod
    def set_document(
        self,
        collection: str,
        key: str,
        fields: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        """Create or overwrite a document; ``merge`` keeps unspecified fields."""

    @abstractmethod
    def add_document(self, collection: str, fields: Mapping[str, Any]) -> str:
        """Create a document under a store-assigned key and return the key."""

    @abstractmethod
    def query_by_field(
        self,
        collection: str,
        field_name: str,
        value: Any,
        *,
        limit: Optional[int] = None,
    ) -> list[StoredDocument]:
        """Return documents whose top-level ``field_name`` equals ``value``."""

    @abstractmethod
    def list_all(self, collection: str) -> list[StoredDocument]:
        """Return every document in ``collection``."""

    @abstractmethod
    def _run_once(self, fn: Callable[[StoreTransaction], T]) -> T:
        """Run one transaction attempt, raising :class:`TransactionConflict`
        when the buffered writes cannot be applied."""

    def run_transaction(self, fn: Callable[[StoreTransaction], T]) -> T:
        """Run ``fn`` atomically, retrying on conflicting concurrent writes.

        ``fn`` may be invoked several times and must not have side effects
        outside the transaction it receives.

        Raises
        ------
        TransactionAborted
            If every attempt conflicted.
        StoreUnavailable
            If the store cannot be reached.
        """

        for attempt in range(1, self.max_attempts + 1):
            try:
                return self._run_once(fn)
            except TransactionConflict as exc:
                logger.debug(
                    f"Transaction attempt {attempt}/{self.max_attempts} conflicted: {exc}"
                )
        raise TransactionAborted(
            f"Transaction aborted after {self.max_attempts} conflicting attempts"
        )


__all__ = [
    "PendingWrite",
    "SettlementStore",
    "StoreError",
    "StoreTransaction",
    "StoreUnavailable",
    "StoredDocument",
    "TransactionAborted",
    "TransactionConflict",
    "is_blind",
    "resulting_fields",
]
