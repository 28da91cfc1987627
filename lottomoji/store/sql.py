"""SQLAlchemy-backed implementation of :class:`SettlementStore`."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from ..models import Document
from ..models.utils import generate_document_key
from .base import (
    DocKey,
    PendingWrite,
    SettlementStore,
    StoreTransaction,
    StoreUnavailable,
    StoredDocument,
    TransactionConflict,
    is_blind,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@contextmanager
def _translate_errors() -> Iterator[None]:
    """Re-raise connectivity failures as :class:`StoreUnavailable`."""

    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        logger.error(f"Document store unavailable: {exc}")
        raise StoreUnavailable(f"Document store unavailable: {exc.orig}") from exc


def _field_clause(field_name: str, value: Any):
    """Return a SQL clause comparing a top-level JSON field, or ``None`` when the
    value type has no portable JSON accessor."""

    element = Document.data[field_name]
    if isinstance(value, bool):
        return element.as_boolean() == value
    if isinstance(value, int):
        return element.as_integer() == value
    if isinstance(value, float):
        return element.as_float() == value
    if isinstance(value, str):
        return element.as_string() == value
    return None


def _select_matching(
    session: Session, collection: str, field_name: str, value: Any, limit: Optional[int]
) -> list[Document]:
    stmt = select(Document).where(Document.collection == collection)
    clause = _field_clause(field_name, value)
    if clause is not None:
        stmt = stmt.where(clause).order_by(Document.id.asc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(session.scalars(stmt).all())

    # Lists and mappings are compared in Python.
    matches: list[Document] = []
    for doc in session.scalars(stmt.order_by(Document.id.asc())).all():
        data = doc.data or {}
        if field_name in data and data[field_name] == value:
            matches.append(doc)
            if limit is not None and len(matches) >= limit:
                break
    return matches


class _SQLTransaction(StoreTransaction):
    def __init__(self, session: Session) -> None:
        super().__init__()
        self._session = session

    def _load(self, collection: str, key: str) -> Optional[tuple[dict[str, Any], int]]:
        doc = Document.get_by_key(self._session, collection, key)
        if doc is None:
            return None
        return dict(doc.data or {}), doc.version

    def _query(
        self, collection: str, field_name: str, value: Any, limit: Optional[int]
    ) -> list[tuple[str, dict[str, Any], int]]:
        return [
            (doc.key, dict(doc.data or {}), doc.version)
            for doc in _select_matching(
                self._session, collection, field_name, value, limit
            )
        ]


class SQLAlchemyDocumentStore(SettlementStore):
    """Document store persisted in the ``documents`` table.

    Parameters
    ----------
    session_factory : sessionmaker
        Factory producing sessions bound to the target database. Use
        :func:`lottomoji.db.engine.get_sessionmaker` for production engines.
    max_attempts : int, default: 5
        Number of optimistic attempts for :meth:`run_transaction`.

    Notes
    -----
    A transaction attempt runs inside a single database transaction. Writes to
    documents the attempt read are applied with ``SELECT ... FOR UPDATE`` on
    the version seen at read time; writes to documents read as absent are
    plain inserts guarded by the ``(collection, key)`` unique constraint. Either
    check failing rolls the attempt back and raises
    :class:`~lottomoji.store.base.TransactionConflict`.
    """

    def __init__(self, session_factory: sessionmaker, *, max_attempts: int = 5) -> None:
        super().__init__(max_attempts=max_attempts)
        self._session_factory = session_factory

    def get_document(self, collection: str, key: str) -> Optional[StoredDocument]:
        with _translate_errors(), self._session_factory() as session:
            doc = Document.get_by_key(session, collection, key)
            if doc is None:
                return None
            return StoredDocument(collection, key, dict(doc.data or {}))

    def set_document(
        self,
        collection: str,
        key: str,
        fields: Mapping[str, Any],
        *,
        merge: bool = False,
    ) -> None:
        self.run_transaction(lambda tx: tx.set(collection, key, fields, merge=merge))

    def add_document(self, collection: str, fields: Mapping[str, Any]) -> str:
        with _translate_errors(), self._session_factory.begin() as session:
            key = generate_document_key(collection, session)
            session.add(Document(collection=collection, key=key, data=dict(fields)))
        return key

    def query_by_field(
        self,
        collection: str,
        field_name: str,
        value: Any,
        *,
        limit: Optional[int] = None,
    ) -> list[StoredDocument]:
        with _translate_errors(), self._session_factory() as session:
            return [
                StoredDocument(collection, doc.key, dict(doc.data or {}))
                for doc in _select_matching(session, collection, field_name, value, limit)
            ]

    def list_all(self, collection: str) -> list[StoredDocument]:
        with _translate_errors(), self._session_factory() as session:
            stmt = (
                select(Document)
                .where(Document.collection == collection)
                .order_by(Document.id.asc())
            )
            return [
                StoredDocument(collection, doc.key, dict(doc.data or {}))
                for doc in session.scalars(stmt).all()
            ]

    def _run_once(self, fn: Callable[[StoreTransaction], T]) -> T:
        with _translate_errors():
            try:
                with self._session_factory.begin() as session:
                    tx = _SQLTransaction(session)
                    result = fn(tx)
                    self._apply(session, tx.writes)
            except IntegrityError as exc:
                raise TransactionConflict(
                    f"Concurrent insert detected: {exc.orig}"
                ) from exc
        return result

    def _apply(self, session: Session, writes: list[PendingWrite]) -> None:
        applied: dict[DocKey, Document] = {}
        for write in writes:
            doc_key = (write.collection, write.key)
            doc = applied.get(doc_key)
            if doc is None:
                doc = self._target_document(session, write)
            if doc is None:
                doc = Document(
                    collection=write.collection, key=write.key, data=write.fields
                )
                session.add(doc)
            else:
                doc.replace_data(write.fields, merge=write.merge)
            session.flush()
            applied[doc_key] = doc

    def _target_document(self, session: Session, write: PendingWrite) -> Optional[Document]:
        """Return the row ``write`` should update, ``None`` to insert a new one."""

        if is_blind(write):
            return Document.get_by_key(session, write.collection, write.key)
        if write.expected_version is None:
            # Read as absent; a concurrent insert surfaces as IntegrityError on flush.
            return None
        doc = session.scalar(
            select(Document)
            .where(
                Document.collection == write.collection,
                Document.key == write.key,
                Document.version == write.expected_version,
            )
            .with_for_update()
        )
        if doc is None:
            raise TransactionConflict(
                f"{write.collection}/{write.key} changed during the transaction"
            )
        return doc


__all__ = ["SQLAlchemyDocumentStore"]
