"""Database model backing the keyed document store."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Integer,
    JSON,
    String,
    UniqueConstraint,
    select,
)
from sqlalchemy.orm import Mapped, Session, mapped_column

from .base import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
DOCUMENT_ID_TYPE = BigInteger().with_variant(Integer, "sqlite")


class Document(Base):
    """A JSON document addressed by ``(collection, key)``.

    Every write bumps :attr:`version`, which transactions use to detect that a
    document changed between their read and their commit.
    """

    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(DOCUMENT_ID_TYPE, primary_key=True, autoincrement=True)
    """Surrogate primary key."""

    collection: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    """Logical collection name such as ``tickets`` or ``draw_control``."""

    key: Mapped[str] = mapped_column(String(255), nullable=False)
    """Document key, unique within its collection."""

    data: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    """Document fields."""

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    """Write counter used for optimistic concurrency checks."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    """Timestamp when the document was first written."""

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    """Timestamp automatically bumped on every write."""

    __table_args__ = (
        UniqueConstraint("collection", "key", name="uq_documents_collection_key"),
    )

    def __init__(
        self,
        *,
        collection: str,
        key: str,
        data: Optional[dict[str, Any]] = None,
        version: int = 1,
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None,
    ) -> None:
        self.collection = collection
        self.key = key
        self.data = dict(data or {})
        self.version = version
        if created_at is not None:
            self.created_at = created_at
        if updated_at is not None:
            self.updated_at = updated_at

    def __repr__(self) -> str:  # pragma: no cover - repr is trivial
        return "<Document(collection={collection}, key={key}, version={version})>".format(
            collection=self.collection,
            key=self.key,
            version=self.version,
        )

    @classmethod
    def get_by_key(
        cls, session: Session, collection: str, key: str
    ) -> Optional["Document"]:
        """Return the document stored under ``collection``/``key`` if it exists."""

        return session.scalar(
            select(cls).where(cls.collection == collection, cls.key == key)
        )

    def replace_data(self, fields: dict[str, Any], *, merge: bool = False) -> None:
        """Overwrite (or shallow-merge into) the document fields and bump the version.

        A new dict is always assigned so the JSON column is flagged dirty.
        """

        if merge:
            updated = dict(self.data or {})
            updated.update(fields)
        else:
            updated = dict(fields)
        self.data = updated
        self.version = (self.version or 0) + 1


__all__ = ["Document"]
