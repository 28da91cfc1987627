"""Utility helpers for the models package."""

from __future__ import annotations

import secrets
import string
from typing import Optional
from sqlalchemy.orm import Session

BASE62_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase


def generate_document_key(
    collection: Optional[str] = None,
    session: Optional[Session] = None,
    length: int = 20,
    max_attempts: int = 32,
) -> str:
    """Return a store-assigned document key made of base62 random characters.

    When a session and collection are provided, the helper retries if the
    generated value is already present (or pending) in that collection.
    """

    if length <= 0:
        raise ValueError("length must be positive")

    attempts = 0
    while attempts < max_attempts:
        candidate = "".join(secrets.choice(BASE62_ALPHABET) for _ in range(length))

        if session is not None and collection is not None:
            from sqlalchemy import select
            from .document import Document

            collision = False
            for obj in session.new:
                if (
                    isinstance(obj, Document)
                    and obj.collection == collection
                    and obj.key == candidate
                ):
                    collision = True
                    break
            if collision:
                attempts += 1
                continue

            exists = session.scalar(
                select(Document.id).where(
                    Document.collection == collection,
                    Document.key == candidate,
                )
            )
            if exists is not None:
                attempts += 1
                continue

        return candidate

    raise RuntimeError(
        "Unable to generate a unique document key after multiple attempts"
    )
