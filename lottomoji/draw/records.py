"""Typed views of the documents the draw engine reads and writes.

Documents come from a schemaless store and may have been written by other
clients, so decoding happens here once and the rest of the engine works with
these records only.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Sequence

from ..db.utils import dt_iso, parse_iso
from ..store.base import StoredDocument
from .scoring import PRIZE_TIERS, Tier
from .symbols import SYMBOL_COUNT

TICKETS_COLLECTION = "tickets"
RESULTS_COLLECTION = "game_results"
DRAW_CONTROL_COLLECTION = "draw_control"
GAME_STATE_COLLECTION = "game_state"
GAME_STATE_KEY = "current"

ANONYMOUS_USER = "anonymous"
ANONYMOUS_USER_IDS = frozenset({ANONYMOUS_USER, "pending", "temp"})
"""Owner ids that do not identify a real player."""


class InvalidTicket(ValueError):
    """A ticket document lacks a usable symbol sequence."""


def is_real_user(user_id: Optional[str]) -> bool:
    """Return ``True`` when ``user_id`` identifies an actual player."""
    return bool(user_id) and user_id not in ANONYMOUS_USER_IDS


@dataclass(frozen=True)
class Ticket:
    """A player's entry.

    Attributes
    ----------
    id : str
        Store-assigned document key.
    numbers : tuple[str, ...]
        Exactly :data:`~lottomoji.draw.symbols.SYMBOL_COUNT` chosen symbols.
    timestamp : Optional[datetime]
        Creation time, when recorded.
    user_id : str
        Owner id, or one of :data:`ANONYMOUS_USER_IDS`.
    is_free_ticket : bool
        Whether the ticket was issued as a free-prize reward.
    won_from : Optional[str]
        Id of the ticket whose free prize produced this one.
    """

    id: str
    numbers: tuple[str, ...]
    timestamp: Optional[datetime] = None
    user_id: str = ANONYMOUS_USER
    is_free_ticket: bool = False
    won_from: Optional[str] = None

    @classmethod
    def from_document(cls, doc: StoredDocument) -> "Ticket":
        """Decode a ``tickets`` document.

        Raises
        ------
        InvalidTicket
            If ``numbers`` is missing, is not a list of strings, or does not
            hold exactly four symbols.
        """

        numbers = doc.get("numbers")
        if not isinstance(numbers, (list, tuple)):
            raise InvalidTicket(f"Ticket {doc.key} has no symbol list")
        if len(numbers) != SYMBOL_COUNT:
            raise InvalidTicket(
                f"Ticket {doc.key} has {len(numbers)} symbols, expected {SYMBOL_COUNT}"
            )
        if not all(isinstance(symbol, str) for symbol in numbers):
            raise InvalidTicket(f"Ticket {doc.key} has non-string symbols")

        user_id = doc.get("userId")
        won_from = doc.get("wonFrom")
        return cls(
            id=doc.key,
            numbers=tuple(numbers),
            timestamp=parse_iso(doc.get("timestamp")),
            user_id=str(user_id) if user_id else ANONYMOUS_USER,
            is_free_ticket=bool(doc.get("isFreeTicket", False)),
            won_from=str(won_from) if won_from else None,
        )

    def to_fields(self) -> dict[str, Any]:
        """Return the ``tickets/{id}`` document shape."""

        fields: dict[str, Any] = {
            "numbers": list(self.numbers),
            "timestamp": dt_iso(self.timestamp),
            "userId": self.user_id,
        }
        if self.is_free_ticket:
            fields["isFreeTicket"] = True
        if self.won_from is not None:
            fields["wonFrom"] = self.won_from
        return fields

    def to_ref(self) -> dict[str, Any]:
        """Return the ``TicketRef`` stored in a result bucket."""

        return {
            "id": self.id,
            "numbers": list(self.numbers),
            "timestamp": dt_iso(self.timestamp),
            "userId": self.user_id,
        }


class LockStatus(enum.Enum):
    ABSENT = "absent"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class WindowLock:
    """Decoded ``draw_control/{windowKey}`` document."""

    window_key: str
    status: LockStatus
    process_id: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_document(cls, window_key: str, doc: Optional[StoredDocument]) -> "WindowLock":
        if doc is None:
            return cls(window_key=window_key, status=LockStatus.ABSENT)

        if doc.get("completed"):
            status = LockStatus.COMPLETED
        elif doc.get("inProgress"):
            status = LockStatus.IN_PROGRESS
        else:
            status = LockStatus.FAILED

        result_id = doc.get("resultId")
        process_id = doc.get("processId")
        return cls(
            window_key=window_key,
            status=status,
            process_id=str(process_id) if process_id is not None else None,
            started_at=parse_iso(doc.get("startedAt")),
            completed_at=parse_iso(doc.get("completedAt")),
            result_id=str(result_id) if result_id is not None else None,
            error=doc.get("error"),
        )

    def age(self, now: datetime) -> Optional[timedelta]:
        """Time since the lock was taken, ``None`` if it never recorded a start."""
        if self.started_at is None:
            return None
        return now - self.started_at

    def is_fresh(self, now: datetime, stale_after: timedelta) -> bool:
        """Return ``True`` for an ``in-progress`` lock younger than ``stale_after``.

        A lock without a parseable start time counts as stale.
        """

        if self.status is not LockStatus.IN_PROGRESS:
            return False
        age = self.age(now)
        return age is not None and age < stale_after


def in_progress_fields(process_id: str, started_at: datetime) -> dict[str, Any]:
    return {
        "inProgress": True,
        "completed": False,
        "startedAt": dt_iso(started_at),
        "processId": process_id,
    }


def completed_fields(
    process_id: str,
    result_id: str,
    completed_at: datetime,
    started_at: Optional[datetime] = None,
) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "inProgress": False,
        "completed": True,
        "resultId": result_id,
        "processId": process_id,
        "completedAt": dt_iso(completed_at),
    }
    if started_at is not None:
        fields["startedAt"] = dt_iso(started_at)
    return fields


def failed_fields(process_id: str, error: str, failed_at: datetime) -> dict[str, Any]:
    return {
        "inProgress": False,
        "completed": False,
        "processId": process_id,
        "error": error,
        "errorAt": dt_iso(failed_at),
    }


def _empty_buckets() -> dict[Tier, tuple[Ticket, ...]]:
    return {tier: () for tier in PRIZE_TIERS}


@dataclass(frozen=True)
class SettlementResult:
    """Published outcome of one window (``game_results/{id}``)."""

    id: str
    window_key: str
    winning_numbers: tuple[str, ...]
    created_at: datetime
    process_id: Optional[str] = None
    winners: Mapping[Tier, tuple[Ticket, ...]] = field(default_factory=_empty_buckets)

    def tickets_for(self, tier: Tier) -> tuple[Ticket, ...]:
        return tuple(self.winners.get(tier, ()))

    def to_fields(self) -> dict[str, Any]:
        fields: dict[str, Any] = {
            "id": self.id,
            "winningNumbers": list(self.winning_numbers),
            "timestamp": dt_iso(self.created_at),
            "minuteKey": self.window_key,
            "processId": self.process_id,
        }
        for tier in PRIZE_TIERS:
            fields[tier.value] = [ticket.to_ref() for ticket in self.tickets_for(tier)]
        return fields

    @classmethod
    def from_document(cls, doc: StoredDocument) -> "SettlementResult":
        """Decode a stored result. Malformed bucket entries are dropped."""

        winners: dict[Tier, tuple[Ticket, ...]] = {}
        for tier in PRIZE_TIERS:
            decoded: list[Ticket] = []
            for ref in doc.get(tier.value) or []:
                if not isinstance(ref, Mapping) or not ref.get("id"):
                    continue
                try:
                    decoded.append(
                        Ticket.from_document(
                            StoredDocument(TICKETS_COLLECTION, str(ref["id"]), ref)
                        )
                    )
                except InvalidTicket:
                    continue
            winners[tier] = tuple(decoded)

        process_id = doc.get("processId")
        return cls(
            id=doc.key,
            window_key=str(doc.get("minuteKey") or ""),
            winning_numbers=tuple(doc.get("winningNumbers") or ()),
            created_at=parse_iso(doc.get("timestamp"))
            or datetime.min.replace(tzinfo=timezone.utc),
            process_id=str(process_id) if process_id is not None else None,
            winners=winners,
        )


def game_state_fields(
    winning_numbers: Sequence[str],
    next_draw_time: datetime,
    process_id: Optional[str],
) -> dict[str, Any]:
    """Return the ``game_state/current`` document shape."""

    return {
        "winningNumbers": list(winning_numbers),
        "nextDrawTime": dt_iso(next_draw_time),
        "lastProcessId": process_id,
    }


__all__ = [
    "ANONYMOUS_USER",
    "ANONYMOUS_USER_IDS",
    "DRAW_CONTROL_COLLECTION",
    "GAME_STATE_COLLECTION",
    "GAME_STATE_KEY",
    "InvalidTicket",
    "LockStatus",
    "RESULTS_COLLECTION",
    "SettlementResult",
    "TICKETS_COLLECTION",
    "Ticket",
    "WindowLock",
    "completed_fields",
    "failed_fields",
    "game_state_fields",
    "in_progress_fields",
    "is_real_user",
]
