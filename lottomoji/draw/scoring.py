"""Prize-tier classification of tickets against a winning sequence."""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from .symbols import SYMBOL_COUNT

logger = logging.getLogger(__name__)


class Tier(enum.Enum):
    """Prize tier of a ticket. Values are the result-document bucket names."""

    NONE = "none"
    FIRST_PRIZE = "firstPrize"
    SECOND_PRIZE = "secondPrize"
    THIRD_PRIZE = "thirdPrize"
    FREE_PRIZE = "freePrize"

    @property
    def bucket(self) -> Optional[str]:
        """Field name of the result bucket, ``None`` for :attr:`NONE`."""
        return None if self is Tier.NONE else self.value


PRIZE_TIERS: tuple[Tier, ...] = (
    Tier.FIRST_PRIZE,
    Tier.SECOND_PRIZE,
    Tier.THIRD_PRIZE,
    Tier.FREE_PRIZE,
)
"""Winning tiers in priority order."""


@dataclass(frozen=True)
class MatchSummary:
    """Match counts of one ticket and the tier they map to."""

    exact: int
    multiset: int
    tier: Tier


def count_exact_matches(ticket: Sequence[str], winning: Sequence[str]) -> int:
    """Count positions holding the same symbol in both sequences."""
    return sum(1 for left, right in zip(ticket, winning) if left == right)


def count_multiset_matches(ticket: Sequence[str], winning: Sequence[str]) -> int:
    """Count winning symbols found in the ticket, ignoring position.

    Each ticket symbol can satisfy one winning symbol only, so a symbol
    repeated on the ticket is not counted twice against a single occurrence in
    the winning sequence.
    """

    remaining = list(ticket)
    matches = 0
    for symbol in winning:
        try:
            remaining.remove(symbol)
        except ValueError:
            continue
        matches += 1
    return matches


def _usable(symbols: Optional[Sequence[str]]) -> bool:
    if symbols is None or isinstance(symbols, (str, bytes)):
        return False
    try:
        return len(symbols) >= SYMBOL_COUNT
    except TypeError:
        return False


def evaluate(
    ticket: Optional[Sequence[str]], winning: Optional[Sequence[str]]
) -> MatchSummary:
    """Compute match counts and the resulting tier.

    Tiers are checked in priority order and the first match wins: four exact
    positions, four symbols in any order, three exact positions, three symbols
    in any order. Missing or short sequences yield :attr:`Tier.NONE`.
    """

    if not _usable(ticket) or not _usable(winning):
        logger.warning(f"Invalid ticket or winning symbols: {ticket!r} vs {winning!r}")
        return MatchSummary(exact=0, multiset=0, tier=Tier.NONE)

    ticket_symbols = list(ticket)[:SYMBOL_COUNT]  # type: ignore[arg-type]
    winning_symbols = list(winning)[:SYMBOL_COUNT]  # type: ignore[arg-type]
    exact = count_exact_matches(ticket_symbols, winning_symbols)
    multiset = count_multiset_matches(ticket_symbols, winning_symbols)

    if exact == 4:
        tier = Tier.FIRST_PRIZE
    elif multiset == 4:
        tier = Tier.SECOND_PRIZE
    elif exact == 3:
        tier = Tier.THIRD_PRIZE
    elif multiset == 3:
        tier = Tier.FREE_PRIZE
    else:
        tier = Tier.NONE
    return MatchSummary(exact=exact, multiset=multiset, tier=tier)


def classify(ticket: Optional[Sequence[str]], winning: Optional[Sequence[str]]) -> Tier:
    """Return the prize tier of ``ticket`` against ``winning``. Never raises."""
    return evaluate(ticket, winning).tier


__all__ = [
    "MatchSummary",
    "PRIZE_TIERS",
    "Tier",
    "classify",
    "count_exact_matches",
    "count_multiset_matches",
    "evaluate",
]
