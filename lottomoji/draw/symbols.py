"""Winning-symbol generation for the emoji draw."""

from __future__ import annotations

import secrets
from typing import Optional, Protocol, Sequence

SYMBOL_COUNT = 4
"""Number of symbols on a ticket and in a winning sequence."""

SYMBOLS: tuple[str, ...] = (
    "🌟", "🎈", "🎨", "🌈", "🦄", "🍭", "🎪", "🎠", "🎡", "🎢",
    "🌺", "🦋", "🐬", "🌸", "🍦", "🎵", "🎯", "🌴", "🎩", "🎭",
    "🎁", "🎮", "🚀", "🌍", "🍀",
)
"""Alphabet every symbol is drawn from."""


class SupportsChoice(Protocol):
    def choice(self, seq: Sequence[str]) -> str: ...


_SYSTEM_RANDOM = secrets.SystemRandom()


def generate_symbols(count: int, *, rng: Optional[SupportsChoice] = None) -> list[str]:
    """Draw ``count`` symbols uniformly from :data:`SYMBOLS`.

    Draws are independent, so a sequence may repeat a symbol.

    Parameters
    ----------
    count : int
        Number of symbols to draw. Must be positive.
    rng : Optional[SupportsChoice], default: None
        Source of randomness exposing ``choice``. A ``random.Random`` seeded
        instance makes draws reproducible in tests.

    Raises
    ------
    TypeError
        If ``count`` is not an integer.
    ValueError
        If ``count`` is not positive.
    """

    if isinstance(count, bool) or not isinstance(count, int):
        raise TypeError("count must be an integer")
    if count <= 0:
        raise ValueError("count must be positive")
    source = rng or _SYSTEM_RANDOM
    return [source.choice(SYMBOLS) for _ in range(count)]


def is_valid_selection(symbols: Optional[Sequence[str]]) -> bool:
    """Return ``True`` when ``symbols`` is a full ticket selection from the alphabet."""

    if symbols is None or isinstance(symbols, str):
        return False
    if len(symbols) != SYMBOL_COUNT:
        return False
    return all(symbol in SYMBOLS for symbol in symbols)


__all__ = ["SYMBOLS", "SYMBOL_COUNT", "generate_symbols", "is_valid_selection"]
