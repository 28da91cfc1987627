"""Draw generation, ticket scoring and window settlement."""

from .engine import DrawCoordinator, DrawReport
from .outcomes import AlreadySettled, Contended, DrawOutcome, Failed, Settled
from .records import InvalidTicket, LockStatus, SettlementResult, Ticket, WindowLock
from .scoring import MatchSummary, Tier, classify, evaluate
from .symbols import SYMBOLS, SYMBOL_COUNT, generate_symbols, is_valid_selection
from .window import next_draw_time, window_key, window_start

__all__ = [
    "AlreadySettled",
    "Contended",
    "DrawCoordinator",
    "DrawOutcome",
    "DrawReport",
    "Failed",
    "InvalidTicket",
    "LockStatus",
    "MatchSummary",
    "SYMBOLS",
    "SYMBOL_COUNT",
    "Settled",
    "SettlementResult",
    "Ticket",
    "Tier",
    "WindowLock",
    "classify",
    "evaluate",
    "generate_symbols",
    "is_valid_selection",
    "next_draw_time",
    "window_key",
    "window_start",
]
