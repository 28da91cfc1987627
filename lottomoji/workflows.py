import logging
import threading
import time
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional, Sequence

from .config import Settings
from .draw.engine import DrawCoordinator
from .draw.outcomes import DrawOutcome, Failed
from .draw.records import (
    ANONYMOUS_USER,
    GAME_STATE_COLLECTION,
    GAME_STATE_KEY,
    RESULTS_COLLECTION,
    TICKETS_COLLECTION,
    SettlementResult,
    Ticket,
)
from .draw.symbols import SYMBOL_COUNT, is_valid_selection
from .draw.window import next_draw_time
from .db.utils import dt_iso
from .store.base import SettlementStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def scheduled_draw(coordinator: DrawCoordinator, invocation_id: str) -> DrawOutcome:
    """Cadence trigger: settle the current window on behalf of a scheduler.

    ``invocation_id`` only tags the log lines. The function never raises so a
    scheduler does not retry a run that merely lost the race for the window.

    Parameters
    ----------
    coordinator : DrawCoordinator
        Coordinator bound to the shared store.
    invocation_id : str
        Identifier supplied by the scheduler for this firing.

    Returns
    -------
    DrawOutcome
        The outcome reported by :meth:`DrawCoordinator.settle`.
    """

    logger.info(f"[{invocation_id}] Scheduled draw started")
    try:
        outcome = coordinator.settle()
    except Exception as exc:  # pragma: no cover - settle() already traps errors
        logger.exception(f"[{invocation_id}] Scheduled draw crashed: {exc}")
        return Failed(str(exc))
    logger.info(
        f"[{invocation_id}] Scheduled draw finished: {outcome.status} "
        f"(success={outcome.success})"
    )
    return outcome


def manual_draw(
    coordinator: DrawCoordinator,
    operator_id: str,
    *,
    allowed_operators: Optional[Iterable[str]] = None,
) -> dict:
    """On-demand trigger used by an authenticated operator.

    Parameters
    ----------
    coordinator : DrawCoordinator
        Coordinator bound to the shared store.
    operator_id : str
        Identity of the authenticated caller.
    allowed_operators : Optional[Iterable[str]], default: None
        Operators permitted to force a draw. Falls back to
        ``coordinator.settings.operators``; an empty allow-list admits any
        authenticated operator.

    Returns
    -------
    dict
        The outcome serialized with :meth:`to_dict`, e.g.
        ``{"status": "settled", "success": True, "resultId": "..."}``.

    Raises
    ------
    PermissionError
        If ``operator_id`` is empty or not in the allow-list.
    """

    if not operator_id:
        raise PermissionError("Manual draws require an authenticated operator")

    allowed = tuple(
        allowed_operators
        if allowed_operators is not None
        else coordinator.settings.operators
    )
    if allowed and operator_id not in allowed:
        logger.warning(f"Rejected manual draw request from {operator_id}")
        raise PermissionError(f"Operator '{operator_id}' may not trigger draws")

    logger.info(f"Manual draw requested by {operator_id}")
    outcome = coordinator.settle()
    logger.info(f"Manual draw by {operator_id} finished: {outcome.status}")
    return outcome.to_dict()


def run_cadence_loop(
    coordinator: DrawCoordinator,
    *,
    stop_event: Optional[threading.Event] = None,
    clock: Optional[Callable[[], datetime]] = None,
    sleep: Optional[Callable[[float], None]] = None,
    max_iterations: Optional[int] = None,
) -> list[DrawOutcome]:
    """Fire :func:`scheduled_draw` at every window boundary until stopped.

    This is a minimal stand-in for an external scheduler. Each iteration
    sleeps until the next boundary of ``coordinator.settings.cadence_minutes``
    and then settles the window that just opened.

    Parameters
    ----------
    coordinator : DrawCoordinator
        Coordinator to invoke.
    stop_event : Optional[threading.Event], default: None
        Set it to end the loop; also used for interruptible sleeping.
    clock : Optional[Callable[[], datetime]], default: None
        Current-time source, UTC by default.
    sleep : Optional[Callable[[float], None]], default: None
        Sleep function. Defaults to waiting on ``stop_event`` or ``time.sleep``.
    max_iterations : Optional[int], default: None
        Stop after this many draws (``None`` runs forever).

    Returns
    -------
    list[DrawOutcome]
        Outcomes of the draws fired, in order.
    """

    settings = coordinator.settings
    now_fn = clock or _utcnow
    if sleep is None:
        sleep = stop_event.wait if stop_event is not None else time.sleep

    outcomes: list[DrawOutcome] = []
    iteration = 0
    while max_iterations is None or iteration < max_iterations:
        if stop_event is not None and stop_event.is_set():
            break
        now = now_fn()
        boundary = next_draw_time(now, settings.cadence_minutes, settings.tzinfo)
        delay = max(0.0, (boundary - now).total_seconds())
        logger.debug(f"Next draw at {boundary.isoformat()} (in {delay:.1f}s)")
        sleep(delay)
        if stop_event is not None and stop_event.is_set():
            break

        iteration += 1
        invocation_id = f"cadence-{int(boundary.timestamp())}"
        outcomes.append(scheduled_draw(coordinator, invocation_id))
    return outcomes


def submit_ticket(
    store: SettlementStore,
    numbers: Sequence[str],
    user_id: Optional[str] = None,
    *,
    clock: Optional[Callable[[], datetime]] = None,
) -> Ticket:
    """Create a ticket for ``user_id`` with the chosen ``numbers``.

    Parameters
    ----------
    store : SettlementStore
        Store holding the ``tickets`` collection.
    numbers : Sequence[str]
        Exactly four symbols from the draw alphabet.
    user_id : Optional[str], default: None
        Owner of the ticket; anonymous when omitted.
    clock : Optional[Callable[[], datetime]], default: None
        Current-time source for the ticket timestamp.

    Returns
    -------
    Ticket
        The persisted ticket with its store-assigned id.

    Raises
    ------
    ValueError
        If ``numbers`` is not a valid selection.
    """

    if not is_valid_selection(numbers):
        raise ValueError(
            f"A ticket needs exactly {SYMBOL_COUNT} symbols from the draw alphabet"
        )

    ticket = Ticket(
        id="",
        numbers=tuple(numbers),
        timestamp=(clock or _utcnow)(),
        user_id=user_id or ANONYMOUS_USER,
    )
    ticket_id = store.add_document(TICKETS_COLLECTION, ticket.to_fields())
    logger.info(f"Ticket {ticket_id} created for {ticket.user_id}: {' '.join(numbers)}")
    return Ticket(
        id=ticket_id,
        numbers=ticket.numbers,
        timestamp=ticket.timestamp,
        user_id=ticket.user_id,
    )


def initialize_game_state(
    store: SettlementStore,
    settings: Settings,
    *,
    clock: Optional[Callable[[], datetime]] = None,
) -> None:
    """Create the game-state document if needed and point it at the next draw.

    Existing winning symbols are kept; only missing fields are filled in.
    """

    now = (clock or _utcnow)()
    current = store.get_document(GAME_STATE_COLLECTION, GAME_STATE_KEY)
    fields = {
        "nextDrawTime": dt_iso(
            next_draw_time(now, settings.cadence_minutes, settings.tzinfo)
        ),
    }
    if current is None or "winningNumbers" not in current.fields:
        fields["winningNumbers"] = []
    store.set_document(GAME_STATE_COLLECTION, GAME_STATE_KEY, fields, merge=True)
    logger.info("Game state initialized")


def latest_results(store: SettlementStore, limit: int = 50) -> list[SettlementResult]:
    """Return the most recent results, newest first, one per window key.

    Results written by older clients may share a window key; the one with the
    greatest id is kept.
    """

    if limit <= 0:
        raise ValueError("limit must be a positive integer")

    by_window: dict[str, SettlementResult] = {}
    for doc in store.list_all(RESULTS_COLLECTION):
        result = SettlementResult.from_document(doc)
        kept = by_window.get(result.window_key)
        if kept is None or kept.id < result.id:
            by_window[result.window_key] = result

    ordered = sorted(
        by_window.values(),
        key=lambda res: (res.created_at, res.id),
        reverse=True,
    )
    return ordered[:limit]
