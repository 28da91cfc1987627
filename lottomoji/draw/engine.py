"""Coordinator that settles one draw window exactly once."""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Sequence, Union

from ..config import Settings
from ..store.base import SettlementStore, StoreTransaction
from .outcomes import AlreadySettled, Contended, DrawOutcome, Failed, Settled
from .records import (
    DRAW_CONTROL_COLLECTION,
    GAME_STATE_COLLECTION,
    GAME_STATE_KEY,
    RESULTS_COLLECTION,
    TICKETS_COLLECTION,
    InvalidTicket,
    LockStatus,
    SettlementResult,
    Ticket,
    WindowLock,
    completed_fields,
    failed_fields,
    game_state_fields,
    in_progress_fields,
    is_real_user,
)
from .scoring import PRIZE_TIERS, Tier, classify
from .symbols import SYMBOL_COUNT, SupportsChoice, generate_symbols
from .window import next_draw_time, window_key, window_start

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class DrawReport:
    """Scoring output for one window.

    Attributes
    ----------
    winning_numbers : list[str]
        Symbols drawn for the window.
    winners : dict[Tier, list[Ticket]]
        Winning tickets per prize tier, in load order.
    skipped : list[str]
        Ids of tickets excluded because their symbols could not be decoded.
    scored : int
        Number of tickets classified.
    """

    winning_numbers: list[str]
    winners: dict[Tier, list[Ticket]] = field(
        default_factory=lambda: {tier: [] for tier in PRIZE_TIERS}
    )
    skipped: list[str] = field(default_factory=list)
    scored: int = 0

    def counts(self) -> dict[str, int]:
        return {tier.value: len(self.winners[tier]) for tier in PRIZE_TIERS}


_ClaimOutcome = Union[AlreadySettled, Contended, None]


class DrawCoordinator:
    """Settle the current draw window against the document store.

    One call to :meth:`settle` claims the window lock, draws the winning
    symbols, classifies every ticket, publishes the result together with the
    game state, issues free-prize tickets and finally marks the lock completed.
    Any number of processes may call :meth:`settle` concurrently; the window
    lock and the result uniqueness check make sure only one of them publishes.
    """

    def __init__(
        self,
        store: SettlementStore,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
        rng: Optional[SupportsChoice] = None,
        process_id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        """Create a coordinator bound to ``store``.

        Parameters
        ----------
        store : SettlementStore
            Document store shared by every process settling draws.
        settings : Optional[Settings], default: None
            Cadence, timezone and lock staleness. Defaults to
            :meth:`Settings.from_env`.
        clock : Optional[Callable[[], datetime]], default: None
            Returns the current aware time. Defaults to UTC wall-clock time.
        rng : Optional[SupportsChoice], default: None
            Randomness for winning and free-ticket symbols.
        process_id_factory : Optional[Callable[[], str]], default: None
            Produces the owner id written to the window lock.
        """

        self._store = store
        self._settings = settings or Settings.from_env()
        self._clock = clock or _utcnow
        self._rng = rng
        self._process_id_factory = process_id_factory or self._default_process_id

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def stale_after(self) -> timedelta:
        return timedelta(seconds=self._settings.lock_stale_seconds)

    def _default_process_id(self) -> str:
        millis = int(self._clock().timestamp() * 1000)
        return f"{millis}-{secrets.token_hex(4)}"

    def window_key_for(self, moment: datetime) -> str:
        return window_key(
            moment, self._settings.cadence_minutes, self._settings.tzinfo
        )

    def result_id_for(self, moment: datetime) -> str:
        """Return the result id of the window containing ``moment``.

        The id is the window start in epoch milliseconds, so every attempt for
        the same window targets the same document.
        """

        start = window_start(
            moment, self._settings.cadence_minutes, self._settings.tzinfo
        )
        return str(int(start.timestamp() * 1000))

    # -------- entry point --------
    def settle(self) -> DrawOutcome:
        """Run one settlement attempt for the window containing "now".

        Returns
        -------
        DrawOutcome
            :class:`Settled` when this call published the result,
            :class:`AlreadySettled` when the window already has one,
            :class:`Contended` when another process is settling it, and
            :class:`Failed` when the attempt errored. Never raises.
        """

        now = self._clock()
        key = self.window_key_for(now)
        process_id = self._process_id_factory()
        logger.info(f"[{process_id}] Settling draw window {key}")

        try:
            claim = self._claim_window(key, process_id, now)
        except Exception as exc:
            logger.error(f"[{process_id}] Could not claim window {key}: {exc}")
            return Failed(str(exc) or type(exc).__name__)

        if claim is not None:
            if isinstance(claim, AlreadySettled):
                logger.info(
                    f"[{process_id}] Window {key} already settled with result {claim.result_id}"
                )
            else:
                logger.info(f"[{process_id}] Window {key} is being settled elsewhere")
            return claim

        try:
            return self._settle_claimed(key, process_id, now)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception(f"[{process_id}] Settlement of window {key} failed: {message}")
            self._mark_failed(key, process_id, message)
            return Failed(message)

    # -------- states --------
    def _claim_window(self, key: str, process_id: str, now: datetime) -> _ClaimOutcome:
        """Atomically decide whether this process may settle ``key``.

        Returns ``None`` when the lock was taken by this process.
        """

        stale_after = self.stale_after
        observed: list[WindowLock] = []

        def _claim(tx: StoreTransaction) -> _ClaimOutcome:
            existing = tx.query_by_field(
                RESULTS_COLLECTION, "minuteKey", key, limit=1
            )
            lock = WindowLock.from_document(
                key, tx.get(DRAW_CONTROL_COLLECTION, key)
            )
            observed[:] = [lock]

            if existing:
                result_id = existing[0].key
                if lock.status is not LockStatus.COMPLETED:
                    # The publisher died before marking the lock; record it now.
                    tx.set(
                        DRAW_CONTROL_COLLECTION,
                        key,
                        completed_fields(lock.process_id or process_id, result_id, now),
                        merge=True,
                    )
                return AlreadySettled(result_id)

            if lock.status is LockStatus.COMPLETED:
                return AlreadySettled(lock.result_id or "")

            if lock.is_fresh(now, stale_after):
                return Contended()

            tx.set(DRAW_CONTROL_COLLECTION, key, in_progress_fields(process_id, now))
            return None

        outcome = self._store.run_transaction(_claim)
        previous = observed[-1]
        if outcome is None and previous.status is LockStatus.IN_PROGRESS:
            logger.warning(
                f"[{process_id}] Reclaimed stale lock on {key} from {previous.process_id}"
            )
        elif outcome is None and previous.status is LockStatus.FAILED:
            logger.info(
                f"[{process_id}] Retrying window {key} after failure: {previous.error}"
            )
        return outcome

    def _settle_claimed(self, key: str, process_id: str, now: datetime) -> DrawOutcome:
        winning = generate_symbols(SYMBOL_COUNT, rng=self._rng)
        logger.info(f"[{process_id}] Winning symbols: {' '.join(winning)}")

        report = self.score_tickets(winning, process_id=process_id)
        logger.info(
            f"[{process_id}] Scored {report.scored} tickets "
            f"({len(report.skipped)} skipped): {report.counts()}"
        )

        result = SettlementResult(
            id=self.result_id_for(now),
            window_key=key,
            winning_numbers=tuple(winning),
            created_at=self._clock(),
            process_id=process_id,
            winners={tier: tuple(report.winners[tier]) for tier in PRIZE_TIERS},
        )
        published_id, written = self._publish(result, now)
        if not written:
            logger.warning(
                f"[{process_id}] Window {key} was published by another process as {published_id}"
            )
            self._mark_completed(key, process_id, published_id)
            return AlreadySettled(published_id)

        issued = self.issue_free_tickets(report.winners[Tier.FREE_PRIZE], process_id=process_id)
        logger.info(f"[{process_id}] Issued {len(issued)} free tickets")

        self._mark_completed(key, process_id, result.id)
        logger.info(f"[{process_id}] Window {key} settled with result {result.id}")
        return Settled(result.id)

    def score_tickets(
        self, winning: Sequence[str], *, process_id: str = "-"
    ) -> DrawReport:
        """Classify every stored ticket against ``winning``.

        Tickets whose symbols cannot be decoded are logged and skipped.
        """

        report = DrawReport(winning_numbers=list(winning))
        for doc in self._store.list_all(TICKETS_COLLECTION):
            try:
                ticket = Ticket.from_document(doc)
            except InvalidTicket as exc:
                logger.warning(f"[{process_id}] Skipping ticket: {exc}")
                report.skipped.append(doc.key)
                continue
            report.scored += 1
            tier = classify(ticket.numbers, winning)
            if tier is not Tier.NONE:
                report.winners[tier].append(ticket)
        return report

    def _publish(self, result: SettlementResult, now: datetime) -> tuple[str, bool]:
        """Write the result and game state unless the window already has a result.

        Returns the id of the result published for the window and whether this
        call wrote it.
        """

        state = game_state_fields(
            result.winning_numbers,
            next_draw_time(now, self._settings.cadence_minutes, self._settings.tzinfo),
            result.process_id,
        )

        def _write(tx: StoreTransaction) -> tuple[str, bool]:
            existing = tx.query_by_field(
                RESULTS_COLLECTION, "minuteKey", result.window_key, limit=1
            )
            if existing:
                return existing[0].key, False
            if tx.get(RESULTS_COLLECTION, result.id) is not None:
                return result.id, False
            tx.set(RESULTS_COLLECTION, result.id, result.to_fields())
            tx.set(GAME_STATE_COLLECTION, GAME_STATE_KEY, state)
            return result.id, True

        return self._store.run_transaction(_write)

    def issue_free_tickets(
        self, winners: Sequence[Ticket], *, process_id: str = "-"
    ) -> list[str]:
        """Create one reward ticket per free-prize ticket owned by a real user.

        Failures are logged per ticket and do not stop the remaining issuance.
        """

        issued: list[str] = []
        for origin in winners:
            if not is_real_user(origin.user_id):
                logger.info(
                    f"[{process_id}] No free ticket for {origin.id}: owner is {origin.user_id!r}"
                )
                continue
            try:
                reward = Ticket(
                    id="",
                    numbers=tuple(generate_symbols(SYMBOL_COUNT, rng=self._rng)),
                    timestamp=self._clock(),
                    user_id=origin.user_id,
                    is_free_ticket=True,
                    won_from=origin.id,
                )
                new_id = self._store.add_document(TICKETS_COLLECTION, reward.to_fields())
            except Exception as exc:
                logger.error(
                    f"[{process_id}] Free ticket issuance failed for {origin.id}: {exc}"
                )
                continue
            logger.info(
                f"[{process_id}] Free ticket {new_id} issued to {origin.user_id} for {origin.id}"
            )
            issued.append(new_id)
        return issued

    def _mark_completed(self, key: str, process_id: str, result_id: str) -> None:
        self._store.set_document(
            DRAW_CONTROL_COLLECTION,
            key,
            completed_fields(process_id, result_id, self._clock()),
            merge=True,
        )

    def _mark_failed(self, key: str, process_id: str, message: str) -> None:
        """Best-effort release of a lock this process still owns."""

        failed_at = self._clock()

        def _release(tx: StoreTransaction) -> bool:
            lock = WindowLock.from_document(key, tx.get(DRAW_CONTROL_COLLECTION, key))
            if lock.status is not LockStatus.IN_PROGRESS or lock.process_id != process_id:
                return False
            tx.set(
                DRAW_CONTROL_COLLECTION,
                key,
                failed_fields(process_id, message, failed_at),
                merge=True,
            )
            return True

        try:
            released = self._store.run_transaction(_release)
        except Exception as exc:
            logger.error(f"[{process_id}] Could not mark window {key} as failed: {exc}")
            return
        if not released:
            logger.warning(f"[{process_id}] Lock on {key} is no longer owned by this process")


__all__ = ["DrawCoordinator", "DrawReport"]
