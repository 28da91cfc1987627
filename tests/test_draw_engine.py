from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone
from typing import Sequence

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from lottomoji.config import Settings
from lottomoji.db.utils import dt_iso
from lottomoji.draw import (
    AlreadySettled,
    Contended,
    DrawCoordinator,
    Failed,
    Settled,
    Tier,
)
from lottomoji.draw.records import (
    DRAW_CONTROL_COLLECTION,
    GAME_STATE_COLLECTION,
    GAME_STATE_KEY,
    RESULTS_COLLECTION,
    TICKETS_COLLECTION,
)
from lottomoji.models import Base
from lottomoji.store import (
    InMemoryDocumentStore,
    SQLAlchemyDocumentStore,
    StoreUnavailable,
)

WINNING = ["🌟", "🎈", "🎨", "🌈"]
WINDOW_KEY = "2024-3-5-12-30"
WINDOW_START = datetime(2024, 3, 5, 12, 30, tzinfo=timezone.utc)
RESULT_ID = str(int(WINDOW_START.timestamp() * 1000))


class FakeClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class ScriptedRandom:
    """Returns queued symbols first, then the first symbol of the alphabet."""

    def __init__(self, symbols: Sequence[str]) -> None:
        self._queue = list(symbols)

    def choice(self, seq):
        if self._queue:
            return self._queue.pop(0)
        return seq[0]


class DrawCoordinatorTestMixin:
    def make_store(self):
        return InMemoryDocumentStore()

    def setUp(self) -> None:
        self.store = self.make_store()
        self.clock = FakeClock(datetime(2024, 3, 5, 12, 34, 10, tzinfo=timezone.utc))
        self.settings = Settings(
            database_url="sqlite://", cadence_minutes=10, lock_stale_seconds=30
        )

    def make_coordinator(self, process_id: str = "proc-1", **kwargs) -> DrawCoordinator:
        return DrawCoordinator(
            self.store,
            settings=self.settings,
            clock=self.clock,
            rng=ScriptedRandom(WINNING),
            process_id_factory=lambda: process_id,
            **kwargs,
        )

    def add_ticket(self, numbers, user_id="anonymous") -> str:
        return self.store.add_document(
            TICKETS_COLLECTION,
            {"numbers": list(numbers), "timestamp": dt_iso(self.clock()), "userId": user_id},
        )

    def lock_fields(self) -> dict:
        doc = self.store.get_document(DRAW_CONTROL_COLLECTION, WINDOW_KEY)
        return dict(doc.fields) if doc is not None else {}

    def free_tickets(self) -> list:
        return [
            doc
            for doc in self.store.list_all(TICKETS_COLLECTION)
            if doc.get("isFreeTicket")
        ]


class TestSettlement(DrawCoordinatorTestMixin, unittest.TestCase):
    def test_settles_window_and_publishes_result(self):
        first = self.add_ticket(WINNING, "alice")
        second = self.add_ticket(["🎈", "🌟", "🎨", "🌈"], "bob")
        third = self.add_ticket(["🌟", "🎈", "🎨", "🦄"], "carol")
        free = self.add_ticket(["🎈", "🌟", "🦄", "🎨"], "dave")
        self.add_ticket(["🦄", "🦄", "🦄", "🦄"], "erin")

        outcome = self.make_coordinator().settle()

        self.assertEqual(outcome, Settled(RESULT_ID))
        result = self.store.get_document(RESULTS_COLLECTION, RESULT_ID)
        self.assertEqual(result.get("minuteKey"), WINDOW_KEY)
        self.assertEqual(result.get("winningNumbers"), WINNING)
        self.assertEqual(result.get("processId"), "proc-1")
        self.assertEqual([ref["id"] for ref in result.get("firstPrize")], [first])
        self.assertEqual([ref["id"] for ref in result.get("secondPrize")], [second])
        self.assertEqual([ref["id"] for ref in result.get("thirdPrize")], [third])
        self.assertEqual([ref["id"] for ref in result.get("freePrize")], [free])
        self.assertEqual(result.get("firstPrize")[0]["userId"], "alice")
        self.assertEqual(result.get("firstPrize")[0]["numbers"], WINNING)

        lock = self.lock_fields()
        self.assertTrue(lock["completed"])
        self.assertFalse(lock["inProgress"])
        self.assertEqual(lock["resultId"], RESULT_ID)
        self.assertEqual(lock["processId"], "proc-1")

        state = self.store.get_document(GAME_STATE_COLLECTION, GAME_STATE_KEY)
        self.assertEqual(state.get("winningNumbers"), WINNING)
        self.assertEqual(state.get("nextDrawTime"), "2024-03-05T12:40:00+00:00")
        self.assertEqual(state.get("lastProcessId"), "proc-1")

    def test_settles_window_without_tickets(self):
        outcome = self.make_coordinator().settle()
        self.assertIsInstance(outcome, Settled)
        result = self.store.get_document(RESULTS_COLLECTION, RESULT_ID)
        for tier in ("firstPrize", "secondPrize", "thirdPrize", "freePrize"):
            self.assertEqual(result.get(tier), [])

    def test_free_prize_issues_reward_ticket_to_real_user(self):
        winner = self.add_ticket(["🎈", "🌟", "🦄", "🎨"], "dave")

        self.make_coordinator().settle()

        rewards = self.free_tickets()
        self.assertEqual(len(rewards), 1)
        reward = rewards[0]
        self.assertEqual(reward.get("userId"), "dave")
        self.assertEqual(reward.get("wonFrom"), winner)
        self.assertEqual(len(reward.get("numbers")), 4)
        self.assertIsNotNone(reward.get("timestamp"))

    def test_free_prize_for_anonymous_owner_issues_nothing(self):
        for owner in ("anonymous", "temp", "pending"):
            self.add_ticket(["🎈", "🌟", "🦄", "🎨"], owner)

        outcome = self.make_coordinator().settle()

        self.assertIsInstance(outcome, Settled)
        result = self.store.get_document(RESULTS_COLLECTION, RESULT_ID)
        self.assertEqual(len(result.get("freePrize")), 3)
        self.assertEqual(self.free_tickets(), [])

    def test_malformed_tickets_are_skipped(self):
        self.store.add_document(TICKETS_COLLECTION, {"numbers": ["🌟"], "userId": "x"})
        self.store.add_document(TICKETS_COLLECTION, {"userId": "y"})
        self.store.add_document(TICKETS_COLLECTION, {"numbers": "🌟🎈🎨🌈"})
        good = self.add_ticket(WINNING, "alice")

        coordinator = self.make_coordinator()
        report = coordinator.score_tickets(WINNING)
        self.assertEqual(report.scored, 1)
        self.assertEqual(len(report.skipped), 3)
        self.assertEqual([t.id for t in report.winners[Tier.FIRST_PRIZE]], [good])

        self.assertIsInstance(coordinator.settle(), Settled)

    def test_second_settle_in_same_window_is_idempotent(self):
        self.add_ticket(["🎈", "🌟", "🦄", "🎨"], "dave")
        self.assertEqual(self.make_coordinator("proc-1").settle(), Settled(RESULT_ID))

        self.clock.advance(5 * 60)
        outcome = self.make_coordinator("proc-2").settle()

        self.assertEqual(outcome, AlreadySettled(RESULT_ID))
        self.assertEqual(len(self.store.list_all(RESULTS_COLLECTION)), 1)
        self.assertEqual(len(self.free_tickets()), 1)

    def test_repeated_dst_hour_settles_both_windows(self):
        self.settings = Settings(
            database_url="sqlite://",
            cadence_minutes=10,
            lock_stale_seconds=30,
            timezone="America/New_York",
        )
        # 01:35 local occurs at 05:35Z (EDT) and again at 06:35Z (EST).
        self.clock.now = datetime(2024, 11, 3, 5, 35, tzinfo=timezone.utc)
        first = self.make_coordinator("proc-1").settle()
        self.clock.now = datetime(2024, 11, 3, 6, 35, tzinfo=timezone.utc)
        second = self.make_coordinator("proc-2").settle()

        self.assertEqual(first, Settled("1730611800000"))
        self.assertEqual(second, Settled("1730615400000"))
        keys = sorted(
            doc.get("minuteKey") for doc in self.store.list_all(RESULTS_COLLECTION)
        )
        self.assertEqual(keys, ["2024-11-3-1-30-0400", "2024-11-3-1-30-0500"])

    def test_next_window_settles_again(self):
        self.make_coordinator("proc-1").settle()
        self.clock.advance(10 * 60)
        outcome = self.make_coordinator("proc-2").settle()
        self.assertIsInstance(outcome, Settled)
        self.assertEqual(len(self.store.list_all(RESULTS_COLLECTION)), 2)


class TestWindowLock(DrawCoordinatorTestMixin, unittest.TestCase):
    def set_lock(self, **fields) -> None:
        self.store.set_document(DRAW_CONTROL_COLLECTION, WINDOW_KEY, fields)

    def test_fresh_lock_held_elsewhere_is_contended(self):
        self.set_lock(
            inProgress=True,
            completed=False,
            processId="other",
            startedAt=dt_iso(self.clock() - timedelta(seconds=10)),
        )

        outcome = self.make_coordinator().settle()

        self.assertEqual(outcome, Contended())
        self.assertEqual(self.store.list_all(RESULTS_COLLECTION), [])
        self.assertEqual(self.lock_fields()["processId"], "other")

    def test_stale_lock_is_reclaimed(self):
        self.set_lock(
            inProgress=True,
            completed=False,
            processId="crashed",
            startedAt=dt_iso(self.clock() - timedelta(seconds=31)),
        )

        outcome = self.make_coordinator().settle()

        self.assertEqual(outcome, Settled(RESULT_ID))
        self.assertEqual(self.lock_fields()["processId"], "proc-1")
        self.assertTrue(self.lock_fields()["completed"])

    def test_lock_without_start_time_is_stale(self):
        self.set_lock(inProgress=True, completed=False, processId="crashed")
        self.assertIsInstance(self.make_coordinator().settle(), Settled)

    def test_failed_lock_is_retried(self):
        self.set_lock(
            inProgress=False,
            completed=False,
            processId="earlier",
            error="store timeout",
            errorAt=dt_iso(self.clock()),
        )
        self.assertEqual(self.make_coordinator().settle(), Settled(RESULT_ID))

    def test_completed_lock_reports_already_settled(self):
        self.set_lock(inProgress=False, completed=True, resultId="42")
        self.assertEqual(self.make_coordinator().settle(), AlreadySettled("42"))
        self.assertEqual(self.store.list_all(RESULTS_COLLECTION), [])

    def test_existing_result_repairs_unfinished_lock(self):
        self.store.set_document(
            RESULTS_COLLECTION, "999", {"minuteKey": WINDOW_KEY, "winningNumbers": WINNING}
        )
        self.set_lock(
            inProgress=True,
            completed=False,
            processId="publisher",
            startedAt=dt_iso(self.clock()),
        )

        outcome = self.make_coordinator().settle()

        self.assertEqual(outcome, AlreadySettled("999"))
        lock = self.lock_fields()
        self.assertTrue(lock["completed"])
        self.assertFalse(lock["inProgress"])
        self.assertEqual(lock["resultId"], "999")
        self.assertEqual(lock["processId"], "publisher")

    def test_completed_lock_is_never_rewritten(self):
        self.store.set_document(
            RESULTS_COLLECTION, "999", {"minuteKey": WINDOW_KEY, "winningNumbers": WINNING}
        )
        self.set_lock(inProgress=False, completed=True, resultId="42", processId="first")

        outcome = self.make_coordinator().settle()

        self.assertEqual(outcome, AlreadySettled("999"))
        lock = self.lock_fields()
        self.assertEqual(lock["resultId"], "42")
        self.assertEqual(lock["processId"], "first")


class _FailingTicketsStore(InMemoryDocumentStore):
    def list_all(self, collection):
        if collection == TICKETS_COLLECTION:
            raise RuntimeError("tickets unavailable")
        return super().list_all(collection)


class _RejectingRewardsStore(InMemoryDocumentStore):
    def add_document(self, collection, fields):
        if fields.get("isFreeTicket") and fields.get("userId") == "bad":
            raise RuntimeError("reward rejected")
        return super().add_document(collection, fields)


class _UnavailableStore(InMemoryDocumentStore):
    def run_transaction(self, fn):
        raise StoreUnavailable("store is down")


class TestFailures(DrawCoordinatorTestMixin, unittest.TestCase):
    def test_scoring_failure_marks_lock_failed(self):
        self.store = _FailingTicketsStore()

        outcome = self.make_coordinator().settle()

        self.assertEqual(outcome, Failed("tickets unavailable"))
        lock = self.lock_fields()
        self.assertFalse(lock["inProgress"])
        self.assertFalse(lock["completed"])
        self.assertEqual(lock["error"], "tickets unavailable")
        self.assertEqual(lock["errorAt"], dt_iso(self.clock()))
        self.assertEqual(self.store.list_all(RESULTS_COLLECTION), [])
        self.assertIsNone(self.store.get_document(GAME_STATE_COLLECTION, GAME_STATE_KEY))

    def test_failed_window_can_be_settled_later(self):
        failing = _FailingTicketsStore()
        self.store = failing
        self.assertIsInstance(self.make_coordinator("proc-1").settle(), Failed)

        healthy = InMemoryDocumentStore()
        healthy.set_document(
            DRAW_CONTROL_COLLECTION,
            WINDOW_KEY,
            failing.get_document(DRAW_CONTROL_COLLECTION, WINDOW_KEY).fields,
        )
        self.store = healthy
        self.assertEqual(self.make_coordinator("proc-2").settle(), Settled(RESULT_ID))

    def test_reward_failure_does_not_undo_settlement(self):
        self.store = _RejectingRewardsStore()
        self.add_ticket(["🎈", "🌟", "🦄", "🎨"], "bad")
        good = self.add_ticket(["🎈", "🌟", "🦄", "🎨"], "good")

        outcome = self.make_coordinator().settle()

        self.assertEqual(outcome, Settled(RESULT_ID))
        result = self.store.get_document(RESULTS_COLLECTION, RESULT_ID)
        self.assertEqual(len(result.get("freePrize")), 2)
        rewards = self.free_tickets()
        self.assertEqual([doc.get("userId") for doc in rewards], ["good"])
        self.assertEqual(rewards[0].get("wonFrom"), good)
        lock = self.lock_fields()
        self.assertTrue(lock["completed"])
        self.assertEqual(lock["resultId"], RESULT_ID)

    def test_unavailable_store_reports_failure(self):
        self.store = _UnavailableStore()
        outcome = self.make_coordinator().settle()
        self.assertEqual(outcome, Failed("store is down"))
        self.assertFalse(outcome.success)

    def test_result_published_elsewhere_during_settlement(self):
        store = self.store

        class _RacingCoordinator(DrawCoordinator):
            def score_tickets(self, winning, *, process_id="-"):
                store.set_document(
                    RESULTS_COLLECTION, "elsewhere", {"minuteKey": WINDOW_KEY}
                )
                return super().score_tickets(winning, process_id=process_id)

        self.add_ticket(["🎈", "🌟", "🦄", "🎨"], "dave")
        coordinator = _RacingCoordinator(
            store,
            settings=self.settings,
            clock=self.clock,
            rng=ScriptedRandom(WINNING),
            process_id_factory=lambda: "proc-1",
        )

        outcome = coordinator.settle()

        self.assertEqual(outcome, AlreadySettled("elsewhere"))
        self.assertIsNone(store.get_document(RESULTS_COLLECTION, RESULT_ID))
        self.assertEqual(self.lock_fields()["resultId"], "elsewhere")
        self.assertEqual(self.free_tickets(), [])


class TestSettlementWithSQLStore(DrawCoordinatorTestMixin, unittest.TestCase):
    def make_store(self):
        self.engine = create_engine("sqlite+pysqlite:///:memory:", future=True)
        Base.metadata.create_all(self.engine)
        Session = sessionmaker(bind=self.engine, future=True, expire_on_commit=False)
        return SQLAlchemyDocumentStore(Session)

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_settle_and_repeat(self):
        winner = self.add_ticket(["🎈", "🌟", "🦄", "🎨"], "dave")

        self.assertEqual(self.make_coordinator("proc-1").settle(), Settled(RESULT_ID))
        self.assertEqual(
            self.make_coordinator("proc-2").settle(), AlreadySettled(RESULT_ID)
        )

        result = self.store.get_document(RESULTS_COLLECTION, RESULT_ID)
        self.assertEqual([ref["id"] for ref in result.get("freePrize")], [winner])
        rewards = self.free_tickets()
        self.assertEqual(len(rewards), 1)
        self.assertEqual(rewards[0].get("wonFrom"), winner)


if __name__ == "__main__":
    unittest.main()
