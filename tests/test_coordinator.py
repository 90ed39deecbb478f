import asyncio
import random
import sys
import threading
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from coordinator import SubmissionCoordinator  # noqa: E402
from integrity import FOCUS_LOST, VISIBILITY_LOST, HostSignals  # noqa: E402
from models import (  # noqa: E402
    PersistenceError, Question, QuestionsUnavailable, Session, SessionStatus,
)
from policy import SessionPolicy  # noqa: E402


QUESTIONS = [
    Question(id="q1", text="Capital of France?", options=("Lyon", "Paris", "Nice"), correct_option_index=1),
    Question(id="q2", text="2 + 2", options=("3", "4"), correct_option_index=1),
    Question(id="q3", text="Largest planet", options=("Mars", "Jupiter"), correct_option_index=1),
]


class FakeWallClock:
    def __init__(self):
        self.t = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.t

    def advance(self, seconds):
        self.t += timedelta(seconds=seconds)


class FakeProvider:
    def __init__(self, questions):
        self.questions = list(questions)
        self.calls = 0

    def fetch_questions(self, exam_id):
        self.calls += 1
        return list(self.questions)


class FakeGateway:
    """Rows keyed by session_id, like the ON CONFLICT insert."""

    def __init__(self, fail_times=0, fail_after_write=False, delay=0.0):
        self.rows = {}
        self.save_calls = 0
        self.events = []
        self.fail_times = fail_times
        self.fail_after_write = fail_after_write
        self.fail_events = False
        self.delay = delay
        self._lock = threading.Lock()

    def save_result(self, result):
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.save_calls += 1
            if self.fail_after_write:
                self.rows.setdefault(result.session_id, result)
            if self.fail_times > 0:
                self.fail_times -= 1
                raise RuntimeError("connection reset")
            self.rows.setdefault(result.session_id, result)

    def save_cheating_event(self, event):
        if self.fail_events:
            raise RuntimeError("cheating table missing")
        self.events.append(event)


def _policy(**kw):
    base = dict(duration_seconds=5, point_value=1, tick_seconds=0.01,
                visibility_poll_seconds=0, save_attempts=2, save_backoff_seconds=0)
    base.update(kw)
    return SessionPolicy(**base)


def _coordinator(wall, gateway=None, provider=None, signals=None, **policy_kw):
    session = Session(id="sess-1", student_id="7", exam_id="e1")
    return SubmissionCoordinator(
        session,
        provider or FakeProvider(QUESTIONS),
        gateway or FakeGateway(),
        _policy(**policy_kw),
        signals=signals,
        now=wall,
        rng=random.Random(0),
    )


async def wait_until(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


def test_timeout_scenario_scores_only_correct_answers():
    wall = FakeWallClock()
    gateway = FakeGateway()

    async def scenario():
        coord = _coordinator(wall, gateway)
        assert await coord.start() is True
        assert coord.answer("q1", 1)
        assert coord.answer("q2", 0)
        wall.advance(6)
        await wait_until(lambda: coord.session.status is SessionStatus.COMPLETED)
        return coord

    coord = asyncio.run(scenario())
    result = coord.result
    assert result.score == 1
    assert result.max_score == 3
    assert result.cheating_attempts == 0
    assert result.reason == "timeout"
    assert dict(result.answers) == {"q1": 1, "q2": 0}
    assert coord.session.status is SessionStatus.COMPLETED
    assert list(gateway.rows) == ["sess-1"]
    assert coord.clock.running is False


@pytest.mark.parametrize("order", [("manual", "timeout"), ("timeout", "manual")])
def test_racing_triggers_persist_exactly_once(order):
    wall = FakeWallClock()
    gateway = FakeGateway()

    async def scenario():
        coord = _coordinator(wall, gateway)
        await coord.start()
        coord.answer("q3", 1)
        results = await asyncio.gather(*(coord.submit(r) for r in order))
        return coord, results

    coord, results = asyncio.run(scenario())
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    assert winners[0].reason == order[0]
    assert gateway.save_calls == 1
    assert len(gateway.rows) == 1
    assert coord.session.submit_reason == order[0]


def test_clock_expiry_during_manual_save_is_absorbed():
    wall = FakeWallClock()
    gateway = FakeGateway(delay=0.05)

    async def scenario():
        coord = _coordinator(wall, gateway)
        await coord.start()
        manual = asyncio.ensure_future(coord.submit("manual"))
        await asyncio.sleep(0)
        # expiry arrives while the manual save is still in flight
        coord._on_expired()
        result = await manual
        await asyncio.sleep(0.02)
        return coord, result

    coord, result = asyncio.run(scenario())
    assert result.reason == "manual"
    assert gateway.save_calls == 1
    assert coord.session.status is SessionStatus.COMPLETED


def test_three_integrity_episodes_auto_submit_once():
    wall = FakeWallClock()
    gateway = FakeGateway()
    signals = HostSignals()

    async def scenario():
        coord = _coordinator(wall, gateway, signals=signals, duration_seconds=600,
                             cheating_threshold=3, episode_cooldown_seconds=5)
        await coord.start()
        for _ in range(3):
            coord.signal(VISIBILITY_LOST)
            wall.advance(6)
        await wait_until(lambda: coord.session.status is SessionStatus.COMPLETED)
        coord.signal(VISIBILITY_LOST)
        await asyncio.sleep(0.02)
        return coord

    coord = asyncio.run(scenario())
    assert coord.result.reason == "integrity"
    assert coord.result.cheating_attempts == 3
    assert coord.session.cheating_attempts == 3
    assert gateway.save_calls == 1
    assert sorted(e.attempt_count for e in gateway.events) == [1, 2, 3]
    assert signals.subscriber_count == 0


def test_simultaneous_focus_and_visibility_loss_is_one_episode():
    wall = FakeWallClock()
    signals = HostSignals()

    async def scenario():
        coord = _coordinator(wall, signals=signals, duration_seconds=600)
        await coord.start()
        assert coord.signal(VISIBILITY_LOST) is True
        assert coord.signal(FOCUS_LOST) is False
        snap = coord.snapshot()
        coord.acknowledge()
        await coord.close()
        return snap, coord

    snap, coord = asyncio.run(scenario())
    assert snap["cheating_attempts"] == 1
    assert snap["pending_acknowledgement"] is True
    assert coord.snapshot()["pending_acknowledgement"] is False


def test_failed_save_keeps_result_and_retry_completes():
    wall = FakeWallClock()
    gateway = FakeGateway(fail_times=3)

    async def scenario():
        coord = _coordinator(wall, gateway, duration_seconds=600, save_attempts=2)
        await coord.start()
        coord.answer("q1", 1)
        with pytest.raises(PersistenceError) as info:
            await coord.submit("manual")
        retained = coord.result
        assert info.value.result is retained
        assert coord.session.status is SessionStatus.SUBMITTING
        assert "connection reset" in coord.snapshot()["persistence_error"]
        # the session is frozen while the save is outstanding
        assert coord.answer("q2", 1) is False
        assert await coord.submit("manual") is None
        assert gateway.rows == {}

        result = await coord.retry()
        return coord, retained, result

    coord, retained, result = asyncio.run(scenario())
    assert result is retained
    assert coord.session.status is SessionStatus.COMPLETED
    assert coord.persistence_error is None
    assert gateway.save_calls == 4
    assert list(gateway.rows.values()) == [retained]


def test_retry_after_ambiguous_failure_does_not_duplicate_rows():
    wall = FakeWallClock()
    gateway = FakeGateway(fail_times=1, fail_after_write=True)

    async def scenario():
        coord = _coordinator(wall, gateway, duration_seconds=600, save_attempts=1)
        await coord.start()
        with pytest.raises(PersistenceError):
            await coord.submit("manual")
        await coord.retry()
        return coord

    coord = asyncio.run(scenario())
    assert coord.session.status is SessionStatus.COMPLETED
    assert len(gateway.rows) == 1


def test_completed_session_ignores_further_commands():
    wall = FakeWallClock()
    gateway = FakeGateway()

    async def scenario():
        coord = _coordinator(wall, gateway, duration_seconds=600)
        await coord.start()
        coord.answer("q1", 1)
        result = await coord.submit("manual")
        before = coord.snapshot()
        assert coord.answer("q1", 0) is False
        assert coord.next() is False
        assert coord.previous() is False
        assert coord.go_to(2) is False
        assert await coord.submit("manual") is None
        assert await coord.retry() is None
        assert coord.signal(FOCUS_LOST) is False
        return coord, result, before

    coord, result, before = asyncio.run(scenario())
    after = coord.snapshot()
    assert coord.result is result
    assert after["answers"] == before["answers"] == {"q1": 1}
    assert after["current_index"] == before["current_index"]
    assert after["cheating_attempts"] == 0
    assert gateway.save_calls == 1


def test_start_only_once_even_when_raced():
    wall = FakeWallClock()
    provider = FakeProvider(QUESTIONS)

    async def scenario():
        coord = _coordinator(wall, provider=provider, duration_seconds=600)
        started = await asyncio.gather(coord.start(), coord.start())
        again = await coord.start()
        deadline = coord.session.deadline_at
        wall.advance(30)
        snap = coord.snapshot()
        await coord.close()
        return started, again, deadline, snap

    started, again, deadline, snap = asyncio.run(scenario())
    assert sorted(started) == [False, True]
    assert again is False
    assert provider.calls == 1
    assert deadline == datetime(2026, 1, 1, 9, 10, tzinfo=timezone.utc)
    assert snap["remaining"] == 570.0
    assert snap["status"] == "IN_PROGRESS"


def test_start_without_questions_stays_not_started():
    wall = FakeWallClock()

    async def scenario():
        coord = _coordinator(wall, provider=FakeProvider([]))
        with pytest.raises(QuestionsUnavailable):
            await coord.start()
        return coord

    coord = asyncio.run(scenario())
    assert coord.session.status is SessionStatus.NOT_STARTED
    assert coord.session.deadline_at is None


def test_lost_cheating_event_does_not_block_session():
    wall = FakeWallClock()
    gateway = FakeGateway()
    gateway.fail_events = True

    async def scenario():
        coord = _coordinator(wall, gateway, duration_seconds=600)
        await coord.start()
        coord.signal(FOCUS_LOST)
        await asyncio.sleep(0.02)
        assert coord.answer("q2", 1)
        return await coord.submit("manual")

    result = asyncio.run(scenario())
    assert result.cheating_attempts == 1
    assert gateway.events == []


def test_snapshot_hides_answer_key_and_navigates():
    wall = FakeWallClock()

    async def scenario():
        coord = _coordinator(wall, duration_seconds=600)
        first = coord.snapshot()
        await coord.start()
        snap = coord.snapshot()
        coord.next()
        moved = coord.snapshot()
        await coord.close()
        return first, snap, moved

    first, snap, moved = asyncio.run(scenario())
    assert first["status"] == "NOT_STARTED"
    assert first["remaining"] == 600
    assert snap["total_questions"] == 3
    assert snap["current_index"] == 0
    assert "correct_option_index" not in snap["current_question"]
    assert set(snap) >= {"status", "current_question", "current_index", "total_questions",
                         "remaining", "cheating_attempts", "answers"}
    assert moved["current_index"] == 1


def test_close_cancels_clock_and_monitor():
    wall = FakeWallClock()
    signals = HostSignals()

    async def scenario():
        coord = _coordinator(wall, signals=signals, duration_seconds=600)
        await coord.start()
        assert coord.clock.running
        assert signals.subscriber_count == 1
        await coord.close()
        wall.advance(3600)
        await asyncio.sleep(0.03)
        return coord

    coord = asyncio.run(scenario())
    assert coord.clock.running is False
    assert coord.monitor.active is False
    assert signals.subscriber_count == 0
    assert coord.session.status is SessionStatus.IN_PROGRESS


def test_one_signal_with_polling_enabled_counts_once():
    wall = FakeWallClock()
    signals = HostSignals()

    async def scenario():
        coord = _coordinator(wall, signals=signals, duration_seconds=600, visibility_poll_seconds=0.01)
        await coord.start()
        assert coord.signal(VISIBILITY_LOST) is True
        for _ in range(3):
            wall.advance(6)
            await asyncio.sleep(0.03)
        after_signal = (coord.session.status, coord.session.cheating_attempts)

        # the client reports the page as hidden; the poll sees it after the cooldown
        coord.report_visibility(True)
        await wait_until(lambda: coord.session.cheating_attempts == 2)
        coord.report_visibility(False)
        wall.advance(6)
        await asyncio.sleep(0.03)
        await coord.close()
        return coord, after_signal

    coord, (status, attempts) = asyncio.run(scenario())
    assert status is SessionStatus.IN_PROGRESS
    assert attempts == 1
    assert coord.session.cheating_attempts == 2
    assert coord.session.status is SessionStatus.IN_PROGRESS
