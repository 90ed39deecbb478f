# coordinator.py
# -----------------------------------------------------------------------------
# Session state machine: NOT_STARTED -> IN_PROGRESS -> SUBMITTING -> COMPLETED
# - Three submission triggers (manual, timeout, integrity), one winner
# - The status check-and-set in submit() has no await before it
# - A failed save keeps the session in SUBMITTING with its Result in memory
# -----------------------------------------------------------------------------

import asyncio
import random
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from answers import AnswerStore
from clock import SessionClock
from integrity import SIGNAL_KINDS, HostSignals, IntegrityMonitor
from models import (
    CheatingEvent, PersistenceError, Question, QuestionsUnavailable, Result,
    Session, SessionStatus, SubmitReason, utcnow,
)
from policy import SessionPolicy
from scoring import ScoreEngine
from sequencer import QuestionSequencer


class QuestionProvider(Protocol):
    def fetch_questions(self, exam_id: str) -> List[Question]: ...


class PersistenceGateway(Protocol):
    def save_result(self, result: Result) -> None: ...
    def save_cheating_event(self, event: CheatingEvent) -> None: ...


class SubmissionCoordinator:
    def __init__(
        self,
        session: Session,
        provider: QuestionProvider,
        gateway: PersistenceGateway,
        policy: Optional[SessionPolicy] = None,
        *,
        signals: Optional[HostSignals] = None,
        now: Callable[[], datetime] = utcnow,
        rng: Optional[random.Random] = None,
        on_completed: Optional[Callable[["SubmissionCoordinator"], None]] = None,
    ):
        self.session = session
        self.policy = policy or SessionPolicy()
        self._provider = provider
        self._gateway = gateway
        self._signals = signals
        self._now = now
        self._on_completed = on_completed

        self.sequencer = QuestionSequencer(rng)
        self.answers = AnswerStore(session, now=now)
        self.scorer = ScoreEngine(self.policy.point_value, self.policy.score_scale, self.policy.pass_percent)
        self.clock = SessionClock(
            on_tick=self._on_tick,
            on_expired=self._on_expired,
            now=now,
            interval=self.policy.tick_seconds,
        )
        self.monitor = IntegrityMonitor(
            session,
            on_episode=self._on_episode,
            on_threshold=self._on_threshold,
            signals=signals,
            threshold=self.policy.cheating_threshold,
            cooldown_seconds=self.policy.episode_cooldown_seconds,
            poll_seconds=self.policy.visibility_poll_seconds,
            now=now,
        )

        self.remaining = self.policy.duration_seconds
        self.result: Optional[Result] = None
        self.persistence_error: Optional[str] = None
        self._starting = False
        self._saving = False
        self._tasks: Set[asyncio.Task] = set()

    # ---- commands --------------------------------------------------------------
    async def start(self) -> bool:
        if self.session.status is not SessionStatus.NOT_STARTED or self._starting:
            return False
        self._starting = True
        try:
            questions = await asyncio.to_thread(self._provider.fetch_questions, self.session.exam_id)
        except Exception:
            self._starting = False
            raise
        if not questions:
            self._starting = False
            raise QuestionsUnavailable(f"exam {self.session.exam_id} has no gradable questions")

        self.sequencer.initialize(questions, self.policy.question_count)
        self.answers.load(self.sequencer.order)

        started_at = self._now()
        self.session.fix_deadline(started_at, started_at + timedelta(seconds=self.policy.duration_seconds))
        self.session.advance(SessionStatus.IN_PROGRESS)
        self.clock.start(self.session.deadline_at)
        self.monitor.start()
        print(f"[session] {self.session.id}: started, {self.sequencer.total} questions, "
              f"deadline {self.session.deadline_at.isoformat()}")
        return True

    def answer(self, question_id: str, option_index: int) -> bool:
        return self.answers.record(question_id, option_index)

    def next(self) -> bool:
        if not self.session.in_progress:
            return False
        return self.sequencer.next()

    def previous(self) -> bool:
        if not self.session.in_progress:
            return False
        return self.sequencer.previous()

    def go_to(self, index: int) -> bool:
        if not self.session.in_progress:
            return False
        return self.sequencer.go_to(index)

    def signal(self, kind: str) -> bool:
        """Signal intake: forwards to the host source, or straight to the monitor without one."""
        if kind not in SIGNAL_KINDS:
            raise ValueError(f"unknown signal kind: {kind}")
        if self._signals is not None and self._signals.available:
            before = self.session.cheating_attempts
            self._signals.emit(kind)
            return self.session.cheating_attempts > before
        return self.monitor.signal(kind)

    def report_visibility(self, hidden: bool) -> None:
        if self._signals is not None:
            self._signals.set_hidden(hidden)

    def acknowledge(self) -> None:
        self.monitor.acknowledge()

    async def submit(self, reason: str = SubmitReason.MANUAL.value) -> Optional[Result]:
        # check-and-set: only the first trigger to see IN_PROGRESS gets through
        if self.session.status is not SessionStatus.IN_PROGRESS:
            return None
        self.session.advance(SessionStatus.SUBMITTING)
        self.session.submit_reason = str(reason)

        self.clock.stop()
        self.monitor.stop()
        self.answers.freeze()
        self.sequencer.freeze()
        self.remaining = self.clock.remaining()
        self.result = self._build_result(str(reason))
        print(f"[session] {self.session.id}: submitting ({reason}) "
              f"score={self.result.score}/{self.result.max_score}")
        return await self._persist()

    async def retry(self) -> Optional[Result]:
        """Re-attempt saving the retained Result. No-op unless a save has failed."""
        if self.session.status is not SessionStatus.SUBMITTING or self._saving:
            return None
        return await self._persist()

    async def close(self, drain: bool = False) -> None:
        """Teardown. With drain=True pending background writes finish instead of being cancelled."""
        self.clock.stop()
        self.monitor.stop()
        tasks = [t for t in self._tasks if t is not asyncio.current_task()]
        if not drain:
            for t in tasks:
                t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ---- internals -------------------------------------------------------------
    def _build_result(self, reason: str) -> Result:
        questions = self.sequencer.order
        selections = self.answers.selections()
        grade = self.scorer.grade(questions, selections)
        return Result(
            session_id=self.session.id,
            exam_id=self.session.exam_id,
            student_id=self.session.student_id,
            score=grade.score,
            max_score=grade.max_score,
            percentage=grade.percentage,
            passed=grade.passed,
            cheating_attempts=self.session.cheating_attempts,
            completed_at=self._now(),
            reason=reason,
            answers=selections,
        )

    async def _persist(self) -> Result:
        assert self.result is not None
        self._saving = True
        last_error: Optional[BaseException] = None
        try:
            for n in range(1, self.policy.save_attempts + 1):
                try:
                    await asyncio.to_thread(self._gateway.save_result, self.result)
                except Exception as e:
                    last_error = e
                    print(f"[session] {self.session.id}: save_result attempt "
                          f"{n}/{self.policy.save_attempts} failed: {e}")
                    if n < self.policy.save_attempts:
                        await asyncio.sleep(self.policy.save_backoff_seconds * (2 ** (n - 1)))
                    continue
                self.persistence_error = None
                self.session.advance(SessionStatus.COMPLETED)
                print(f"[session] {self.session.id}: completed")
                if self._on_completed is not None:
                    self._on_completed(self)
                return self.result
        finally:
            self._saving = False
        self.persistence_error = str(last_error)
        raise PersistenceError(f"could not save result: {last_error}", self.result) from last_error

    def _spawn(self, coro: Awaitable[Any], label: str) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task):
            self._tasks.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                print(f"[session] {self.session.id}: {label} failed: {exc}")
        task.add_done_callback(_done)

    def _on_tick(self, remaining: float) -> None:
        self.remaining = remaining

    def _on_expired(self) -> None:
        self._spawn(self.submit(SubmitReason.TIMEOUT.value), "timeout submit")

    def _on_threshold(self) -> None:
        print(f"[session] {self.session.id}: integrity threshold reached, auto-submitting")
        self._spawn(self.submit(SubmitReason.INTEGRITY.value), "integrity submit")

    def _on_episode(self, event: CheatingEvent) -> None:
        self._spawn(self._save_event(event), "cheating event save")

    async def _save_event(self, event: CheatingEvent) -> None:
        try:
            await asyncio.to_thread(self._gateway.save_cheating_event, event)
        except Exception as e:
            print(f"[session] {self.session.id}: cheating event dropped: {e}")

    # ---- read side -------------------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        s = self.session
        current = self.sequencer.current_question()
        if s.status is SessionStatus.IN_PROGRESS:
            remaining = self.clock.remaining()
        elif s.status is SessionStatus.NOT_STARTED:
            remaining = self.policy.duration_seconds
        else:
            remaining = self.remaining
        return {
            "session_id": s.id,
            "exam_id": s.exam_id,
            "status": s.status.value,
            "current_question": current.public_dict() if current else None,
            "current_index": self.sequencer.current_index,
            "total_questions": self.sequencer.total,
            "remaining": round(remaining, 3),
            "deadline_at": s.deadline_at.isoformat() if s.deadline_at else None,
            "cheating_attempts": s.cheating_attempts,
            "pending_acknowledgement": self.monitor.pending_acknowledgement,
            "integrity_degraded": self.monitor.degraded,
            "answers": dict(self.answers.selections()),
            "submit_reason": s.submit_reason,
            "result": self.result.to_dict() if self.result else None,
            "persistence_error": self.persistence_error,
        }
