# integrity.py
# -----------------------------------------------------------------------------
# Academic-integrity monitor: focus / visibility signals -> debounced episodes.
# - Signal source is optional; without it the monitor polls a visibility probe
# - One episode per cooldown window no matter how many signals co-occur
# - Threshold callback fires once per session
# -----------------------------------------------------------------------------

import asyncio
import threading
from datetime import datetime
from typing import Callable, List, Optional

from models import CheatingEvent, IntegrityUnavailable, Session, utcnow

VISIBILITY_LOST = "visibility_lost"
FOCUS_LOST = "focus_lost"
POLL_HIDDEN = "poll_hidden"
SIGNAL_KINDS = (VISIBILITY_LOST, FOCUS_LOST)

Listener = Callable[[str], None]


class HostSignals:
    """In-process signal source fed by the HTTP layer (one per session).

    emit() forwards a notification to the subscribed listeners. set_hidden() is
    the only writer of the visibility flag the monitor's poll reads back, so a
    one-off signal never leaves the page looking hidden.
    """

    def __init__(self, available: bool = True):
        self.available = available
        self._listeners: List[Listener] = []
        self._hidden = False
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        if not self.available:
            raise IntegrityUnavailable("host does not report focus/visibility changes")
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe():
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return _unsubscribe

    def emit(self, kind: str) -> None:
        if kind not in SIGNAL_KINDS:
            raise ValueError(f"unknown signal kind: {kind}")
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            listener(kind)

    def set_hidden(self, hidden: bool) -> None:
        self._hidden = bool(hidden)

    def is_hidden(self) -> bool:
        return self._hidden

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._listeners)


class IntegrityMonitor:
    def __init__(
        self,
        session: Session,
        on_episode: Optional[Callable[[CheatingEvent], None]] = None,
        on_threshold: Optional[Callable[[], None]] = None,
        *,
        signals: Optional[HostSignals] = None,
        visibility_probe: Optional[Callable[[], bool]] = None,
        threshold: int = 3,
        cooldown_seconds: float = 5.0,
        poll_seconds: float = 2.0,
        now: Callable[[], datetime] = utcnow,
    ):
        self._session = session
        self._on_episode = on_episode
        self._on_threshold = on_threshold
        self._signals = signals
        self._probe = visibility_probe
        if self._probe is None and signals is not None:
            self._probe = signals.is_hidden
        self.threshold = int(threshold)
        self.cooldown_seconds = float(cooldown_seconds)
        self.poll_seconds = float(poll_seconds)
        self._now = now

        self._active = False
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._episode_started: Optional[datetime] = None
        self._threshold_fired = False
        self.pending_acknowledgement = False
        self.degraded = False

    # ---- lifecycle -------------------------------------------------------------
    def start(self) -> None:
        if self._active:
            return
        self._active = True
        polling = self._probe is not None and self.poll_seconds > 0
        fallback = "poll-only detection" if polling else "detection disabled"
        if self._signals is None:
            self.degraded = True
            print(f"[integrity] {self._session.id}: no signal source; {fallback}")
        else:
            try:
                self._unsubscribe = self._signals.subscribe(self.signal)
            except IntegrityUnavailable as e:
                self.degraded = True
                print(f"[integrity] {self._session.id}: {e}; {fallback}")
        if polling:
            self._poll_task = asyncio.get_running_loop().create_task(self._poll())

    def stop(self) -> None:
        self._active = False
        unsub, self._unsubscribe = self._unsubscribe, None
        if unsub is not None:
            unsub()
        task, self._poll_task = self._poll_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    @property
    def active(self) -> bool:
        return self._active

    async def _poll(self) -> None:
        while self._active:
            await asyncio.sleep(self.poll_seconds)
            if self._active and self._probe():
                self.signal(POLL_HIDDEN)

    # ---- intake ----------------------------------------------------------------
    def in_episode(self) -> bool:
        if self._episode_started is None:
            return False
        elapsed = (self._now() - self._episode_started).total_seconds()
        return elapsed < self.cooldown_seconds

    def signal(self, kind: str) -> bool:
        """Returns True when this signal opened a new episode."""
        if not self._active or not self._session.in_progress:
            return False
        if self.in_episode():
            return False

        detected_at = self._now()
        self._episode_started = detected_at
        self._session.cheating_attempts += 1
        self.pending_acknowledgement = True
        event = CheatingEvent(
            session_id=self._session.id,
            reason=kind,
            detected_at=detected_at,
            attempt_count=self._session.cheating_attempts,
        )
        print(f"[integrity] {self._session.id}: episode {event.attempt_count} ({kind})")
        if self._on_episode is not None:
            self._on_episode(event)

        if self._session.cheating_attempts >= self.threshold and not self._threshold_fired:
            self._threshold_fired = True
            if self._on_threshold is not None:
                self._on_threshold()
        return True

    def acknowledge(self) -> None:
        self.pending_acknowledgement = False
