# runtime.py
# -----------------------------------------------------------------------------
# SessionHost: one asyncio loop on a daemon thread that owns every live session.
# Request threads never touch a coordinator directly; each call is marshalled
# onto the loop so commands, ticks and signals share one queue.
# -----------------------------------------------------------------------------

import asyncio
import threading
import uuid
from collections import OrderedDict
from typing import Any, Callable, Dict, Optional, Set, Tuple

from coordinator import PersistenceGateway, QuestionProvider, SubmissionCoordinator
from integrity import HostSignals
from models import AttemptConflict, Session
from policy import SessionPolicy


class SessionHost:
    def __init__(
        self,
        provider: QuestionProvider,
        gateway: PersistenceGateway,
        policy: Optional[SessionPolicy] = None,
        *,
        coordinator_factory: Optional[Callable[..., SubmissionCoordinator]] = None,
        call_timeout: float = 30.0,
        finished_cache_size: int = 512,
    ):
        self.provider = provider
        self.gateway = gateway
        self.policy = policy or SessionPolicy()
        self.call_timeout = call_timeout
        self._factory = coordinator_factory or SubmissionCoordinator
        self._sessions: Dict[str, SubmissionCoordinator] = {}
        # session_id -> (student_id, final snapshot), oldest evicted first
        self._finished: "OrderedDict[str, Tuple[str, Dict[str, Any]]]" = OrderedDict()
        self._finished_size = finished_cache_size
        self._finished_lock = threading.Lock()
        self._closing: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    # ---- loop lifecycle --------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            loop = asyncio.new_event_loop()
            ready = threading.Event()

            def _run():
                asyncio.set_event_loop(loop)
                loop.call_soon(ready.set)
                loop.run_forever()

            self._loop = loop
            self._thread = threading.Thread(target=_run, name="session-host", daemon=True)
            self._thread.start()
            ready.wait()

    def stop(self) -> None:
        with self._lock:
            loop, thread = self._loop, self._thread
            if loop is None or thread is None:
                return
            try:
                asyncio.run_coroutine_threadsafe(self._close_all(), loop).result(self.call_timeout)
            finally:
                loop.call_soon_threadsafe(loop.stop)
                thread.join(timeout=5)
                loop.close()
                self._loop = None
                self._thread = None

    async def _close_all(self) -> None:
        for coord in list(self._sessions.values()):
            await coord.close()
        self._sessions.clear()
        if self._closing:
            await asyncio.gather(*list(self._closing), return_exceptions=True)

    # ---- marshalling -----------------------------------------------------------
    def call(self, coro) -> Any:
        """Run a coroutine on the host loop and wait for its outcome."""
        if self._loop is None:
            self.start()
        fut = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return fut.result(self.call_timeout)

    def run(self, fn: Callable[..., Any], *args: Any) -> Any:
        """Run a plain callable on the host loop (never in the caller's thread)."""
        async def _invoke():
            return fn(*args)
        return self.call(_invoke())

    # ---- registry --------------------------------------------------------------
    def open_session(self, student_id: str, exam_id: str,
                     policy: Optional[SessionPolicy] = None) -> SubmissionCoordinator:
        """Register a new session; at most one attempt per (student, exam) at a time."""
        student_id, exam_id = str(student_id), str(exam_id)
        session = Session(id=uuid.uuid4().hex, student_id=student_id, exam_id=exam_id)

        async def _create():
            for live in self._sessions.values():
                if live.session.student_id == student_id and live.session.exam_id == exam_id:
                    raise AttemptConflict(f"exam {exam_id} already has an open session", live.session.id)
            with self._finished_lock:
                for sid, (owner, snap) in self._finished.items():
                    if owner == student_id and snap.get("exam_id") == exam_id:
                        raise AttemptConflict(f"exam {exam_id} was already submitted", sid)
            coord = self._factory(
                session, self.provider, self.gateway, policy or self.policy,
                signals=HostSignals(),
                on_completed=self._retire,
            )
            self._sessions[session.id] = coord
            return coord
        return self.call(_create())

    def _retire(self, coord: SubmissionCoordinator) -> None:
        # runs on the loop the moment a session reaches COMPLETED
        sid = coord.session.id
        self._sessions.pop(sid, None)
        with self._finished_lock:
            self._finished[sid] = (coord.session.student_id, coord.snapshot())
            self._finished.move_to_end(sid)
            while len(self._finished) > self._finished_size:
                self._finished.popitem(last=False)
        task = asyncio.ensure_future(coord.close(drain=True))
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)
        print(f"[host] {sid}: retired, {len(self._sessions)} live")

    def get(self, session_id: str) -> Optional[SubmissionCoordinator]:
        return self._sessions.get(session_id)

    def finished(self, session_id: str) -> Optional[Tuple[str, Dict[str, Any]]]:
        """(student_id, final snapshot) of a recently completed session."""
        with self._finished_lock:
            return self._finished.get(session_id)

    def discard(self, session_id: str) -> None:
        async def _discard():
            coord = self._sessions.pop(session_id, None)
            if coord is not None:
                await coord.close()
        self.call(_discard())

    def __len__(self) -> int:
        return len(self._sessions)
