# clock.py
import asyncio
from datetime import datetime
from typing import Callable, Optional

from models import utcnow


class SessionClock:
    """Countdown against an absolute wall-clock deadline.

    Every tick recomputes deadline - now(); nothing is decremented, so a loop that
    was suspended reports the true remaining time as soon as it runs again.
    `on_expired` fires exactly once, after which the clock stays stopped.
    """

    def __init__(
        self,
        on_tick: Optional[Callable[[float], None]] = None,
        on_expired: Optional[Callable[[], None]] = None,
        now: Callable[[], datetime] = utcnow,
        interval: float = 1.0,
    ):
        self._on_tick = on_tick
        self._on_expired = on_expired
        self._now = now
        self._interval = float(interval)
        self._deadline: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None
        self._expired = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def expired(self) -> bool:
        return self._expired

    def remaining(self) -> float:
        if self._deadline is None:
            return 0.0
        return max(0.0, (self._deadline - self._now()).total_seconds())

    def start(self, deadline_at: datetime) -> None:
        if self.running or self._expired:
            return
        if self._deadline is None:
            self._deadline = deadline_at
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _run(self) -> None:
        while True:
            left = self.remaining()
            if left <= 0:
                self._fire_expired()
                return
            if self._on_tick is not None:
                self._on_tick(left)
            await asyncio.sleep(min(self._interval, left))

    def _fire_expired(self) -> None:
        if self._expired:
            return
        self._expired = True
        if self._on_tick is not None:
            self._on_tick(0.0)
        if self._on_expired is not None:
            self._on_expired()
