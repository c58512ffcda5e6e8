from __future__ import annotations

import asyncio
import heapq
import itertools
from typing import Callable, List, Optional, Protocol, Tuple

from .utils import now_ts


class Cancellable(Protocol):
    def cancel(self) -> None: ...


class Clock(Protocol):
    def now(self) -> float: ...

    def schedule_at(self, deadline: float, callback: Callable[[], None]) -> Cancellable: ...


class AsyncioClock:
    """Wall clock whose callbacks run on the asyncio event loop."""

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    def now(self) -> float:
        return now_ts()

    def schedule_at(self, deadline: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        loop = self._loop or asyncio.get_running_loop()
        return loop.call_later(max(0.0, deadline - self.now()), callback)


class _ManualHandle:
    def __init__(self):
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualClock:
    """Deterministic clock; time only moves when ``advance`` is called."""

    def __init__(self, start: float = 1_700_000_000.0):
        self._now = start
        self._queue: List[Tuple[float, int, Callable[[], None], _ManualHandle]] = []
        self._seq = itertools.count()

    def now(self) -> float:
        return self._now

    def schedule_at(self, deadline: float, callback: Callable[[], None]) -> _ManualHandle:
        handle = _ManualHandle()
        heapq.heappush(self._queue, (deadline, next(self._seq), callback, handle))
        return handle

    @property
    def pending(self) -> int:
        return sum(1 for *_, handle in self._queue if not handle.cancelled)

    def advance(self, seconds: float) -> None:
        """Move time forward, running due callbacks in deadline order."""
        target = self._now + seconds
        while self._queue and self._queue[0][0] <= target:
            deadline, _, callback, handle = heapq.heappop(self._queue)
            if handle.cancelled:
                continue
            self._now = max(self._now, deadline)
            callback()
        self._now = target
