from __future__ import annotations

import logging
import math
from typing import Callable, Optional

from .clock import Cancellable, Clock

logger = logging.getLogger(__name__)

TickCallback = Callable[[str, int], None]
ExpireCallback = Callable[[str], None]


class SessionTimer:
    """Countdown for the active poll.

    Ticks land on whole intervals after ``started_at``; the remaining time is
    always recomputed from the clock rather than decremented, so a late tick
    never drifts. ``on_expire`` runs once per poll id.
    """

    def __init__(
        self,
        clock: Clock,
        on_tick: TickCallback,
        on_expire: ExpireCallback,
        interval: float = 1.0,
    ):
        self._clock = clock
        self._on_tick = on_tick
        self._on_expire = on_expire
        self._interval = interval
        self._handle: Optional[Cancellable] = None
        self._poll_id: Optional[str] = None
        self._started_at = 0.0
        self._time_limit = 0

    @property
    def poll_id(self) -> Optional[str]:
        return self._poll_id

    @property
    def running(self) -> bool:
        return self._poll_id is not None

    def start(self, poll_id: str, started_at: float, time_limit: int) -> None:
        self.cancel()
        self._poll_id = poll_id
        self._started_at = started_at
        self._time_limit = time_limit
        logger.debug("timer started for poll %s (%ss)", poll_id, time_limit)
        self._schedule_next(poll_id)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._poll_id = None

    def time_left(self, now: Optional[float] = None) -> int:
        if self._poll_id is None:
            return 0
        now = self._clock.now() if now is None else now
        elapsed = math.floor(max(0.0, now - self._started_at))
        return max(0, self._time_limit - elapsed)

    def _schedule_next(self, poll_id: str) -> None:
        elapsed = max(0.0, self._clock.now() - self._started_at)
        step = math.floor(elapsed / self._interval) + 1
        deadline = self._started_at + step * self._interval
        self._handle = self._clock.schedule_at(deadline, lambda: self._fire(poll_id))

    def _fire(self, poll_id: str) -> None:
        if poll_id != self._poll_id:
            logger.debug("dropping stale tick for poll %s", poll_id)
            return

        remaining = self.time_left()
        self._on_tick(poll_id, remaining)
        if poll_id != self._poll_id:
            # the tick handler ended or replaced the poll
            return

        if remaining <= 0:
            self._handle = None
            self._poll_id = None
            self._on_expire(poll_id)
            return

        self._schedule_next(poll_id)
