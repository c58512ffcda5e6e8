from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, List, Optional

from .utils import now_ts


POLL_CREATED = "poll-created"
POLL_RESULTS = "poll-results"
POLL_ENDED = "poll-ended"
POLL_HISTORY_UPDATED = "poll-history-updated"
POLL_RESET = "poll-reset"
POLL_UPDATE = "poll-update"
TIMER_UPDATE = "timer-update"
ANSWER_FEEDBACK = "answer-feedback"
SESSION_STARTED = "session-started"
SESSION_ENDED = "session-ended"
SESSION_STATE = "session-state"
SESSION_RESET = "session-reset"
STUDENT_PERFORMANCE = "student-performance"
USER_LIST_UPDATED = "user-list-updated"
USER_LIST = "user-list"
USER_JOINED = "user-joined"
USER_LEFT = "user-left"
STUDENT_REMOVED = "student-removed"
KICKED_OUT = "kicked-out"
NEW_MESSAGE = "new-message"
CHAT_HISTORY = "chat-history"
JOINED = "joined"
ERROR = "error"


@dataclass
class DomainEvent:
    """Something that happened in the room.

    ``target`` addresses a single connection; ``exclude`` skips one connection
    of an otherwise room-wide broadcast.
    """

    type: str
    payload: Any = field(default_factory=dict)
    target: Optional[str] = None
    exclude: Optional[str] = None

    @property
    def is_broadcast(self) -> bool:
        return self.target is None

    def message(self) -> dict[str, Any]:
        return {"type": self.type, "data": self.payload}


class EventLog:
    """Keep broadcast events so clients without a socket can poll via HTTP."""

    def __init__(self, limit: int = 500):
        self._events: Deque[dict[str, Any]] = deque(maxlen=limit)
        self._seq = 0

    def append(self, payload: dict[str, Any]) -> int:
        """Store a new event and return its sequence number."""

        self._seq += 1
        self._events.append({"seq": self._seq, "timestamp": now_ts(), "payload": payload})
        return self._seq

    def list(self, after: int | None = None, limit: int = 200) -> List[dict[str, Any]]:
        """Return events that occur after the given sequence."""

        events = [e for e in self._events if after is None or e["seq"] > after]
        return events[:limit]

    def reset(self) -> None:
        """Drop stored events; sequence numbers keep increasing so pollers never see a seq twice."""

        self._events.clear()
