from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from pydantic import ValidationError

from . import events
from .chat import ChatLog
from .clock import AsyncioClock, Clock
from .config import Settings
from .engine import PollEngine
from .errors import Forbidden, NotFound, PollError, Unauthenticated
from .events import DomainEvent, EventLog
from .models import Participant, Role
from .registry import ConnectionRegistry
from .schemas import CreatePollIn, JoinIn, RemoveStudentIn, SendMessageIn, StudentPerformanceIn, SubmitAnswerIn
from .timer import SessionTimer

logger = logging.getLogger(__name__)

KICKED_OUT_MESSAGE = "You have been removed from the session by the teacher."
ADMIN_CONNECTION_ID = "admin-api"

_CLOSE = object()


class Connection(Protocol):
    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000) -> None: ...


class _Outbox:
    """Ordered, non-blocking delivery to one connection."""

    def __init__(self, connection_id: str, connection: Connection):
        self.connection_id = connection_id
        self.connection = connection
        self.queue: asyncio.Queue = asyncio.Queue()
        self.closed = False
        self.task = asyncio.create_task(self._pump())

    def put(self, message: Any) -> None:
        if not self.closed:
            self.queue.put_nowait(message)

    def close(self) -> None:
        if not self.closed:
            self.queue.put_nowait(_CLOSE)
            self.closed = True

    async def _pump(self) -> None:
        while True:
            message = await self.queue.get()
            try:
                if message is _CLOSE:
                    await self.connection.close()
                    return
                await self.connection.send_json(message)
            except Exception:
                logger.warning("dropping message to %s", self.connection_id, exc_info=True)
            finally:
                self.queue.task_done()


Handler = Callable[[str, Optional[Participant], Dict[str, Any]], List[DomainEvent]]


class EventGateway:
    """The only place where commands come in and messages go out.

    All state changes, including timer callbacks, happen while holding
    ``self._lock``; outbound messages are queued under the lock and written by
    each connection's own task.
    """

    def __init__(self, settings: Settings, clock: Optional[Clock] = None, event_log: Optional[EventLog] = None):
        self.settings = settings
        self.clock = clock or AsyncioClock()
        self.event_log = event_log or EventLog(settings.EVENT_LOG_LIMIT)
        self.registry = ConnectionRegistry()
        self.chat = ChatLog(settings.CHAT_HISTORY_LIMIT)
        self.timer = SessionTimer(
            self.clock,
            on_tick=self._timer_tick,
            on_expire=self._timer_expired,
            interval=settings.TIMER_INTERVAL,
        )
        self.engine = PollEngine(
            self.registry,
            self.clock,
            self.timer,
            default_time_limit=settings.DEFAULT_TIME_LIMIT,
            history_limit=settings.POLL_HISTORY_LIMIT,
        )

        self._lock = asyncio.Lock()
        self._outboxes: Dict[str, _Outbox] = {}
        self._timer_tasks: Set[asyncio.Task] = set()
        self._closing: Set[asyncio.Task] = set()
        self._handlers: Dict[str, Handler] = {
            "join": self._join,
            "create-poll": self._create_poll,
            "submit-answer": self._submit_answer,
            "ask-new-question": self._ask_new_question,
            "remove-student": self._remove_student,
            "send-message": self._send_message,
            "get-users": self._get_users,
            "start-session": self._start_session,
            "end-session": self._end_session,
            "reset-session": self._reset_session,
            "get-student-performance": self._get_student_performance,
        }

    # ----- connection lifecycle

    async def connect(self, connection_id: str, connection: Connection) -> None:
        async with self._lock:
            self._outboxes[connection_id] = _Outbox(connection_id, connection)
        logger.info("connection %s opened", connection_id)

    async def disconnect(self, connection_id: str) -> None:
        async with self._lock:
            outbox = self._outboxes.pop(connection_id, None)
            if outbox is not None:
                outbox.closed = True
                outbox.task.cancel()
            participant = self.registry.unregister(connection_id)
            if participant is not None:
                self._publish(
                    [
                        self.registry.presence_event(events.USER_LEFT, participant),
                        self.registry.user_list_event(),
                    ]
                )
        logger.info("connection %s closed", connection_id)

    # ----- commands

    async def handle(self, connection_id: str, command: str, payload: Any = None) -> None:
        handler = self._handlers.get(command)
        if handler is None:
            logger.warning("ignoring unknown command %r from %s", command, connection_id)
            return

        async with self._lock:
            participant = self.registry.get(connection_id)
            try:
                produced = handler(connection_id, participant, payload if isinstance(payload, dict) else {})
            except PollError as exc:
                logger.info("%s rejected for %s: %s", command, connection_id, exc.code)
                produced = [DomainEvent(events.ERROR, exc.to_payload(), target=connection_id)]
            except ValidationError as exc:
                logger.info("%s from %s had an invalid payload", command, connection_id)
                produced = [
                    DomainEvent(
                        events.ERROR,
                        {"code": "invalid_payload", "message": str(exc.errors()[0].get("msg", "Invalid payload"))},
                        target=connection_id,
                    )
                ]
            self._publish(produced)

    async def run_admin(self, command: str) -> dict[str, Any]:
        """Run a session command over HTTP as a teacher; ``PollError`` propagates to the caller."""

        handler = self._handlers[command]
        admin = Participant(connection_id=ADMIN_CONNECTION_ID, name="admin", role=Role.TEACHER)
        async with self._lock:
            self._publish(handler(ADMIN_CONNECTION_ID, admin, {}))
            logger.info("admin ran %s", command)
            return self.engine.session_state()

    def _join(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        data = JoinIn(**payload)
        participant = self.registry.register(connection_id, data.name, data.role)

        produced: List[DomainEvent] = []
        if self.engine.current_poll is not None:
            produced.append(DomainEvent(events.POLL_UPDATE, self.engine.snapshot(), target=connection_id))
        if len(self.chat):
            produced.append(
                DomainEvent(
                    events.CHAT_HISTORY,
                    [m.model_dump(mode="json") for m in self.chat.messages()],
                    target=connection_id,
                )
            )
        if participant.role == Role.TEACHER:
            produced.append(DomainEvent(events.SESSION_STATE, self.engine.session_state(), target=connection_id))

        produced.append(self.registry.user_list_event())
        produced.append(self.registry.presence_event(events.USER_JOINED, participant))
        produced.append(DomainEvent(events.JOINED, participant.public(), target=connection_id))
        return produced

    def _create_poll(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        return self.engine.create_poll(participant, CreatePollIn(**payload))

    def _submit_answer(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        return self.engine.submit_answer(participant, SubmitAnswerIn(**payload).answer)

    def _ask_new_question(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        return self.engine.reset_for_next_question(participant)

    def _remove_student(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        if participant is None or participant.role != Role.TEACHER:
            raise Forbidden("Only teachers can remove students")

        data = RemoveStudentIn(**payload)
        student = self.registry.find(data.user_id, role=Role.STUDENT)
        if student is None:
            raise NotFound("Student not found")

        self.registry.unregister(student.connection_id)
        outbox = self._outboxes.pop(student.connection_id, None)
        if outbox is not None:
            outbox.put(DomainEvent(events.KICKED_OUT, {"message": KICKED_OUT_MESSAGE}).message())
            outbox.close()
            self._closing.add(outbox.task)
            outbox.task.add_done_callback(self._closing.discard)
        logger.info("%s removed student %s", participant.name, student.name)

        return [
            self.registry.user_list_event(),
            DomainEvent(events.STUDENT_REMOVED, {"user_id": student.id, "student_name": student.name}),
        ]

    def _send_message(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        if participant is None:
            raise Unauthenticated()
        message = self.chat.append(participant, SendMessageIn(**payload).text)
        return [DomainEvent(events.NEW_MESSAGE, message.model_dump(mode="json"))]

    def _get_users(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        return [DomainEvent(events.USER_LIST, self.registry.user_list(), target=connection_id)]

    def _start_session(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        return self.engine.start_session(participant)

    def _end_session(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        return self.engine.end_session(participant)

    def _reset_session(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        produced = self.engine.reset_session(participant)
        self.event_log.reset()
        return produced

    def _get_student_performance(self, connection_id: str, participant: Optional[Participant], payload: dict) -> List[DomainEvent]:
        if participant is None or participant.role != Role.STUDENT:
            raise Forbidden("Only students can request their performance")
        data = StudentPerformanceIn(**payload)
        performance = self.engine.student_performance(data.student_name)
        return [DomainEvent(events.STUDENT_PERFORMANCE, performance.model_dump(), target=connection_id)]

    # ----- timer

    def _timer_tick(self, poll_id: str, time_left: int) -> None:
        self._spawn(self._apply_timer(lambda: self.engine.tick(poll_id, time_left)))

    def _timer_expired(self, poll_id: str) -> None:
        self._spawn(self._apply_timer(lambda: self.engine.expire(poll_id)))

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._timer_tasks.add(task)
        task.add_done_callback(self._timer_tasks.discard)

    async def _apply_timer(self, step: Callable[[], List[DomainEvent]]) -> None:
        async with self._lock:
            self._publish(step())

    # ----- fan-out

    def _publish(self, produced: List[DomainEvent]) -> None:
        for event in produced:
            message = event.message()
            if event.target is not None:
                outbox = self._outboxes.get(event.target)
                if outbox is not None:
                    outbox.put(message)
                continue

            self.event_log.append(message)
            for connection_id, outbox in self._outboxes.items():
                if connection_id != event.exclude:
                    outbox.put(message)

    async def flush(self) -> None:
        """Wait until pending timer work is applied and every queued message is written."""
        while self._timer_tasks:
            await asyncio.gather(*list(self._timer_tasks))
        for outbox in list(self._outboxes.values()):
            await outbox.queue.join()
        if self._closing:
            await asyncio.gather(*list(self._closing))

    async def close(self) -> None:
        self.timer.cancel()
        for task in list(self._timer_tasks):
            task.cancel()
        for outbox in self._outboxes.values():
            outbox.task.cancel()
        self._outboxes.clear()
