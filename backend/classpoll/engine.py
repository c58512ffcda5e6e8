from __future__ import annotations

import logging
import math
from typing import Any, Dict, List, Optional

from . import events
from .aggregator import compute_results, evaluate_answer, is_valid_answer
from .clock import Clock
from .errors import (
    AlreadyAnswered,
    Forbidden,
    InvalidAnswer,
    NoActivePoll,
    NotFound,
    PollInProgress,
    PollStillActive,
    SessionAlreadyActive,
    SessionNotActive,
)
from .events import DomainEvent
from .models import (
    YES_NO_OPTIONS,
    Answer,
    Participant,
    Poll,
    PollHistoryEntry,
    PollResult,
    PollType,
    Role,
    SessionAnalytics,
    SessionState,
    StudentPerformance,
)
from .registry import ConnectionRegistry
from .schemas import CreatePollIn
from .timer import SessionTimer
from .utils import percent

logger = logging.getLogger(__name__)

CORRECT_MESSAGE = "Correct! Well done!"
INCORRECT_MESSAGE = "Incorrect. Keep trying!"

# upper bounds in milliseconds, checked in order
RESPONSE_TIME_BUCKETS = [("0-10s", 10_000), ("10-30s", 30_000), ("30-60s", 60_000), ("60s+", None)]


def _role_of(participant: Optional[Participant]) -> Optional[Role]:
    return participant.role if participant else None


class PollEngine:
    """Owns the current poll, its answers, the poll history and the teaching session.

    Every mutating method returns the domain events it produced; nothing here
    talks to connections.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        clock: Clock,
        timer: SessionTimer,
        default_time_limit: int = 60,
        history_limit: Optional[int] = None,
    ):
        self.registry = registry
        self.clock = clock
        self.timer = timer
        self.default_time_limit = default_time_limit
        self.history_limit = history_limit

        self.current_poll: Optional[Poll] = None
        self._answers: Dict[str, Answer] = {}
        self.history: List[PollHistoryEntry] = []
        self.session = SessionState()

    # ----- reads

    @property
    def active_poll(self) -> Optional[Poll]:
        if self.current_poll is not None and self.current_poll.is_active:
            return self.current_poll
        return None

    @property
    def answers(self) -> List[Answer]:
        return list(self._answers.values())

    def results(self) -> Optional[PollResult]:
        if self.current_poll is None:
            return None
        return compute_results(self.current_poll, self._answers.values())

    def time_left(self) -> int:
        poll = self.active_poll
        if poll is None:
            return 0
        elapsed = math.floor(max(0.0, self.clock.now() - poll.created_at))
        return max(0, poll.time_limit - elapsed)

    def snapshot(self) -> dict[str, Any]:
        results = self.results()
        return {
            "poll": self.current_poll.model_dump(mode="json") if self.current_poll else None,
            "results": results.model_dump(mode="json") if results else None,
            "time_left": self.time_left(),
        }

    def individual_answers(self) -> List[dict[str, Any]]:
        return [
            {
                "participant_id": a.participant_id,
                "student_name": a.student_name,
                "answer": a.value,
                "is_correct": a.is_correct,
                "response_time_ms": a.response_time_ms,
                "timestamp": a.submitted_at,
            }
            for a in self._answers.values()
        ]

    def history_payload(self) -> List[dict[str, Any]]:
        return [entry.model_dump(mode="json") for entry in self.history]

    def session_state(self) -> dict[str, Any]:
        data = self.session.model_dump(mode="json", exclude={"analytics"})
        if self.session.active:
            data["analytics"] = self.session.analytics.model_dump(mode="json", exclude={"student_performance"})
        else:
            data["analytics"] = None
        return data

    def student_performance(self, student_name: str) -> StudentPerformance:
        performance = self.session.analytics.student_performance.get(student_name)
        if performance is None:
            raise NotFound("Performance data not found")
        return performance

    def current_analytics(self) -> dict[str, Any]:
        poll = self.current_poll
        if poll is None:
            raise NoActivePoll()

        answers = self.answers
        times = [a.response_time_ms for a in answers]
        distribution = {label: 0 for label, _ in RESPONSE_TIME_BUCKETS}
        for t in times:
            for label, bound in RESPONSE_TIME_BUCKETS:
                if bound is None or t <= bound:
                    distribution[label] += 1
                    break

        graded = [a for a in answers if a.is_correct is not None]
        correct = sum(1 for a in graded if a.is_correct)
        total_students = len(self.registry.students)
        return {
            "poll_id": poll.id,
            "question": poll.question,
            "total_students": total_students,
            "answered_students": len(answers),
            "average_response_time_ms": round(sum(times) / len(times)) if times else 0,
            "response_time_distribution": distribution,
            "participation_rate": percent(len(answers), total_students),
            "correct_answers": correct,
            "incorrect_answers": len(graded) - correct,
            "accuracy_rate": percent(correct, len(graded)),
            "poll_start_time": poll.created_at,
            "current_time": self.clock.now(),
        }

    # ----- poll lifecycle

    def create_poll(self, requester: Optional[Participant], payload: CreatePollIn) -> List[DomainEvent]:
        if _role_of(requester) != Role.TEACHER:
            raise Forbidden("Only teachers can create polls")
        if self.active_poll is not None:
            raise PollInProgress()

        options = list(payload.options)
        if payload.poll_type == PollType.YES_NO:
            options = list(YES_NO_OPTIONS)

        poll = Poll(
            question=payload.question,
            poll_type=payload.poll_type,
            options=options,
            time_limit=payload.time_limit or self.default_time_limit,
            is_anonymous=payload.is_anonymous,
            rating_scale=payload.rating_scale,
            correct_answer=payload.correct_answer,
            image_options=payload.image_options,
            created_at=self.clock.now(),
            created_by=requester.name,
        )

        self.current_poll = poll
        self._answers = {}
        self.registry.reset_answered()
        if self.session.active:
            self.session.analytics.total_polls += 1

        self.timer.start(poll.id, poll.created_at, poll.time_limit)
        logger.info("poll %s created by %s: %r (%s, %ss)", poll.id, poll.created_by, poll.question, poll.poll_type, poll.time_limit)

        return [DomainEvent(events.POLL_CREATED, poll.model_dump(mode="json"))]

    def submit_answer(self, participant: Optional[Participant], value: Any) -> List[DomainEvent]:
        if _role_of(participant) != Role.STUDENT:
            raise Forbidden("Only students can submit answers")
        poll = self.active_poll
        if poll is None:
            raise NoActivePoll()
        if participant.id in self._answers:
            raise AlreadyAnswered()
        if not is_valid_answer(poll, value):
            raise InvalidAnswer()

        now = self.clock.now()
        is_correct = evaluate_answer(poll, value)
        answer = Answer(
            participant_id=participant.id,
            student_name=participant.name,
            value=value,
            submitted_at=now,
            response_time_ms=int(round((now - poll.created_at) * 1000)),
            is_correct=is_correct,
        )
        self._answers[participant.id] = answer
        participant.has_answered = True
        logger.info("%s answered poll %s in %dms", participant.name, poll.id, answer.response_time_ms)

        if is_correct is not None and self.session.active:
            self._record_performance(participant.name, is_correct)

        produced: List[DomainEvent] = []
        if is_correct is not None:
            produced.append(
                DomainEvent(
                    events.ANSWER_FEEDBACK,
                    {
                        "is_correct": is_correct,
                        "selected_answer": value,
                        "correct_answer": poll.correct_answer,
                        "message": CORRECT_MESSAGE if is_correct else INCORRECT_MESSAGE,
                    },
                    target=participant.connection_id,
                )
            )

        produced.append(
            DomainEvent(
                events.POLL_RESULTS,
                {
                    "poll": poll.model_dump(mode="json"),
                    "results": self.results().model_dump(mode="json"),
                    "time_left": self.time_left(),
                    "individual_answers": self.individual_answers(),
                },
            )
        )

        if self.registry.all_students_answered():
            logger.info("every student answered poll %s", poll.id)
            produced.extend(self.end_poll())
        return produced

    def end_poll(self) -> List[DomainEvent]:
        poll = self.active_poll
        if poll is None:
            return []

        self.timer.cancel()
        poll.is_active = False
        results = self.results()
        self.history.append(
            PollHistoryEntry(
                poll=poll.model_copy(),
                results=results,
                total_answers=results.total_answers,
                ended_at=self.clock.now(),
            )
        )
        if self.history_limit is not None and len(self.history) > self.history_limit:
            del self.history[: len(self.history) - self.history_limit]
        logger.info("poll %s ended with %d answers", poll.id, results.total_answers)

        return [
            DomainEvent(events.POLL_ENDED, {"poll": poll.model_dump(mode="json"), "results": results.model_dump(mode="json")}),
            DomainEvent(events.POLL_HISTORY_UPDATED, self.history_payload()),
        ]

    def reset_for_next_question(self, requester: Optional[Participant]) -> List[DomainEvent]:
        if _role_of(requester) != Role.TEACHER:
            raise Forbidden("Only teachers can ask new questions")
        if self.active_poll is not None:
            raise PollStillActive()

        self.current_poll = None
        self._answers = {}
        logger.info("poll reset by %s", requester.name)
        return [DomainEvent(events.POLL_RESET)]

    # ----- timer entry points

    def tick(self, poll_id: str, time_left: int) -> List[DomainEvent]:
        poll = self.active_poll
        if poll is None or poll.id != poll_id:
            return []
        return [DomainEvent(events.TIMER_UPDATE, {"poll_id": poll_id, "time_left": time_left})]

    def expire(self, poll_id: str) -> List[DomainEvent]:
        poll = self.active_poll
        if poll is None or poll.id != poll_id:
            return []
        logger.info("poll %s timed out", poll_id)
        return self.end_poll()

    # ----- teaching session

    def start_session(self, requester: Optional[Participant]) -> List[DomainEvent]:
        if _role_of(requester) != Role.TEACHER:
            raise Forbidden("Only teachers can start sessions")
        if self.session.active:
            raise SessionAlreadyActive()

        students = self.registry.students
        self.session = SessionState(
            active=True,
            started_at=self.clock.now(),
            analytics=SessionAnalytics(
                total_students=len(students),
                student_performance={s.name: StudentPerformance() for s in students},
            ),
        )
        logger.info("session started by %s with %d students", requester.name, len(students))
        return [
            DomainEvent(
                events.SESSION_STARTED,
                {"session_start_time": self.session.started_at, "total_students": len(students)},
            )
        ]

    def end_session(self, requester: Optional[Participant]) -> List[DomainEvent]:
        if _role_of(requester) != Role.TEACHER:
            raise Forbidden("Only teachers can end sessions")
        if not self.session.active:
            raise SessionNotActive()

        session = self.session
        analytics = session.analytics
        session.active = False
        session.ended_at = self.clock.now()
        graded = analytics.total_correct_answers + analytics.total_incorrect_answers
        analytics.average_accuracy = percent(analytics.total_correct_answers, graded)

        summary = analytics.model_dump(mode="json", exclude={"student_performance"})
        summary["student_performance"] = [
            {"student_name": name, **perf.model_dump()} for name, perf in analytics.student_performance.items()
        ]
        logger.info("session ended: %d polls, %d%% accuracy", analytics.total_polls, analytics.average_accuracy)
        return [
            DomainEvent(
                events.SESSION_ENDED,
                {
                    "session_end_time": session.ended_at,
                    "session_duration": session.ended_at - session.started_at,
                    "session_analytics": summary,
                },
            )
        ]

    def reset_session(self, requester: Optional[Participant]) -> List[DomainEvent]:
        """Forget the teaching session, active or not; polls and history are untouched."""

        if _role_of(requester) != Role.TEACHER:
            raise Forbidden("Only teachers can reset sessions")

        self.session = SessionState()
        logger.info("session reset by %s", requester.name)
        return [DomainEvent(events.SESSION_RESET, self.session_state())]

    def _record_performance(self, student_name: str, is_correct: bool) -> None:
        analytics = self.session.analytics
        # students who joined after the session started are tracked from their first answer
        perf = analytics.student_performance.setdefault(student_name, StudentPerformance())
        perf.total_answers += 1
        if is_correct:
            perf.correct_answers += 1
            analytics.total_correct_answers += 1
        else:
            perf.incorrect_answers += 1
            analytics.total_incorrect_answers += 1
        perf.accuracy = percent(perf.correct_answers, perf.total_answers)
