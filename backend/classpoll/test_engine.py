from __future__ import annotations

from unittest import TestCase

from pydantic import ValidationError

from . import events
from .clock import ManualClock
from .engine import PollEngine
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
from .models import Role
from .registry import ConnectionRegistry
from .schemas import CreatePollIn
from .timer import SessionTimer


def _types(produced) -> list[str]:
    return [e.type for e in produced]


class EngineTestCase(TestCase):
    def setUp(self) -> None:
        self.clock = ManualClock()
        self.registry = ConnectionRegistry()
        self.timer_events = []
        self.timer = SessionTimer(
            self.clock,
            on_tick=lambda poll_id, left: self.timer_events.extend(self.engine.tick(poll_id, left)),
            on_expire=lambda poll_id: self.timer_events.extend(self.engine.expire(poll_id)),
        )
        self.engine = PollEngine(self.registry, self.clock, self.timer)
        self.teacher = self.registry.register("t", "Ms. T", Role.TEACHER)
        self.alice = self.registry.register("a", "Alice", Role.STUDENT)
        self.bob = self.registry.register("b", "Bob", Role.STUDENT)

    def create(self, **kwargs):
        kwargs.setdefault("question", "2+2?")
        kwargs.setdefault("poll_type", "single-choice")
        kwargs.setdefault("options", ["3", "4", "5"])
        kwargs.setdefault("time_limit", 30)
        return self.engine.create_poll(self.teacher, CreatePollIn(**kwargs))


class CreatePollTests(EngineTestCase):
    def test_only_teachers_create_polls(self):
        with self.assertRaises(Forbidden):
            self.engine.create_poll(self.alice, CreatePollIn(question="q"))
        with self.assertRaises(Forbidden):
            self.engine.create_poll(None, CreatePollIn(question="q"))
        self.assertIsNone(self.engine.current_poll)

    def test_emits_poll_created_and_starts_timer(self):
        produced = self.create()

        self.assertEqual(_types(produced), [events.POLL_CREATED])
        poll = self.engine.active_poll
        self.assertEqual(produced[0].payload["id"], poll.id)
        self.assertEqual(poll.created_by, "Ms. T")
        self.assertEqual(poll.created_at, self.clock.now())
        self.assertEqual(self.timer.poll_id, poll.id)
        self.assertEqual(self.engine.time_left(), 30)

    def test_second_poll_while_active_is_rejected(self):
        self.create()
        first = self.engine.active_poll
        with self.assertRaises(PollInProgress):
            self.create(question="another")
        self.assertIs(self.engine.active_poll, first)

    def test_yes_no_forces_options(self):
        self.create(poll_type="yes-no", options=["Sure", "Nope", "Maybe"])
        self.assertEqual(self.engine.active_poll.options, ["Yes", "No"])

    def test_rating_scale_is_capped(self):
        with self.assertRaises(ValidationError):
            CreatePollIn(question="q", poll_type="rating", rating_scale=10**8)
        self.create(poll_type="rating", options=[], rating_scale=10)
        self.assertEqual(len(self.engine.results().counts), 10)

    def test_default_time_limit(self):
        self.create(time_limit=None)
        self.assertEqual(self.engine.active_poll.time_limit, 60)

    def test_new_poll_resets_answered_flags_and_answers(self):
        self.create()
        self.engine.submit_answer(self.alice, "4")
        self.engine.end_poll()
        self.engine.reset_for_next_question(self.teacher)

        self.create(question="3+3?", options=["6", "7"])
        self.assertFalse(self.alice.has_answered)
        self.assertEqual(self.engine.answers, [])


class SubmitAnswerTests(EngineTestCase):
    def test_scenario_two_plus_two(self):
        self.create(correct_answer="4")

        produced = self.engine.submit_answer(self.alice, "4")
        feedback = produced[0]
        self.assertEqual(feedback.type, events.ANSWER_FEEDBACK)
        self.assertEqual(feedback.target, "a")
        self.assertTrue(feedback.payload["is_correct"])

        produced = self.engine.submit_answer(self.bob, "3")
        self.assertFalse(produced[0].payload["is_correct"])
        self.assertEqual(produced[0].payload["message"], "Incorrect. Keep trying!")

        results = self.engine.results()
        self.assertEqual(results.counts, {"3": 1, "4": 1, "5": 0})
        self.assertEqual(results.percentages, {"3": 50, "4": 50, "5": 0})
        self.assertEqual(results.total_answers, 2)

    def test_scenario_rating_tolerance(self):
        self.create(poll_type="rating", options=[], rating_scale=5, correct_answer=4)

        produced = self.engine.submit_answer(self.alice, 3)
        self.assertTrue(produced[0].payload["is_correct"])
        produced = self.engine.submit_answer(self.bob, 2)
        self.assertFalse(produced[0].payload["is_correct"])

    def test_duplicate_submission_is_rejected_and_first_answer_kept(self):
        self.create()
        self.engine.submit_answer(self.alice, "4")

        with self.assertRaises(AlreadyAnswered):
            self.engine.submit_answer(self.alice, "5")

        self.assertEqual([a.value for a in self.engine.answers], ["4"])
        self.assertEqual(self.engine.results().counts["5"], 0)

    def test_teachers_cannot_answer(self):
        self.create()
        with self.assertRaises(Forbidden):
            self.engine.submit_answer(self.teacher, "4")

    def test_answer_without_poll(self):
        with self.assertRaises(NoActivePoll):
            self.engine.submit_answer(self.alice, "4")

    def test_answer_after_poll_ended(self):
        self.create()
        self.engine.end_poll()
        with self.assertRaises(NoActivePoll):
            self.engine.submit_answer(self.alice, "4")

    def test_records_response_time(self):
        self.create()
        self.clock.advance(2.5)
        self.engine.submit_answer(self.alice, "4")
        answer = self.engine.answers[0]
        self.assertEqual(answer.response_time_ms, 2500)
        self.assertEqual(answer.student_name, "Alice")
        self.assertTrue(self.alice.has_answered)

    def test_ungraded_poll_sends_no_feedback(self):
        self.create()
        produced = self.engine.submit_answer(self.alice, "4")
        self.assertEqual(_types(produced), [events.POLL_RESULTS])
        self.assertTrue(produced[0].is_broadcast)
        self.assertEqual(produced[0].payload["results"]["total_answers"], 1)
        self.assertEqual(produced[0].payload["individual_answers"][0]["student_name"], "Alice")

    def test_last_student_ends_poll_immediately(self):
        self.create()
        self.engine.submit_answer(self.alice, "4")
        produced = self.engine.submit_answer(self.bob, "5")

        self.assertEqual(_types(produced), [events.POLL_RESULTS, events.POLL_ENDED, events.POLL_HISTORY_UPDATED])
        self.assertIsNone(self.engine.active_poll)
        self.assertFalse(self.timer.running)
        self.assertEqual(len(self.engine.history), 1)

    def test_departed_students_do_not_hold_the_poll_open(self):
        self.create()
        self.registry.unregister("b")
        produced = self.engine.submit_answer(self.alice, "4")
        self.assertIn(events.POLL_ENDED, _types(produced))

    def assert_rejected(self, value) -> None:
        with self.assertRaises(InvalidAnswer):
            self.engine.submit_answer(self.alice, value)
        self.assertEqual(self.engine.answers, [])
        self.assertFalse(self.alice.has_answered)

    def test_single_choice_answer_outside_options_is_rejected(self):
        self.create()
        self.assert_rejected("7")

        self.engine.submit_answer(self.alice, "4")
        results = self.engine.results()
        self.assertEqual(sum(results.counts.values()), results.total_answers)

    def test_yes_no_answer_must_be_yes_or_no(self):
        self.create(poll_type="yes-no")
        self.assert_rejected("yes")

    def test_multiple_choice_selection_is_checked(self):
        self.create(poll_type="multiple-choice", options=["a", "b", "c"])
        self.assert_rejected([])
        self.assert_rejected(["a", "d"])
        self.engine.submit_answer(self.alice, ["a", "b"])
        self.assertEqual(self.engine.results().counts, {"a": 1, "b": 1, "c": 0})

    def test_image_answer_must_be_an_option_id(self):
        self.create(poll_type="image", options=[], image_options=[{"id": "cat", "url": "https://x/cat.png"}])
        self.assert_rejected("dog")

    def test_rating_must_be_a_number_on_the_scale(self):
        self.create(poll_type="rating", options=[], rating_scale=5)
        for value in ("inf", "abc", 0, 6):
            self.assert_rejected(value)

        self.engine.submit_answer(self.alice, "5")
        self.assertEqual(self.engine.results().average_rating, 5.0)
        self.engine.end_poll()
        self.assertEqual(len(self.engine.history), 1)

    def test_text_answers_are_free_form(self):
        self.create(poll_type="text", options=[])
        self.engine.submit_answer(self.alice, "anything at all")
        self.assertEqual(self.engine.results().total_answers, 1)


class EndPollTests(EngineTestCase):
    def test_end_poll_is_idempotent(self):
        self.create()
        first = self.engine.end_poll()
        second = self.engine.end_poll()

        self.assertEqual(_types(first), [events.POLL_ENDED, events.POLL_HISTORY_UPDATED])
        self.assertEqual(second, [])
        self.assertEqual(len(self.engine.history), 1)

    def test_end_poll_when_idle(self):
        self.assertEqual(self.engine.end_poll(), [])
        self.assertEqual(self.engine.history, [])

    def test_history_entry_holds_final_results(self):
        self.create()
        self.engine.submit_answer(self.alice, "4")
        self.engine.end_poll()

        entry = self.engine.history[0]
        self.assertFalse(entry.poll.is_active)
        self.assertEqual(entry.total_answers, 1)
        self.assertEqual(entry.results.counts["4"], 1)
        # the current poll is kept for display until the teacher moves on
        self.assertIsNotNone(self.engine.current_poll)
        self.assertEqual(self.engine.snapshot()["results"]["total_answers"], 1)
        self.assertEqual(self.engine.snapshot()["time_left"], 0)

    def test_history_cap(self):
        self.engine.history_limit = 2
        for question in ("one", "two", "three"):
            self.create(question=question)
            self.engine.end_poll()
            self.engine.reset_for_next_question(self.teacher)

        self.assertEqual([e.poll.question for e in self.engine.history], ["two", "three"])


class TimerIntegrationTests(EngineTestCase):
    def test_scenario_timeout_ends_poll_once(self):
        self.create(time_limit=15)
        self.engine.submit_answer(self.alice, "4")

        self.clock.advance(15)

        ended = [e for e in self.timer_events if e.type == events.POLL_ENDED]
        self.assertEqual(len(ended), 1)
        self.assertEqual(ended[0].payload["results"]["total_answers"], 1)
        self.assertEqual(len(self.engine.history), 1)

        self.clock.advance(30)
        self.assertEqual(len([e for e in self.timer_events if e.type == events.POLL_ENDED]), 1)

    def test_ticks_report_time_left(self):
        self.create(time_limit=3)
        self.clock.advance(2)
        updates = [e.payload["time_left"] for e in self.timer_events if e.type == events.TIMER_UPDATE]
        self.assertEqual(updates, [2, 1])

    def test_scenario_stale_tick_after_everyone_answered(self):
        self.create(time_limit=15)
        poll_id = self.engine.active_poll.id
        self.engine.submit_answer(self.alice, "4")
        self.engine.submit_answer(self.bob, "4")
        self.assertEqual(len(self.engine.history), 1)

        self.assertEqual(self.engine.tick(poll_id, 3), [])
        self.assertEqual(self.engine.expire(poll_id), [])
        self.clock.advance(20)
        self.assertEqual(self.timer_events, [])
        self.assertEqual(len(self.engine.history), 1)

    def test_expiry_for_superseded_poll_is_discarded(self):
        self.create(time_limit=5)
        old_id = self.engine.active_poll.id
        self.engine.end_poll()
        self.engine.reset_for_next_question(self.teacher)
        self.create(question="next", time_limit=5)

        self.assertEqual(self.engine.expire(old_id), [])
        self.assertIsNotNone(self.engine.active_poll)


class ResetTests(EngineTestCase):
    def test_reset_requires_teacher(self):
        with self.assertRaises(Forbidden):
            self.engine.reset_for_next_question(self.alice)

    def test_reset_while_active_is_rejected(self):
        self.create()
        with self.assertRaises(PollStillActive):
            self.engine.reset_for_next_question(self.teacher)

    def test_reset_clears_current_poll(self):
        self.create()
        self.engine.end_poll()
        produced = self.engine.reset_for_next_question(self.teacher)

        self.assertEqual(_types(produced), [events.POLL_RESET])
        self.assertIsNone(self.engine.current_poll)
        self.assertEqual(self.engine.snapshot(), {"poll": None, "results": None, "time_left": 0})


class SessionTests(EngineTestCase):
    def test_session_lifecycle_and_analytics(self):
        produced = self.engine.start_session(self.teacher)
        self.assertEqual(produced[0].type, events.SESSION_STARTED)
        self.assertEqual(produced[0].payload["total_students"], 2)

        self.create(correct_answer="4")
        self.engine.submit_answer(self.alice, "4")
        self.engine.submit_answer(self.bob, "3")
        self.engine.reset_for_next_question(self.teacher)
        self.create(question="yes?", poll_type="yes-no", correct_answer="Yes")
        self.engine.submit_answer(self.alice, "No")
        self.engine.submit_answer(self.bob, "Yes")

        self.clock.advance(120)
        produced = self.engine.end_session(self.teacher)
        data = produced[0].payload
        analytics = data["session_analytics"]

        self.assertEqual(produced[0].type, events.SESSION_ENDED)
        self.assertEqual(data["session_duration"], 120)
        self.assertEqual(analytics["total_polls"], 2)
        self.assertEqual(analytics["total_correct_answers"], 2)
        self.assertEqual(analytics["total_incorrect_answers"], 2)
        self.assertEqual(analytics["average_accuracy"], 50)
        by_name = {p["student_name"]: p for p in analytics["student_performance"]}
        self.assertEqual(by_name["Alice"]["accuracy"], 50)
        self.assertEqual(by_name["Bob"]["total_answers"], 2)
        self.assertFalse(self.engine.session.active)

    def test_ungraded_answers_do_not_touch_analytics(self):
        self.engine.start_session(self.teacher)
        self.create()
        self.engine.submit_answer(self.alice, "4")
        self.assertEqual(self.engine.student_performance("Alice").total_answers, 0)

    def test_late_joiner_is_tracked(self):
        self.engine.start_session(self.teacher)
        carol = self.registry.register("c", "Carol", Role.STUDENT)
        self.create(correct_answer="4")
        self.engine.submit_answer(carol, "4")
        self.assertEqual(self.engine.student_performance("Carol").correct_answers, 1)

    def test_session_preconditions(self):
        with self.assertRaises(Forbidden):
            self.engine.start_session(self.alice)
        with self.assertRaises(SessionNotActive):
            self.engine.end_session(self.teacher)
        self.engine.start_session(self.teacher)
        with self.assertRaises(SessionAlreadyActive):
            self.engine.start_session(self.teacher)
        with self.assertRaises(Forbidden):
            self.engine.end_session(self.bob)

    def test_session_state_hides_analytics_when_inactive(self):
        self.assertIsNone(self.engine.session_state()["analytics"])
        self.engine.start_session(self.teacher)
        state = self.engine.session_state()
        self.assertTrue(state["active"])
        self.assertEqual(state["analytics"]["total_students"], 2)

    def test_unknown_student_performance(self):
        with self.assertRaises(NotFound):
            self.engine.student_performance("Nobody")

    def test_reset_session_forgets_analytics(self):
        self.engine.start_session(self.teacher)
        self.create(correct_answer="4")
        self.engine.submit_answer(self.alice, "4")

        with self.assertRaises(Forbidden):
            self.engine.reset_session(self.alice)
        produced = self.engine.reset_session(self.teacher)

        self.assertEqual(_types(produced), [events.SESSION_RESET])
        self.assertFalse(produced[0].payload["active"])
        self.assertIsNone(self.engine.session.started_at)
        with self.assertRaises(NotFound):
            self.engine.student_performance("Alice")
        # the poll itself is untouched
        self.assertEqual(self.engine.results().total_answers, 1)
        self.engine.start_session(self.teacher)
        self.assertTrue(self.engine.session.active)


class CurrentAnalyticsTests(EngineTestCase):
    def test_requires_a_poll(self):
        with self.assertRaises(NoActivePoll):
            self.engine.current_analytics()

    def test_participation_and_response_times(self):
        self.registry.register("c", "Carol", Role.STUDENT)
        self.create(correct_answer="4")
        self.clock.advance(5)
        self.engine.submit_answer(self.alice, "4")
        self.clock.advance(20)
        self.engine.submit_answer(self.bob, "3")

        analytics = self.engine.current_analytics()
        self.assertEqual(analytics["total_students"], 3)
        self.assertEqual(analytics["answered_students"], 2)
        self.assertEqual(analytics["participation_rate"], 67)
        self.assertEqual(analytics["average_response_time_ms"], 15000)
        self.assertEqual(analytics["response_time_distribution"], {"0-10s": 1, "10-30s": 1, "30-60s": 0, "60s+": 0})
        self.assertEqual(analytics["correct_answers"], 1)
        self.assertEqual(analytics["incorrect_answers"], 1)
        self.assertEqual(analytics["accuracy_rate"], 50)
