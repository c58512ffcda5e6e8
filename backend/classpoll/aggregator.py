"""Turn the raw answers of a poll into displayable results.

Everything here is a pure function of ``(poll, answers)``; results are never
patched incrementally.
"""

from __future__ import annotations

import math
from typing import Any, Dict, Iterable, List, Optional

from .models import DEFAULT_RATING_SCALE, YES_NO_OPTIONS, Answer, Poll, PollResult, PollType, TextResponse
from .utils import percent, round_half_up

ANONYMOUS = "Anonymous"


def as_selection(value: Any) -> List[Any]:
    """Multiple-choice answers are sets of options; a scalar is a one-item set."""
    items = value if isinstance(value, (list, tuple, set)) else [value]
    selection: List[Any] = []
    for item in items:
        if item not in selection:
            selection.append(item)
    return selection


def as_rating(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if isinstance(value, float):
        # inf and nan have no integer part
        return int(value) if math.isfinite(value) else None
    return None


def _tally(keys: Iterable[str], picks: Iterable[Any]) -> Dict[str, int]:
    counts = {key: 0 for key in keys}
    for pick in picks:
        if isinstance(pick, str) and pick in counts:
            counts[pick] += 1
    return counts


def _percentages(counts: Dict[str, int], denominator: int) -> Dict[str, int]:
    return {key: percent(count, denominator) for key, count in counts.items()}


def _multiple_choice(poll: Poll, answers: List[Answer]) -> PollResult:
    picks = [option for a in answers for option in as_selection(a.value)]
    counts = _tally(poll.options, picks)
    # denominator is every selection made, not the number of students
    total_votes = sum(counts.values())
    return PollResult(counts=counts, percentages=_percentages(counts, total_votes), total_answers=len(answers))


def _single_choice(options: List[str], answers: List[Answer]) -> PollResult:
    counts = _tally(options, (a.value for a in answers))
    return PollResult(counts=counts, percentages=_percentages(counts, len(answers)), total_answers=len(answers))


def _rating(poll: Poll, answers: List[Answer]) -> PollResult:
    scale = poll.rating_scale or DEFAULT_RATING_SCALE
    counts = {str(i): 0 for i in range(1, scale + 1)}
    ratings = [r for r in (as_rating(a.value) for a in answers) if r is not None]
    for rating in ratings:
        if 1 <= rating <= scale:
            counts[str(rating)] += 1

    average = round_half_up(sum(ratings) / len(ratings), 1) if ratings else 0.0
    return PollResult(
        counts=counts,
        percentages=_percentages(counts, len(answers)),
        total_answers=len(answers),
        average_rating=average,
    )


def _text(poll: Poll, answers: List[Answer]) -> PollResult:
    responses = [
        TextResponse(
            text=a.value,
            student_name=ANONYMOUS if poll.is_anonymous else a.student_name,
            timestamp=a.submitted_at,
        )
        for a in answers
    ]
    return PollResult(responses=responses, total_answers=len(answers))


def compute_results(poll: Poll, answers: Iterable[Answer]) -> PollResult:
    answers = list(answers)
    poll_type = poll.poll_type

    if poll_type == PollType.MULTIPLE_CHOICE:
        return _multiple_choice(poll, answers)
    if poll_type == PollType.SINGLE_CHOICE:
        return _single_choice(poll.options, answers)
    if poll_type == PollType.YES_NO:
        return _single_choice(YES_NO_OPTIONS, answers)
    if poll_type == PollType.RATING:
        return _rating(poll, answers)
    if poll_type == PollType.TEXT:
        return _text(poll, answers)
    if poll_type == PollType.IMAGE:
        return _single_choice([o.id for o in poll.image_options], answers)

    return PollResult()


def is_graded(poll: Poll) -> bool:
    if poll.poll_type == PollType.TEXT:
        return False
    return poll.correct_answer not in (None, "", [])


def evaluate_answer(poll: Poll, value: Any) -> Optional[bool]:
    """Return whether ``value`` is correct, or None when the poll is not graded."""

    if not is_graded(poll):
        return None

    correct = poll.correct_answer
    poll_type = poll.poll_type

    if poll_type == PollType.MULTIPLE_CHOICE:
        expected = as_selection(correct)
        selected = as_selection(value)
        return len(expected) == len(selected) and all(option in selected for option in expected)
    if poll_type == PollType.RATING:
        student, target = as_rating(value), as_rating(correct)
        if student is None or target is None:
            return False
        return abs(student - target) <= 1
    if poll_type in (PollType.SINGLE_CHOICE, PollType.YES_NO, PollType.IMAGE):
        return value == correct

    return None


def is_valid_answer(poll: Poll, value: Any) -> bool:
    """Whether ``value`` can be counted for ``poll``; free text and unknown types take anything."""

    poll_type = poll.poll_type

    if poll_type == PollType.MULTIPLE_CHOICE:
        selection = as_selection(value)
        return bool(selection) and all(isinstance(o, str) and o in poll.options for o in selection)
    if poll_type == PollType.SINGLE_CHOICE:
        return isinstance(value, str) and value in poll.options
    if poll_type == PollType.YES_NO:
        return isinstance(value, str) and value in YES_NO_OPTIONS
    if poll_type == PollType.IMAGE:
        return isinstance(value, str) and value in {o.id for o in poll.image_options}
    if poll_type == PollType.RATING:
        rating = as_rating(value)
        return rating is not None and 1 <= rating <= (poll.rating_scale or DEFAULT_RATING_SCALE)

    return True
