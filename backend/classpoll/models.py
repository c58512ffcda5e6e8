from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .utils import new_id, now_ts


class Role(str, Enum):
    TEACHER = "teacher"
    STUDENT = "student"


class PollType(str, Enum):
    MULTIPLE_CHOICE = "multiple-choice"
    SINGLE_CHOICE = "single-choice"
    YES_NO = "yes-no"
    RATING = "rating"
    TEXT = "text"
    IMAGE = "image"


YES_NO_OPTIONS = ["Yes", "No"]
DEFAULT_RATING_SCALE = 5


class Participant(BaseModel):
    id: str = Field(default_factory=new_id)
    connection_id: str
    name: str
    role: Role
    connected_at: float = Field(default_factory=now_ts)
    has_answered: bool = False

    def public(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude={"connection_id", "has_answered"})


class ImageOption(BaseModel):
    id: str
    url: str
    label: Optional[str] = None


# Lifecycle: created active -> is_active flips to False once, nothing else changes
class Poll(BaseModel):
    id: str = Field(default_factory=new_id)
    question: str
    # unknown strings are kept as given; the aggregator reports them as empty
    poll_type: str = PollType.MULTIPLE_CHOICE.value
    options: List[str] = Field(default_factory=list)
    time_limit: int
    is_anonymous: bool = False
    rating_scale: Optional[int] = None
    correct_answer: Any = None
    image_options: List[ImageOption] = Field(default_factory=list)
    created_at: float = Field(default_factory=now_ts)
    created_by: str
    is_active: bool = True


class Answer(BaseModel):
    participant_id: str
    student_name: str
    value: Any
    submitted_at: float  # epoch seconds
    response_time_ms: int
    is_correct: Optional[bool] = None


class TextResponse(BaseModel):
    text: Any
    student_name: str
    timestamp: float


class PollResult(BaseModel):
    counts: Dict[str, int] = Field(default_factory=dict)
    percentages: Dict[str, int] = Field(default_factory=dict)
    total_answers: int = 0
    average_rating: Optional[float] = None
    responses: Optional[List[TextResponse]] = None


class PollHistoryEntry(BaseModel):
    poll: Poll
    results: PollResult
    total_answers: int
    ended_at: float


class StudentPerformance(BaseModel):
    total_answers: int = 0
    correct_answers: int = 0
    incorrect_answers: int = 0
    accuracy: int = 0


class SessionAnalytics(BaseModel):
    total_polls: int = 0
    total_students: int = 0
    total_correct_answers: int = 0
    total_incorrect_answers: int = 0
    average_accuracy: int = 0
    student_performance: Dict[str, StudentPerformance] = Field(default_factory=dict)


class SessionState(BaseModel):
    active: bool = False
    started_at: Optional[float] = None
    ended_at: Optional[float] = None
    analytics: SessionAnalytics = Field(default_factory=SessionAnalytics)


class ChatMessage(BaseModel):
    id: str = Field(default_factory=new_id)
    sender_id: str
    sender_name: str
    sender_role: Role
    text: str
    timestamp: float = Field(default_factory=now_ts)
