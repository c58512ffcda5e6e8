from pydantic import BaseModel, Field
from typing import Any, List, Optional

from .models import ImageOption, Poll, PollResult, Role


class JoinIn(BaseModel):
    name: str = Field(min_length=1)
    role: Role


class CreatePollIn(BaseModel):
    question: str = Field(min_length=1)
    poll_type: str = "multiple-choice"
    options: List[str] = Field(default_factory=list)
    time_limit: Optional[int] = Field(default=None, gt=0)
    is_anonymous: bool = False
    rating_scale: Optional[int] = Field(default=None, ge=1, le=10)
    correct_answer: Any = None
    image_options: List[ImageOption] = Field(default_factory=list)


class SubmitAnswerIn(BaseModel):
    answer: Any


class RemoveStudentIn(BaseModel):
    user_id: str


class SendMessageIn(BaseModel):
    text: str = Field(min_length=1)


class StudentPerformanceIn(BaseModel):
    student_name: str


class PollSnapshotOut(BaseModel):
    poll: Optional[Poll]
    results: Optional[PollResult]
    time_left: int


