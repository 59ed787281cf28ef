"""Pydantic request/response schemas used by the API.

Schemas keep API input/output shapes stable and provide validation for
controller handlers and tests. JSON keys are camelCase on the wire;
request bodies also accept the snake_case field names.
"""

import re
from datetime import datetime, timezone
from typing import Annotated, Dict, List, Optional
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


def _check_email(value: str) -> str:
    value = value.strip().lower()
    if not EMAIL_RE.match(value):
        raise ValueError('Invalid email address')
    return value


def _check_password_strength(value: str) -> str:
    if not re.search(r'[A-Z]', value):
        raise ValueError('Password must contain at least one uppercase letter')
    if not re.search(r'[a-z]', value):
        raise ValueError('Password must contain at least one lowercase letter')
    if not re.search(r'[0-9]', value):
        raise ValueError('Password must contain at least one number')
    return value


def _as_utc(value: datetime) -> datetime:
    # SQLite hands stored timestamps back without tzinfo; they are written in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


Email = Annotated[str, AfterValidator(_check_email)]
UtcDatetime = Annotated[datetime, AfterValidator(_as_utc)]
StrongPassword = Annotated[str, Field(min_length=8), AfterValidator(_check_password_strength)]


class RegisterIn(CamelModel):
    """Payload for user registration."""
    email: Email
    password: StrongPassword
    first_name: str = Field(min_length=1, max_length=50)
    last_name: str = Field(min_length=1, max_length=50)


class LoginIn(CamelModel):
    """Payload for the login endpoint."""
    email: Email
    password: str = Field(min_length=1)


class EmailIn(CamelModel):
    email: Email


class VerifyEmailIn(CamelModel):
    token: str = Field(min_length=1)


class PasswordUpdateIn(CamelModel):
    current_password: str = Field(min_length=1)
    new_password: StrongPassword


class StartQuizIn(CamelModel):
    """Request body for starting (or resuming) a quiz on a topic."""
    topic_id: str = Field(min_length=1)


class SubmitAnswerIn(CamelModel):
    """Single submitted answer for an active session."""
    question_id: UUID
    session_id: UUID
    selected_answer: int = Field(ge=0)
    time_spent: int = Field(default=0, ge=0)


class UserOut(CamelModel):
    id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_email_verified: bool = False


class AuthOut(CamelModel):
    """Authentication response containing the user and an access token."""
    user: UserOut
    token: str


class MessageOut(CamelModel):
    message: str


class CertificationOut(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    level: Optional[str] = None
    provider: Optional[str] = None
    is_active: bool = True
    created_at: Optional[UtcDatetime] = None


class TopicOut(CamelModel):
    id: str
    certification_id: str
    name: str
    description: Optional[str] = None
    order_index: int = 0
    is_active: bool = True


class QuestionPublicOut(CamelModel):
    """A question as shown before it is answered.

    `correct_answer` and `explanation` are deliberately absent.
    """
    id: str
    topic_id: str
    question: str
    options: List[str]
    difficulty: Optional[str] = None
    is_active: bool = True
    created_at: Optional[UtcDatetime] = None


class QuizSessionOut(CamelModel):
    id: str
    user_id: str
    topic_id: str
    current_question_index: int
    answers: Dict[str, int]
    started_at: UtcDatetime
    completed_at: Optional[UtcDatetime] = None
    score: Optional[int] = None
    is_active: bool


class SessionEnvelopeOut(CamelModel):
    session: QuizSessionOut


class UserAnswerOut(CamelModel):
    id: str
    user_id: str
    question_id: str
    session_id: str
    selected_answer: int
    is_correct: bool
    time_spent: int
    answered_at: UtcDatetime


class AnswerResultOut(CamelModel):
    is_correct: bool
    correct_answer: int
    explanation: str
    session: QuizSessionOut


class CompletionOut(CamelModel):
    session: QuizSessionOut
    score: int
    correct_count: int
    total_questions: int
    answers: List[UserAnswerOut]


class UserProgressOut(CamelModel):
    id: str
    user_id: str
    certification_id: str
    topic_id: str
    total_questions: int
    completed_questions: int
    correct_answers: int
    best_score: int
    last_question_index: int
    is_completed: bool
    time_spent: int
    updated_at: UtcDatetime
