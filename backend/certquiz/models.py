"""SQLModel data models.

This module defines the application's database tables using SQLModel.
Certifications and topics are keyed by short slugs; users, questions,
sessions, answers and progress rows use UUID strings.
"""

import uuid
from typing import Dict, List, Optional
from sqlmodel import SQLModel, Field
from sqlalchemy import Column, JSON, UniqueConstraint
from datetime import datetime, timezone


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(SQLModel, table=True):
    """A registered user.

    Fields:
    - `email`: unique login name, stored lower-cased
    - `password_hash`: hashed password string (never store plaintext);
      `None` for accounts created through an external provider
    """
    id: str = Field(default_factory=_uuid, primary_key=True)
    email: str = Field(index=True, nullable=False, unique=True)
    password_hash: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    is_email_verified: bool = False
    provider: str = "email"
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Certification(SQLModel, table=True):
    """A certification in the catalog (e.g. `aws-cloud-practitioner`)."""
    id: str = Field(primary_key=True, max_length=50)
    name: str
    description: Optional[str] = None
    level: Optional[str] = None
    provider: str = "aws"
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class Topic(SQLModel, table=True):
    """A scoped unit of quiz content belonging to one certification."""
    id: str = Field(primary_key=True, max_length=100)
    certification_id: str = Field(foreign_key='certification.id', index=True)
    name: str
    description: Optional[str] = None
    order_index: int = 0
    is_active: bool = True


class Question(SQLModel, table=True):
    """A multiple-choice question belonging to a topic.

    `correct_answer` is the zero-based index into `options`.
    """
    id: str = Field(default_factory=_uuid, primary_key=True)
    topic_id: str = Field(foreign_key='topic.id', index=True)
    question: str
    options: List[str] = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    correct_answer: int
    explanation: str
    difficulty: str = "medium"
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)


class QuizSession(SQLModel, table=True):
    """One user's attempt at a topic's question set.

    `answers` maps question id to the most recent selected index. The
    cursor (`current_question_index`) always equals the number of
    `UserAnswer` rows recorded for the session.
    """
    id: str = Field(default_factory=_uuid, primary_key=True)
    user_id: str = Field(foreign_key='user.id', index=True)
    topic_id: str = Field(foreign_key='topic.id', index=True)
    current_question_index: int = 0
    answers: Dict[str, int] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    score: Optional[int] = None
    is_active: bool = True


class UserAnswer(SQLModel, table=True):
    """A single submitted answer. Rows are append-only."""
    id: str = Field(default_factory=_uuid, primary_key=True)
    user_id: str = Field(foreign_key='user.id', index=True)
    question_id: str = Field(foreign_key='question.id')
    session_id: str = Field(foreign_key='quizsession.id', index=True)
    selected_answer: int
    is_correct: bool
    time_spent: int = 0
    answered_at: datetime = Field(default_factory=utcnow)


class UserProgress(SQLModel, table=True):
    """Cumulative per-(user, topic) summary of completed attempts."""
    __table_args__ = (UniqueConstraint('user_id', 'topic_id'),)

    id: str = Field(default_factory=_uuid, primary_key=True)
    user_id: str = Field(foreign_key='user.id', index=True)
    certification_id: str = Field(foreign_key='certification.id', index=True)
    topic_id: str = Field(foreign_key='topic.id')
    total_questions: int = 0
    completed_questions: int = 0
    correct_answers: int = 0
    best_score: int = 0
    last_question_index: int = 0
    is_completed: bool = False
    time_spent: int = 0
    updated_at: datetime = Field(default_factory=utcnow)
