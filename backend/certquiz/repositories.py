"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
catalog content, quiz sessions, answers, progress). Repositories return
SQLModel objects and perform commits/refreshes where appropriate.
"""

from typing import List, Optional, Tuple
from sqlmodel import Session, select
from sqlalchemy import func, update
from . import models


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_email(self, email: str) -> Optional[models.User]:
        """Return a `User` by email or `None` if not found."""
        stmt = select(models.User).where(models.User.email == email.strip().lower())
        return self.session.exec(stmt).first()

    def get(self, user_id: str) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def update(self, user: models.User, **changes) -> models.User:
        """Apply `changes` to `user`, bump `updated_at` and commit."""
        for key, value in changes.items():
            setattr(user, key, value)
        user.updated_at = models.utcnow()
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user


class CertificationRepository:
    """Read and upsert operations for `Certification` rows."""
    def __init__(self, session: Session):
        self.session = session

    def list_active(self) -> List[models.Certification]:
        stmt = select(models.Certification).where(models.Certification.is_active == True)  # noqa: E712
        return self.session.exec(stmt).all()

    def get(self, certification_id: str) -> Optional[models.Certification]:
        return self.session.get(models.Certification, certification_id)

    def upsert(self, certification: models.Certification) -> models.Certification:
        """Insert `certification` or overwrite the fields of the stored row."""
        existing = self.get(certification.id)
        if existing:
            for key in ('name', 'description', 'level', 'provider', 'is_active'):
                setattr(existing, key, getattr(certification, key))
            certification = existing
        self.session.add(certification)
        self.session.commit()
        self.session.refresh(certification)
        return certification


class TopicRepository:
    """Read and upsert operations for `Topic` rows."""
    def __init__(self, session: Session):
        self.session = session

    def list_by_certification(self, certification_id: str) -> List[models.Topic]:
        """Return active topics for a certification ordered by `order_index`."""
        stmt = (
            select(models.Topic)
            .where(models.Topic.certification_id == certification_id, models.Topic.is_active == True)  # noqa: E712
            .order_by(models.Topic.order_index)
        )
        return self.session.exec(stmt).all()

    def get(self, topic_id: str) -> Optional[models.Topic]:
        return self.session.get(models.Topic, topic_id)

    def upsert(self, topic: models.Topic) -> models.Topic:
        existing = self.get(topic.id)
        if existing:
            for key in ('certification_id', 'name', 'description', 'order_index', 'is_active'):
                setattr(existing, key, getattr(topic, key))
            topic = existing
        self.session.add(topic)
        self.session.commit()
        self.session.refresh(topic)
        return topic


class QuestionRepository:
    """CRUD operations for `Question` records."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, question: models.Question) -> models.Question:
        self.session.add(question)
        self.session.commit()
        self.session.refresh(question)
        return question

    def list_by_topic(self, topic_id: str) -> List[models.Question]:
        """Return active questions for a topic in the store's natural order."""
        stmt = select(models.Question).where(
            models.Question.topic_id == topic_id,
            models.Question.is_active == True,  # noqa: E712
        )
        return self.session.exec(stmt).all()

    def exists_by_topic_and_text(self, topic_id: str, text: str) -> bool:
        """Return True if a question with the same topic/text already exists."""
        stmt = select(models.Question.id).where(
            models.Question.topic_id == topic_id,
            models.Question.question == text
        )
        return self.session.exec(stmt).first() is not None

    def get(self, question_id: str) -> Optional[models.Question]:
        """Fetch a question by id."""
        return self.session.get(models.Question, question_id)


class QuizSessionRepository:
    """Persistence for `QuizSession` rows."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, quiz_session: models.QuizSession) -> models.QuizSession:
        self.session.add(quiz_session)
        self.session.commit()
        self.session.refresh(quiz_session)
        return quiz_session

    def get(self, session_id: str) -> Optional[models.QuizSession]:
        return self.session.get(models.QuizSession, session_id)

    def get_active(self, user_id: str, topic_id: str) -> Optional[models.QuizSession]:
        """Return the most recently started active session for user/topic."""
        stmt = (
            select(models.QuizSession)
            .where(
                models.QuizSession.user_id == user_id,
                models.QuizSession.topic_id == topic_id,
                models.QuizSession.is_active == True,  # noqa: E712
            )
            .order_by(models.QuizSession.started_at.desc())
            .limit(1)
        )
        return self.session.exec(stmt).first()

    def list_for_user(self, user_id: str) -> List[models.QuizSession]:
        stmt = (
            select(models.QuizSession)
            .where(models.QuizSession.user_id == user_id)
            .order_by(models.QuizSession.started_at.desc())
        )
        return self.session.exec(stmt).all()

    def update(self, quiz_session: models.QuizSession, **changes) -> models.QuizSession:
        for key, value in changes.items():
            setattr(quiz_session, key, value)
        self.session.add(quiz_session)
        self.session.commit()
        self.session.refresh(quiz_session)
        return quiz_session

    def complete(self, quiz_session: models.QuizSession, score: int) -> Tuple[models.QuizSession, bool]:
        """Stamp completion time and score and deactivate the session.

        The row is only changed while it is still active. Returns
        `(session, closed)` where `closed` is False when another caller
        completed the session first; the refreshed stored row is
        returned either way.
        """
        stmt = (
            update(models.QuizSession)
            .where(
                models.QuizSession.id == quiz_session.id,
                models.QuizSession.is_active == True,  # noqa: E712
            )
            .values(completed_at=models.utcnow(), score=score, is_active=False)
        )
        result = self.session.connection().execute(stmt)
        self.session.commit()
        self.session.refresh(quiz_session)
        return quiz_session, result.rowcount == 1


class UserAnswerRepository:
    """Append-only log of submitted answers."""
    def __init__(self, session: Session):
        self.session = session

    def append(self, answer: models.UserAnswer) -> models.UserAnswer:
        self.session.add(answer)
        self.session.commit()
        self.session.refresh(answer)
        return answer

    def list_for_session(self, session_id: str) -> List[models.UserAnswer]:
        """Return answers for a session ordered by `answered_at` ascending."""
        stmt = (
            select(models.UserAnswer)
            .where(models.UserAnswer.session_id == session_id)
            .order_by(models.UserAnswer.answered_at)
        )
        return self.session.exec(stmt).all()

    def count_for_session(self, session_id: str) -> int:
        stmt = select(func.count()).select_from(models.UserAnswer).where(models.UserAnswer.session_id == session_id)
        return self.session.exec(stmt).one()


class ProgressRepository:
    """Repository for per-(user, topic) progress upserts and queries."""
    def __init__(self, session: Session):
        self.session = session

    def get_for_topic(self, user_id: str, topic_id: str) -> Optional[models.UserProgress]:
        stmt = select(models.UserProgress).where(
            models.UserProgress.user_id == user_id,
            models.UserProgress.topic_id == topic_id
        )
        return self.session.exec(stmt).first()

    def list_for_certification(self, user_id: str, certification_id: str) -> List[models.UserProgress]:
        stmt = select(models.UserProgress).where(
            models.UserProgress.user_id == user_id,
            models.UserProgress.certification_id == certification_id
        )
        return self.session.exec(stmt).all()

    def save(self, progress: models.UserProgress) -> models.UserProgress:
        """Insert or update `progress`, bumping `updated_at`."""
        progress.updated_at = models.utcnow()
        self.session.add(progress)
        self.session.commit()
        self.session.refresh(progress)
        return progress
