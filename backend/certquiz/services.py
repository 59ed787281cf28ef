"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories
and domain rules. Each service receives the database `Session` it works
with, so callers (FastAPI dependencies, scripts, tests) decide which
store is used. Store failures are logged here and re-raised as
`InternalError` so controllers never leak driver details.
"""

import json
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import jwt
from passlib.context import CryptContext
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .errors import ConflictError, InternalError, InvalidInputError, NotFoundError, SessionStateError
from .utils.content_loader import iter_bundle, validate_question, validate_topic

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")
VERIFY_EMAIL_PURPOSE = 'verify_email'
VERIFY_EMAIL_EXPIRE_HOURS = 24

logger = logging.getLogger("certquiz.services")


@contextmanager
def store_errors(session: Session, operation: str):
    """Convert SQLAlchemy failures raised inside the block into `InternalError`."""
    try:
        yield
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("store_failure %s", json.dumps({"operation": operation}))
        raise InternalError(f"Failed to {operation.replace('_', ' ')}") from exc


def compute_score(correct_count: int, total_questions: int) -> int:
    """Percentage score rounded half-up, e.g. 3 of 4 -> 75, 1 of 8 -> 13."""
    if total_questions <= 0:
        raise ValueError("total_questions must be positive")
    return (200 * correct_count + total_questions) // (2 * total_questions)


def _encode_token(payload: dict, expires_in: timedelta) -> str:
    expire = datetime.now(timezone.utc) + expires_in
    body = dict(payload, exp=int(expire.timestamp()))
    return jwt.encode(body, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


class AuthService:
    """Authentication related operations (register, login, password/email flows)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def issue_access_token(self, user: models.User) -> str:
        return _encode_token({"user_id": user.id}, timedelta(days=settings.JWT_EXPIRE_DAYS))

    def issue_verification_token(self, user: models.User) -> str:
        return _encode_token(
            {"user_id": user.id, "purpose": VERIFY_EMAIL_PURPOSE},
            timedelta(hours=VERIFY_EMAIL_EXPIRE_HOURS),
        )

    def register(self, email: str, password: str, first_name: str, last_name: str) -> Tuple[models.User, str]:
        """Create a new user with a hashed password and return `(user, token)`.

        Raises `ConflictError` when the email is already registered.
        """
        with store_errors(self.session, 'register'):
            if self.user_repo.get_by_email(email):
                raise ConflictError('User already exists with this email', 'REGISTRATION_FAILED')
            user = models.User(
                email=email.strip().lower(),
                password_hash=PWD_CTX.hash(password),
                first_name=first_name,
                last_name=last_name,
                provider='email',
            )
            try:
                user = self.user_repo.create(user)
            except IntegrityError:
                # a concurrent registration took the email after the lookup
                self.session.rollback()
                raise ConflictError('User already exists with this email', 'REGISTRATION_FAILED')
        logger.info("user_registered %s", json.dumps({"user_id": user.id}))
        if settings.ENV == 'dev':
            # no mail delivery; dev builds log the verification token instead
            logger.debug("email_verification_token %s", self.issue_verification_token(user))
        return user, self.issue_access_token(user)

    def authenticate(self, email: str, password: str) -> Optional[Tuple[models.User, str]]:
        """Verify credentials and return `(user, token)` on success.

        Returns `None` if authentication fails, including for accounts
        without a local password.
        """
        with store_errors(self.session, 'log in'):
            user = self.user_repo.get_by_email(email)
        if not user or not user.password_hash:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        return user, self.issue_access_token(user)

    def verify_email(self, token: str) -> models.User:
        """Mark the token's user as verified."""
        try:
            payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
        except jwt.PyJWTError:
            raise InvalidInputError('Invalid or expired verification token', 'VERIFICATION_FAILED')
        if payload.get('purpose') != VERIFY_EMAIL_PURPOSE:
            raise InvalidInputError('Invalid or expired verification token', 'VERIFICATION_FAILED')
        with store_errors(self.session, 'verify email'):
            user = self.user_repo.get(payload.get('user_id'))
            if not user:
                raise InvalidInputError('Invalid or expired verification token', 'VERIFICATION_FAILED')
            if user.is_email_verified:
                return user
            return self.user_repo.update(user, is_email_verified=True)

    def request_password_reset(self, email: str) -> None:
        """Record a reset request. The caller always answers the same way."""
        with store_errors(self.session, 'reset password'):
            user = self.user_repo.get_by_email(email)
        logger.info("password_reset_requested %s", json.dumps({"account_exists": user is not None}))

    def update_password(self, user_id: str, current_password: str, new_password: str) -> models.User:
        with store_errors(self.session, 'update password'):
            user = self.user_repo.get(user_id)
            if not user:
                raise NotFoundError('User not found', 'USER_NOT_FOUND')
            if not user.password_hash or not PWD_CTX.verify(current_password, user.password_hash):
                raise InvalidInputError('Current password is incorrect', 'PASSWORD_MISMATCH')
            return self.user_repo.update(user, password_hash=PWD_CTX.hash(new_password))

    def get_profile(self, user_id: str) -> models.User:
        with store_errors(self.session, 'get user profile'):
            user = self.user_repo.get(user_id)
        if not user:
            raise NotFoundError('User not found', 'USER_NOT_FOUND')
        return user


class CatalogService:
    """Read-only access to certifications, topics, questions and progress."""
    def __init__(self, session: Session):
        self.session = session
        self.cert_repo = repositories.CertificationRepository(session)
        self.topic_repo = repositories.TopicRepository(session)
        self.question_repo = repositories.QuestionRepository(session)
        self.progress_repo = repositories.ProgressRepository(session)

    def list_certifications(self) -> List[models.Certification]:
        with store_errors(self.session, 'get certifications'):
            return self.cert_repo.list_active()

    def get_certification(self, certification_id: str) -> models.Certification:
        with store_errors(self.session, 'get certification'):
            cert = self.cert_repo.get(certification_id)
        if not cert:
            raise NotFoundError('Certification not found', 'CERTIFICATION_NOT_FOUND')
        return cert

    def list_topics(self, certification_id: str) -> List[models.Topic]:
        with store_errors(self.session, 'get topics'):
            return self.topic_repo.list_by_certification(certification_id)

    def get_topic(self, topic_id: str) -> models.Topic:
        with store_errors(self.session, 'get topic'):
            topic = self.topic_repo.get(topic_id)
        if not topic:
            raise NotFoundError('Topic not found', 'TOPIC_NOT_FOUND')
        return topic

    def list_questions(self, topic_id: str) -> List[models.Question]:
        """Return the active questions of a topic.

        The rows still carry `correct_answer`/`explanation`; controllers
        must serialize them through `QuestionPublicOut`.
        """
        self.get_topic(topic_id)
        with store_errors(self.session, 'get questions'):
            return self.question_repo.list_by_topic(topic_id)

    def get_progress(self, user_id: str, certification_id: str) -> List[models.UserProgress]:
        with store_errors(self.session, 'get progress'):
            return self.progress_repo.list_for_certification(user_id, certification_id)


class ProgressAggregator:
    """Fold a completed session into the single per-(user, topic) progress row."""
    def __init__(self, session: Session):
        self.session = session
        self.progress_repo = repositories.ProgressRepository(session)

    def record_completion(
        self,
        user_id: str,
        certification_id: str,
        topic_id: str,
        total_questions: int,
        correct_count: int,
        score: int,
        time_spent: int,
    ) -> models.UserProgress:
        """Create or update the progress row for `user_id`/`topic_id`.

        `best_score` keeps the maximum across attempts and `time_spent`
        accumulates; the remaining counters reflect the latest attempt.
        """
        progress = self.progress_repo.get_for_topic(user_id, topic_id)
        if progress is None:
            progress = models.UserProgress(
                user_id=user_id,
                certification_id=certification_id,
                topic_id=topic_id,
                best_score=score,
                time_spent=time_spent,
            )
            self._apply_attempt(progress, total_questions, correct_count)
            try:
                return self.progress_repo.save(progress)
            except IntegrityError:
                # another completion inserted the row first; merge into it
                self.session.rollback()
                progress = self.progress_repo.get_for_topic(user_id, topic_id)
                if progress is None:
                    raise
        progress.certification_id = certification_id
        progress.best_score = max(progress.best_score or 0, score)
        progress.time_spent = (progress.time_spent or 0) + time_spent
        self._apply_attempt(progress, total_questions, correct_count)
        return self.progress_repo.save(progress)

    @staticmethod
    def _apply_attempt(progress: models.UserProgress, total_questions: int, correct_count: int) -> None:
        progress.total_questions = total_questions
        progress.completed_questions = total_questions
        progress.correct_answers = correct_count
        progress.last_question_index = total_questions
        progress.is_completed = True


class QuizService:
    """Drive a user through one topic's questions and record the outcome.

    A session moves from active (answers may be appended) to completed
    (score stamped, progress aggregated). The session cursor is always
    derived from the number of recorded answers.
    """
    def __init__(self, session: Session):
        self.session = session
        self.topic_repo = repositories.TopicRepository(session)
        self.question_repo = repositories.QuestionRepository(session)
        self.session_repo = repositories.QuizSessionRepository(session)
        self.answer_repo = repositories.UserAnswerRepository(session)
        self.aggregator = ProgressAggregator(session)

    def _get_owned_session(self, user_id: str, session_id: str) -> models.QuizSession:
        quiz_session = self.session_repo.get(session_id)
        # sessions of other users are reported as missing
        if not quiz_session or quiz_session.user_id != user_id:
            raise NotFoundError('Quiz session not found', 'SESSION_NOT_FOUND')
        return quiz_session

    def start_session(self, user_id: str, topic_id: str) -> Tuple[models.QuizSession, bool]:
        """Return `(session, created)`; an active session for the pair is reused."""
        with store_errors(self.session, 'start_quiz'):
            topic = self.topic_repo.get(topic_id)
            if not topic or not topic.is_active:
                raise NotFoundError('Topic not found', 'TOPIC_NOT_FOUND')
            existing = self.session_repo.get_active(user_id, topic_id)
            if existing:
                return existing, False
            created = self.session_repo.create(
                models.QuizSession(user_id=user_id, topic_id=topic_id, current_question_index=0, answers={})
            )
        logger.info("quiz_started %s", json.dumps({"session_id": created.id, "topic_id": topic_id}))
        return created, True

    def submit_answer(
        self,
        user_id: str,
        session_id: str,
        question_id: str,
        selected_answer: int,
        time_spent: int = 0,
    ) -> Dict:
        """Record one answer and reveal the correct option and explanation."""
        if selected_answer < 0:
            raise InvalidInputError('selectedAnswer must be >= 0')
        if time_spent is None:
            time_spent = 0
        if time_spent < 0:
            raise InvalidInputError('timeSpent must be >= 0')
        with store_errors(self.session, 'submit_answer'):
            quiz_session = self._get_owned_session(user_id, session_id)
            if not quiz_session.is_active:
                raise SessionStateError('Quiz session is already completed', 'SESSION_NOT_ACTIVE')
            question = self.question_repo.get(question_id)
            if not question or not question.is_active:
                raise NotFoundError('Question not found', 'QUESTION_NOT_FOUND')
            if question.topic_id != quiz_session.topic_id:
                raise InvalidInputError('Question does not belong to the quiz topic', 'QUESTION_NOT_IN_TOPIC')

            is_correct = selected_answer == question.correct_answer
            self.answer_repo.append(models.UserAnswer(
                user_id=user_id,
                question_id=question_id,
                session_id=session_id,
                selected_answer=selected_answer,
                is_correct=is_correct,
                time_spent=time_spent,
            ))
            answered = self.answer_repo.count_for_session(session_id)
            # reassign so the JSON column is flagged dirty
            answers = dict(quiz_session.answers or {})
            answers[question_id] = selected_answer
            quiz_session = self.session_repo.update(
                quiz_session, current_question_index=answered, answers=answers
            )
        return {
            'is_correct': is_correct,
            'correct_answer': question.correct_answer,
            'explanation': question.explanation,
            'session': quiz_session,
        }

    def complete_session(self, user_id: str, session_id: str) -> Dict:
        """Score the session, close it and update the user's topic progress.

        Completing an already completed session returns the stored
        result without aggregating again. A session without answers
        cannot be completed.
        """
        with store_errors(self.session, 'complete_quiz'):
            quiz_session = self._get_owned_session(user_id, session_id)
            answers = self.answer_repo.list_for_session(session_id)
            total = len(answers)
            correct = sum(1 for a in answers if a.is_correct)
            if not quiz_session.is_active and quiz_session.completed_at is not None:
                return self._summary(quiz_session, answers, quiz_session.score, correct, total)
            if total == 0:
                raise SessionStateError('Cannot complete a quiz session without answers', 'SESSION_EMPTY')
            topic = self.topic_repo.get(quiz_session.topic_id)
            if not topic:
                raise NotFoundError('Topic not found', 'TOPIC_NOT_FOUND')
            topic_id, certification_id = topic.id, topic.certification_id
            score = compute_score(correct, total)
            quiz_session, closed = self.session_repo.complete(quiz_session, score)
            if not closed:
                # completed by a concurrent request, which also aggregated it
                return self._summary(quiz_session, answers, quiz_session.score, correct, total)

        time_spent = sum(a.time_spent or 0 for a in answers)
        try:
            self.aggregator.record_completion(
                user_id=user_id,
                certification_id=certification_id,
                topic_id=topic_id,
                total_questions=total,
                correct_count=correct,
                score=score,
                time_spent=time_spent,
            )
        except SQLAlchemyError as exc:
            # the session stays completed; the progress row needs reconciling
            self.session.rollback()
            logger.exception(
                "progress_upsert_failed %s",
                json.dumps({"session_id": session_id, "user_id": user_id, "topic_id": topic_id, "score": score}),
            )
            raise InternalError('Failed to complete quiz') from exc
        logger.info("quiz_completed %s", json.dumps({"session_id": session_id, "score": score, "total": total}))
        return self._summary(quiz_session, answers, score, correct, total)

    @staticmethod
    def _summary(quiz_session, answers, score, correct, total) -> Dict:
        return {
            'session': quiz_session,
            'score': score,
            'correct_count': correct,
            'total_questions': total,
            'answers': answers,
        }

    def list_sessions(self, user_id: str) -> List[models.QuizSession]:
        with store_errors(self.session, 'get quiz sessions'):
            return self.session_repo.list_for_user(user_id)


class ContentImportService:
    """Import certifications, topics and questions from a content bundle."""
    def __init__(self, session: Session):
        self.session = session
        self.cert_repo = repositories.CertificationRepository(session)
        self.topic_repo = repositories.TopicRepository(session)
        self.question_repo = repositories.QuestionRepository(session)

    def import_bundle(self, bundle: Dict, deduplicate: bool = True, dry_run: bool = False) -> Dict:
        """Upsert catalog rows and create questions found in `bundle`.

        Returns a dictionary with the number of created and skipped
        questions and any validation `errors` encountered per item.
        Questions whose topic already holds the same text are skipped
        when `deduplicate` is True.
        """
        created = 0
        skipped = 0
        errors = []
        for cert in iter_bundle(bundle):
            if not cert['id'] or not cert['name']:
                errors.append({'certification': cert['id'], 'error': 'certification needs id and name'})
                continue
            topics = cert.pop('topics')
            if not dry_run:
                self.cert_repo.upsert(models.Certification(**cert))
            for topic in topics:
                questions = topic.pop('questions')
                try:
                    validate_topic(topic)
                except ValueError as e:
                    errors.append({'certification': cert['id'], 'topic': topic['id'], 'error': str(e)})
                    continue
                if not dry_run:
                    self.topic_repo.upsert(models.Topic(**topic))
                for idx, q in enumerate(questions):
                    try:
                        validate_question(q)
                    except ValueError as e:
                        errors.append({'topic': topic['id'], 'index': idx, 'error': str(e)})
                        continue
                    if deduplicate and not dry_run and self.question_repo.exists_by_topic_and_text(topic['id'], q['question']):
                        skipped += 1
                        continue
                    if not dry_run:
                        self.question_repo.create(models.Question(topic_id=topic['id'], **q))
                    created += 1
        return {'created': created, 'skipped': skipped, 'errors': errors}
