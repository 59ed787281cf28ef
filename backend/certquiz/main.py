"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints used by the certification quiz
backend. Controllers are intentionally thin: they accept requests,
delegate to services, and return JSON responses.

Endpoints implemented:
- GET  /health
- POST /api/auth/register
- POST /api/auth/login
- POST /api/auth/verify-email
- POST /api/auth/reset-password
- GET  /api/user/profile
- PUT  /api/user/password
- GET  /api/certifications
- GET  /api/certifications/{certification_id}
- GET  /api/certifications/{certification_id}/topics
- GET  /api/topics/{topic_id}
- GET  /api/topics/{topic_id}/questions
- POST /api/quiz/start
- POST /api/quiz/answer
- POST /api/quiz/{session_id}/complete
- GET  /api/progress/{certification_id}
- GET  /api/quiz-sessions
"""

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from sqlmodel import Session
from typing import List
from uuid import UUID
import json
import logging
import time
import uuid
from .database import create_db_and_tables, get_session
from . import services, models, schemas
from .auth import get_current_user
from .errors import ServiceError
from .utils.rate_limit import InMemoryRateLimiter, RateLimitRule, auth_rule, quiz_rule
from .config import settings

app = FastAPI(title="Certification Quiz API")
logger = logging.getLogger("certquiz.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)
_rate_limiter = InMemoryRateLimiter()

# Wide-open CORS keeps a local frontend dev server working without extra config.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if request.url.path.startswith("/api"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
    return response


@app.exception_handler(ServiceError)
async def service_error_handler(request: Request, exc: ServiceError):
    if exc.status_code >= 500:
        logger.error("service_error %s", json.dumps({"path": request.url.path, "code": exc.code}))
    return JSONResponse(status_code=exc.status_code, content={'message': exc.message, 'code': exc.code})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {'loc': [str(p) for p in e.get('loc', ())], 'msg': str(e.get('msg', ''))}
        for e in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={'message': 'Validation failed', 'code': 'VALIDATION_ERROR', 'errors': errors},
    )


def _enforce_rate_limit(request: Request, rule: RateLimitRule) -> None:
    key = request.client.host if request.client else 'unknown'
    allowed, retry_after = _rate_limiter.allow(key, rule)
    if not allowed:
        raise HTTPException(
            status_code=429,
            detail=f"rate limit exceeded; retry after {retry_after}s",
            headers={"Retry-After": str(retry_after)},
        )


def auth_rate_limit(request: Request) -> None:
    _enforce_rate_limit(request, auth_rule())


def quiz_rate_limit(request: Request) -> None:
    _enforce_rate_limit(request, quiz_rule())


@app.get("/health")
def health():
    return {"status": "ok"}


@app.post('/api/auth/register', status_code=201, response_model=schemas.AuthOut,
          dependencies=[Depends(auth_rate_limit)])
def register(payload: schemas.RegisterIn, db: Session = Depends(get_session)):
    """Register a new account and return the user with an access token."""
    user, token = services.AuthService(db).register(
        payload.email, payload.password, payload.first_name, payload.last_name
    )
    return schemas.AuthOut(user=schemas.UserOut.model_validate(user), token=token)


@app.post('/api/auth/login', response_model=schemas.AuthOut, dependencies=[Depends(auth_rate_limit)])
def login(payload: schemas.LoginIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a signed JWT access token."""
    result = services.AuthService(db).authenticate(payload.email, payload.password)
    if not result:
        return JSONResponse(status_code=401, content={'message': 'Invalid email or password', 'code': 'LOGIN_FAILED'})
    user, token = result
    return schemas.AuthOut(user=schemas.UserOut.model_validate(user), token=token)


@app.post('/api/auth/verify-email', response_model=schemas.MessageOut)
def verify_email(payload: schemas.VerifyEmailIn, db: Session = Depends(get_session)):
    services.AuthService(db).verify_email(payload.token)
    return schemas.MessageOut(message='Email verified successfully')


@app.post('/api/auth/reset-password', response_model=schemas.MessageOut, dependencies=[Depends(auth_rate_limit)])
def reset_password(payload: schemas.EmailIn, db: Session = Depends(get_session)):
    """Always answers the same way so account existence is not revealed."""
    services.AuthService(db).request_password_reset(payload.email)
    return schemas.MessageOut(message='Password reset email sent if account exists')


@app.get('/api/user/profile', response_model=schemas.UserOut)
def get_profile(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return schemas.UserOut.model_validate(services.AuthService(db).get_profile(user.id))


@app.put('/api/user/password', response_model=schemas.MessageOut)
def update_password(payload: schemas.PasswordUpdateIn, db: Session = Depends(get_session),
                    user: models.User = Depends(get_current_user)):
    services.AuthService(db).update_password(user.id, payload.current_password, payload.new_password)
    return schemas.MessageOut(message='Password updated')


@app.get('/api/certifications', response_model=List[schemas.CertificationOut])
def list_certifications(db: Session = Depends(get_session)):
    certs = services.CatalogService(db).list_certifications()
    return [schemas.CertificationOut.model_validate(c) for c in certs]


@app.get('/api/certifications/{certification_id}', response_model=schemas.CertificationOut)
def get_certification(certification_id: str, db: Session = Depends(get_session)):
    return schemas.CertificationOut.model_validate(services.CatalogService(db).get_certification(certification_id))


@app.get('/api/certifications/{certification_id}/topics', response_model=List[schemas.TopicOut])
def list_topics(certification_id: str, db: Session = Depends(get_session)):
    """Active topics of a certification in display order."""
    topics = services.CatalogService(db).list_topics(certification_id)
    return [schemas.TopicOut.model_validate(t) for t in topics]


@app.get('/api/topics/{topic_id}', response_model=schemas.TopicOut)
def get_topic(topic_id: str, db: Session = Depends(get_session)):
    return schemas.TopicOut.model_validate(services.CatalogService(db).get_topic(topic_id))


@app.get('/api/topics/{topic_id}/questions', response_model=List[schemas.QuestionPublicOut])
def list_questions(topic_id: str, db: Session = Depends(get_session)):
    """List the questions of a topic without answers or explanations.

    Correct answers are only revealed by `POST /api/quiz/answer` once a
    question has been answered.
    """
    questions = services.CatalogService(db).list_questions(topic_id)
    return [schemas.QuestionPublicOut.model_validate(q) for q in questions]


@app.post('/api/quiz/start', response_model=schemas.SessionEnvelopeOut, dependencies=[Depends(quiz_rate_limit)])
def start_quiz(payload: schemas.StartQuizIn, response: Response, db: Session = Depends(get_session),
               user: models.User = Depends(get_current_user)):
    """Start a quiz on a topic, or resume the user's active session for it.

    Answers 201 when a session was created and 200 when one was resumed.
    """
    quiz_session, created = services.QuizService(db).start_session(user.id, payload.topic_id)
    response.status_code = 201 if created else 200
    return schemas.SessionEnvelopeOut(session=schemas.QuizSessionOut.model_validate(quiz_session))


@app.post('/api/quiz/answer', response_model=schemas.AnswerResultOut, dependencies=[Depends(quiz_rate_limit)])
def submit_answer(payload: schemas.SubmitAnswerIn, db: Session = Depends(get_session),
                  user: models.User = Depends(get_current_user)):
    """Record an answer and reveal the correct option and explanation."""
    result = services.QuizService(db).submit_answer(
        user.id, str(payload.session_id), str(payload.question_id), payload.selected_answer, payload.time_spent
    )
    return schemas.AnswerResultOut(
        is_correct=result['is_correct'],
        correct_answer=result['correct_answer'],
        explanation=result['explanation'],
        session=schemas.QuizSessionOut.model_validate(result['session']),
    )


@app.post('/api/quiz/{session_id}/complete', response_model=schemas.CompletionOut,
          dependencies=[Depends(quiz_rate_limit)])
def complete_quiz(session_id: UUID, db: Session = Depends(get_session),
                  user: models.User = Depends(get_current_user)):
    """Score a session, close it and fold the result into topic progress."""
    result = services.QuizService(db).complete_session(user.id, str(session_id))
    return schemas.CompletionOut(
        session=schemas.QuizSessionOut.model_validate(result['session']),
        score=result['score'],
        correct_count=result['correct_count'],
        total_questions=result['total_questions'],
        answers=[schemas.UserAnswerOut.model_validate(a) for a in result['answers']],
    )


@app.get('/api/progress/{certification_id}', response_model=List[schemas.UserProgressOut])
def get_progress(certification_id: str, db: Session = Depends(get_session),
                 user: models.User = Depends(get_current_user)):
    rows = services.CatalogService(db).get_progress(user.id, certification_id)
    return [schemas.UserProgressOut.model_validate(p) for p in rows]


@app.get('/api/quiz-sessions', response_model=List[schemas.QuizSessionOut])
def list_quiz_sessions(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """The user's quiz sessions, newest first, with their scores."""
    sessions = services.QuizService(db).list_sessions(user.id)
    return [schemas.QuizSessionOut.model_validate(s) for s in sessions]
