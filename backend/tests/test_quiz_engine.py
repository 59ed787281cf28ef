import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, select

from certquiz import models, repositories, services
from certquiz.database import engine
from certquiz.errors import InternalError, InvalidInputError, NotFoundError, SessionStateError


def test_start_session_is_idempotent(db, catalog, user):
    svc = services.QuizService(db)
    first, created_first = svc.start_session(user.id, 'iam')
    second, created_second = svc.start_session(user.id, 'iam')
    assert created_first is True
    assert created_second is False
    assert first.id == second.id
    rows = db.exec(select(models.QuizSession)).all()
    assert len(rows) == 1
    assert first.current_question_index == 0
    assert first.answers == {}
    assert first.is_active is True


def test_start_session_unknown_or_inactive_topic(db, catalog, user):
    svc = services.QuizService(db)
    with pytest.raises(NotFoundError) as exc:
        svc.start_session(user.id, 'does-not-exist')
    assert exc.value.code == 'TOPIC_NOT_FOUND'
    with pytest.raises(NotFoundError):
        svc.start_session(user.id, 'retired')
    assert db.exec(select(models.QuizSession)).all() == []


def test_new_session_after_completion(db, catalog, user):
    svc = services.QuizService(db)
    s1, _ = svc.start_session(user.id, 'iam')
    svc.submit_answer(user.id, s1.id, catalog['q1'], 2)
    svc.complete_session(user.id, s1.id)
    s2, created = svc.start_session(user.id, 'iam')
    assert created is True
    assert s2.id != s1.id


def test_cursor_equals_number_of_answers(db, catalog, user):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    # repeated and out-of-order submissions still count one per call
    order = ['q3', 'q1', 'q3', 'q4', 'q2']
    for n, key in enumerate(order, start=1):
        result = svc.submit_answer(user.id, quiz_session.id, catalog[key], 0)
        assert result['session'].current_question_index == n
    assert repositories.UserAnswerRepository(db).count_for_session(quiz_session.id) == len(order)


def test_correctness_derivation_and_reveal(db, catalog, user):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    right = svc.submit_answer(user.id, quiz_session.id, catalog['q1'], 2, time_spent=12)
    assert right['is_correct'] is True
    assert right['correct_answer'] == 2
    assert right['explanation'] == 'Explanation for q1'
    for wrong_index in (0, 1, 3):
        wrong = svc.submit_answer(user.id, quiz_session.id, catalog['q1'], wrong_index)
        assert wrong['is_correct'] is False
        assert wrong['correct_answer'] == 2
        assert wrong['explanation'] == 'Explanation for q1'
    assert wrong['session'].answers == {catalog['q1']: 3}


def test_submit_answer_unknown_question_writes_nothing(db, catalog, user):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    with pytest.raises(NotFoundError) as exc:
        svc.submit_answer(user.id, quiz_session.id, '00000000-0000-0000-0000-000000000000', 1)
    assert exc.value.code == 'QUESTION_NOT_FOUND'
    assert db.exec(select(models.UserAnswer)).all() == []


def test_submit_answer_rejects_question_from_other_topic(db, catalog, user):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    with pytest.raises(InvalidInputError) as exc:
        svc.submit_answer(user.id, quiz_session.id, catalog['ec2_q'], 0)
    assert exc.value.code == 'QUESTION_NOT_IN_TOPIC'
    assert db.exec(select(models.UserAnswer)).all() == []


def test_submit_answer_requires_own_session(db, catalog, user):
    svc = services.QuizService(db)
    other, _ = services.AuthService(db).register('other@example.com', 'Password123', 'Grace', 'Hopper')
    quiz_session, _ = svc.start_session(other.id, 'iam')
    with pytest.raises(NotFoundError) as exc:
        svc.submit_answer(user.id, quiz_session.id, catalog['q1'], 2)
    assert exc.value.code == 'SESSION_NOT_FOUND'


def test_submit_answer_validates_ranges(db, catalog, user):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    with pytest.raises(InvalidInputError):
        svc.submit_answer(user.id, quiz_session.id, catalog['q1'], -1)
    with pytest.raises(InvalidInputError):
        svc.submit_answer(user.id, quiz_session.id, catalog['q1'], 0, time_spent=-5)


def test_score_three_of_four(db, catalog, user):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    svc.submit_answer(user.id, quiz_session.id, catalog['q1'], 2)
    svc.submit_answer(user.id, quiz_session.id, catalog['q2'], 1)
    svc.submit_answer(user.id, quiz_session.id, catalog['q3'], 0)
    svc.submit_answer(user.id, quiz_session.id, catalog['q4'], 0)
    result = svc.complete_session(user.id, quiz_session.id)
    assert result['total_questions'] == 4
    assert result['correct_count'] == 3
    assert result['score'] == 75
    assert result['session'].score == 75
    assert result['session'].is_active is False
    assert result['session'].completed_at is not None
    assert len(result['answers']) == 4


def test_compute_score_rounds_half_up():
    assert services.compute_score(1, 2) == 50
    assert services.compute_score(1, 8) == 13
    assert services.compute_score(2, 3) == 67
    assert services.compute_score(1, 3) == 33
    assert services.compute_score(0, 5) == 0
    assert services.compute_score(5, 5) == 100
    with pytest.raises(ValueError):
        services.compute_score(0, 0)


def test_complete_empty_session_is_rejected(db, catalog, user):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    with pytest.raises(SessionStateError) as exc:
        svc.complete_session(user.id, quiz_session.id)
    assert exc.value.code == 'SESSION_EMPTY'
    db.expire_all()
    stored = repositories.QuizSessionRepository(db).get(quiz_session.id)
    assert stored.is_active is True
    assert stored.score is None
    assert db.exec(select(models.UserProgress)).all() == []


def test_complete_unknown_session(db, catalog, user):
    with pytest.raises(NotFoundError) as exc:
        services.QuizService(db).complete_session(user.id, 'missing')
    assert exc.value.code == 'SESSION_NOT_FOUND'


def test_iam_scenario(db, catalog, user):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    svc.submit_answer(user.id, quiz_session.id, catalog['q1'], 2)
    svc.submit_answer(user.id, quiz_session.id, catalog['q2'], 0)
    result = svc.complete_session(user.id, quiz_session.id)
    assert (result['total_questions'], result['correct_count'], result['score']) == (2, 1, 50)


def test_completed_session_rejects_answers_and_replays_result(db, catalog, user):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    svc.submit_answer(user.id, quiz_session.id, catalog['q1'], 2, time_spent=30)
    first = svc.complete_session(user.id, quiz_session.id)
    completed_at = first['session'].completed_at

    with pytest.raises(SessionStateError) as exc:
        svc.submit_answer(user.id, quiz_session.id, catalog['q2'], 1)
    assert exc.value.code == 'SESSION_NOT_ACTIVE'

    again = svc.complete_session(user.id, quiz_session.id)
    assert again['score'] == first['score'] == 100
    assert again['session'].completed_at == completed_at
    progress = repositories.ProgressRepository(db).get_for_topic(user.id, 'iam')
    # replay must not aggregate a second time
    assert progress.time_spent == 30


def test_progress_upsert_creates_then_updates(db, catalog, user):
    svc = services.QuizService(db)
    for selected in (2, 0, 2):
        quiz_session, _ = svc.start_session(user.id, 'iam')
        svc.submit_answer(user.id, quiz_session.id, catalog['q1'], selected, time_spent=10)
        svc.complete_session(user.id, quiz_session.id)
        rows = db.exec(select(models.UserProgress).where(models.UserProgress.user_id == user.id)).all()
        assert len(rows) == 1
    progress = rows[0]
    assert progress.certification_id == 'aws-cloud-practitioner'
    assert progress.topic_id == 'iam'
    assert progress.is_completed is True
    assert progress.total_questions == 1
    assert progress.completed_questions == 1
    assert progress.last_question_index == 1
    assert progress.best_score == 100
    assert progress.time_spent == 30


def test_progress_failure_leaves_session_completed(db, catalog, user, monkeypatch):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    svc.submit_answer(user.id, quiz_session.id, catalog['q1'], 2)

    def boom(self, progress):
        raise OperationalError('UPDATE userprogress', {}, Exception('disk I/O error'))

    monkeypatch.setattr(repositories.ProgressRepository, 'save', boom)
    with pytest.raises(InternalError) as exc:
        svc.complete_session(user.id, quiz_session.id)
    assert exc.value.code == 'INTERNAL_ERROR'
    assert 'disk' not in exc.value.message

    db.expire_all()
    stored = repositories.QuizSessionRepository(db).get(quiz_session.id)
    assert stored.is_active is False
    assert stored.score == 100
    assert db.exec(select(models.UserProgress)).all() == []


def test_store_failure_becomes_internal_error(db, catalog, user, monkeypatch):
    def boom(self, user_id, topic_id):
        raise OperationalError('SELECT quizsession', {}, Exception('database is locked'))

    monkeypatch.setattr(repositories.QuizSessionRepository, 'get_active', boom)
    with pytest.raises(InternalError) as exc:
        services.QuizService(db).start_session(user.id, 'iam')
    assert exc.value.message == 'Failed to start quiz'


def test_list_sessions_newest_first(db, catalog, user):
    svc = services.QuizService(db)
    first, _ = svc.start_session(user.id, 'iam')
    svc.submit_answer(user.id, first.id, catalog['q1'], 2)
    svc.complete_session(user.id, first.id)
    second, _ = svc.start_session(user.id, 'ec2')
    sessions = svc.list_sessions(user.id)
    assert [s.id for s in sessions] == [second.id, first.id]
    assert sessions[1].score == 100


def test_overlapping_completion_aggregates_once(db, catalog, user, monkeypatch):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    svc.submit_answer(user.id, quiz_session.id, catalog['q1'], 2, time_spent=30)

    real_get = svc.topic_repo.get

    def get_after_other_request(topic_id):
        # a second request completes the same session while this one is mid-flight
        with Session(engine) as other:
            services.QuizService(other).complete_session(user.id, quiz_session.id)
        return real_get(topic_id)

    monkeypatch.setattr(svc.topic_repo, 'get', get_after_other_request)
    result = svc.complete_session(user.id, quiz_session.id)
    assert result['score'] == 100
    assert result['session'].is_active is False

    db.expire_all()
    rows = db.exec(select(models.UserProgress)).all()
    assert len(rows) == 1
    assert rows[0].time_spent == 30


def test_complete_only_closes_active_session(db, catalog, user):
    svc = services.QuizService(db)
    quiz_session, _ = svc.start_session(user.id, 'iam')
    svc.submit_answer(user.id, quiz_session.id, catalog['q1'], 2)
    repo = repositories.QuizSessionRepository(db)
    closed_session, closed = repo.complete(quiz_session, 100)
    assert closed is True
    completed_at = closed_session.completed_at
    again, closed_again = repo.complete(closed_session, 0)
    assert closed_again is False
    assert again.score == 100
    assert again.completed_at == completed_at
