import os

# in-memory database shared by the app and the tests; must be set before certquiz is imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("ENV", "dev")

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session

from certquiz import main, models, services
from certquiz.database import engine


@pytest.fixture(autouse=True)
def reset_db():
    """Give every test empty tables and a fresh rate limiter."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
    main._rate_limiter.reset()
    yield


@pytest.fixture
def db():
    with Session(engine) as session:
        yield session


@pytest.fixture
def client():
    return TestClient(main.app)


@pytest.fixture
def catalog(db):
    """Seed one certification with an `iam` topic (four questions) and an `ec2` topic."""
    db.add(models.Certification(id='aws-cloud-practitioner', name='AWS Certified Cloud Practitioner'))
    db.add(models.Topic(id='iam', certification_id='aws-cloud-practitioner', name='IAM', order_index=2))
    db.add(models.Topic(id='ec2', certification_id='aws-cloud-practitioner', name='EC2', order_index=1))
    db.add(models.Topic(id='retired', certification_id='aws-cloud-practitioner', name='Retired', is_active=False))
    db.commit()
    specs = [
        ('q1', 'Which service manages identities?', 2),
        ('q2', 'What should protect the root user?', 1),
        ('q3', 'IAM policies are written in?', 0),
        ('q4', 'Roles provide what kind of credentials?', 3),
    ]
    ids = {}
    for key, text, correct in specs:
        q = models.Question(
            topic_id='iam',
            question=text,
            options=['A', 'B', 'C', 'D'],
            correct_answer=correct,
            explanation=f'Explanation for {key}',
        )
        db.add(q)
        db.commit()
        ids[key] = q.id
    other = models.Question(topic_id='ec2', question='What is an AMI?', options=['A', 'B'],
                            correct_answer=0, explanation='Machine image')
    db.add(other)
    db.commit()
    ids['ec2_q'] = other.id
    return ids


@pytest.fixture
def user(db):
    u, _token = services.AuthService(db).register('learner@example.com', 'Password123', 'Ada', 'Lovelace')
    return u


@pytest.fixture
def auth_headers(db, user):
    token = services.AuthService(db).issue_access_token(user)
    return {'Authorization': f'Bearer {token}'}
