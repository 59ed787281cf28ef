"""Database engine and helpers.

This module configures the SQLModel/SQLAlchemy engine and provides small
helpers used by the application and tests. Without a `DATABASE_URL` the
database is a local SQLite file at the backend root (`certquiz.db`).
An in-memory SQLite URL (`sqlite://`) shares one connection so every
session sees the same tables, which is what the test-suite relies on.
"""

from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy.pool import StaticPool
from pathlib import Path
from .config import settings

BASE = Path(__file__).resolve().parent.parent


def _build_engine(url: str):
    if not url:
        url = f"sqlite:///{BASE / 'certquiz.db'}"
    if not url.startswith("sqlite"):
        return create_engine(url, echo=False, pool_pre_ping=True)
    kwargs = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        kwargs["poolclass"] = StaticPool
    return create_engine(url, echo=False, **kwargs)


engine = _build_engine(settings.DATABASE_URL)


def create_db_and_tables():
    """Create database tables using SQLModel metadata.

    Safe to call repeatedly; existing tables are left untouched.
    """
    # models must be imported so their tables are registered on the metadata
    from . import models  # noqa: F401
    SQLModel.metadata.create_all(engine)


def get_session():
    """Yield a database `Session` for FastAPI dependency injection.

    The generator yields a session and ensures it is closed when the
    request scope finishes.
    """
    with Session(engine) as session:
        yield session
