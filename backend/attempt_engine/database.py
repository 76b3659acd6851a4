"""
SQLAlchemy engine and sessions for attempt storage.

PostgreSQL in deployment (schema via Alembic), SQLite for local runs and
tests (schema created on startup). Two ways to get a session:
`get_db` for FastAPI routes and `session_scope` for engine code that
flushes progress from clock or sync threads, outside any request.
"""

import os
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./attempt_engine.db")


def _engine_options(url: str) -> dict:
    options = {"echo": False}
    if url.startswith("postgresql"):
        # Every hosted attempt may flush concurrently with request traffic
        options.update(pool_size=10, max_overflow=20, pool_pre_ping=True)
    elif url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    return options


engine = create_engine(DATABASE_URL, **_engine_options(DATABASE_URL))

if DATABASE_URL.startswith("sqlite"):
    @event.listens_for(engine, "connect")
    def _sqlite_pragmas(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    """Request-scoped session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(session_factory=SessionLocal):
    """One unit of work: commit on success, roll back and re-raise on error."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def create_tables():
    """Create the schema directly. SQLite only; PostgreSQL goes through Alembic."""
    import attempt_engine.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
