from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from portraitist.core.config import Settings, settings


def build_engine(s: Settings) -> Engine:
    url = s.sqlalchemy_database_uri
    if url.startswith("sqlite"):
        # Handlers run in the threadpool and Celery eager tasks in the caller's thread.
        return create_engine(url, echo=s.db_echo, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        echo=s.db_echo,
        pool_pre_ping=True,
        pool_size=s.db_pool_size,
        pool_recycle=s.db_pool_recycle_seconds,
    )


engine = build_engine(settings)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session for background jobs: rolled back if the job raises."""
    db = SessionLocal()
    try:
        yield db
    except BaseException:
        db.rollback()
        raise
    finally:
        db.close()
