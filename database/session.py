"""Database session management"""
from contextlib import contextmanager
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import settings

T = TypeVar("T")

DATABASE_URL = settings.database_url

# Create engine with appropriate settings
if DATABASE_URL.startswith("sqlite"):
    # SQLite specific settings for testing
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": settings.database_timeout_seconds},
        poolclass=StaticPool,
        echo=settings.database_echo,
    )
else:
    # PostgreSQL settings for production
    engine = create_engine(
        DATABASE_URL,
        pool_size=settings.database_pool_size,
        max_overflow=20,
        pool_pre_ping=True,
        connect_args={"connect_timeout": settings.database_timeout_seconds},
        echo=settings.database_echo,
    )

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency to get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def transaction(session: Session) -> Iterator[Session]:
    """
    Run a block as one unit of work on ``session``.

    Commits when the block exits cleanly; rolls back and re-raises otherwise,
    so either every row written inside the block lands or none does.
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def run_in_transaction(session: Session, fn: Callable[[Session], T]) -> T:
    """Callable form of :func:`transaction`"""
    with transaction(session):
        return fn(session)
