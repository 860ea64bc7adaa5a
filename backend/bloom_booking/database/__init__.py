"""
Database engine, session factory, and metadata shared across the application.
"""

from __future__ import annotations

from contextlib import contextmanager
import logging
import random
import time
from typing import Any, Callable, Generator, TypeVar

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from bloom_booking.core.config import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

_POSTGRES_POOL_KWARGS: dict[str, Any] = {
    "pool_size": 5,
    "max_overflow": 5,
    "pool_timeout": 5,
    "pool_recycle": 300,
    "pool_pre_ping": True,
}


def _build_engine_kwargs(db_url: str) -> dict[str, Any]:
    """Engine options per dialect; SQLite needs cross-thread access and a busy timeout."""

    if db_url.startswith("sqlite"):
        return {"future": True, "connect_args": {"check_same_thread": False, "timeout": 30}}
    return {"future": True, **_POSTGRES_POOL_KWARGS}


def build_engine(db_url: str) -> Engine:
    built = create_engine(db_url, **_build_engine_kwargs(db_url))
    if built.dialect.name == "sqlite":

        @event.listens_for(built, "connect")
        def _enable_sqlite_foreign_keys(dbapi_connection: Any, connection_record: Any) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return built


engine: Engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Get database session with proper cleanup."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def get_db_session() -> Generator[Session, None, None]:
    """Context-managed session for Celery tasks and scripts."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(bind: Engine | None = None) -> None:
    """Create all tables on the given engine (defaults to the application engine)."""
    import bloom_booking.models  # noqa: F401  # populate Base.metadata

    Base.metadata.create_all(bind=bind or engine)


def with_db_retry(
    op_name: str,
    func: Callable[[], T],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.2,
) -> T:
    """
    Run ``func`` and retry on transient OperationalError (dropped connections).

    Each attempt gets exponential backoff with a small jitter.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return func()
        except OperationalError as exc:
            if attempt >= max_attempts:
                logger.error(
                    "db_retry_exhausted",
                    extra={"operation": op_name, "attempts": attempt, "error": str(exc)},
                )
                raise
            delay = base_delay * (2 ** (attempt - 1)) + random.uniform(0, base_delay / 2)
            logger.warning(
                "db_retry",
                extra={"operation": op_name, "attempt": attempt, "delay": round(delay, 3)},
            )
            time.sleep(delay)
