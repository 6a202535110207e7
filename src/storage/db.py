"""Engine and session plumbing for the content store."""

from __future__ import annotations

from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Dict, Iterator, Optional, Tuple

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from src.core.config import get_settings
from src.storage.tenant import account_scope


Base = declarative_base()


def engine_options(database_url: str) -> Dict[str, Any]:
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    settings = get_settings()
    return {
        "pool_pre_ping": True,
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_recycle": settings.db_pool_recycle_seconds,
    }


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    database_url = get_settings().database_url
    return create_engine(database_url, **engine_options(database_url))


@lru_cache(maxsize=1)
def get_session_factory() -> sessionmaker:
    return sessionmaker(bind=get_engine(), autoflush=False, expire_on_commit=False)


def get_session() -> Iterator[Session]:
    """FastAPI dependency yielding one session per request."""

    session = get_session_factory()()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@contextmanager
def session_scope(account_id: Optional[str] = None, *, session_factory: Optional[sessionmaker] = None) -> Iterator[Session]:
    """Open a session bound to one account, or to none for cross-account maintenance."""

    factory = session_factory or get_session_factory()
    with factory() as session, account_scope(session, account_id):
        yield session


def reset_engine_cache() -> None:
    get_session_factory.cache_clear()
    get_engine.cache_clear()


def test_connection() -> Tuple[bool, Optional[str]]:
    try:
        with get_engine().connect() as connection:
            connection.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        return False, str(exc)
    return True, None


def load_models() -> None:
    # Registers every mapped table on Base.metadata.
    import src.storage.models  # noqa: F401
