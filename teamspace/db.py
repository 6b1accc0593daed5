import logging
import os
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone
from typing import Iterator, Optional

from sqlmodel import SQLModel, Session, create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from .config import is_create_all_enabled


logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_engine_url: Optional[str] = None
_current_user_id: ContextVar[Optional[str]] = ContextVar("teamspace_user_id", default=None)


def _database_url() -> str:
    return os.getenv("DATABASE_URL", "sqlite:///./dev.db")


def get_engine():
    """Return a SQLModel engine, creating it if needed."""
    global _engine, _engine_url
    database_url = _database_url()
    if _engine is None or database_url != _engine_url:
        connect_args = {}
        engine_kwargs = {"echo": False}
        if database_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            if database_url == "sqlite://":
                engine_kwargs["poolclass"] = StaticPool
            else:
                connect_args["timeout"] = 30
        _engine = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
        _engine_url = database_url
    return _engine


def init_db() -> None:
    """Optionally create all tables in dev environments.

    In production, rely on Alembic migrations. Enable this dev helper by setting
    SQLMODEL_CREATE_ALL=1 (or 'true').
    """
    from . import models  # noqa: F401  registers the tables on the metadata

    engine = get_engine()
    if _database_url() == "sqlite://":
        # In-memory sqlite for tests/dev: reset schema each init for isolation
        SQLModel.metadata.drop_all(engine)
        SQLModel.metadata.create_all(engine)
        return
    if is_create_all_enabled():
        SQLModel.metadata.create_all(engine)


def set_current_user_id(user_id: Optional[str]) -> Token:
    """Bind the current request's username to the context."""

    return _current_user_id.set(user_id)


def reset_current_user_id(token: Token) -> None:
    """Reset the request username context variable."""

    _current_user_id.reset(token)


def get_current_user_id() -> Optional[str]:
    return _current_user_id.get()


def _session_scope() -> Iterator[Session]:
    with Session(get_engine(), expire_on_commit=False) as session:
        yield session


@contextmanager
def get_session_ctx() -> Iterator[Session]:
    yield from _session_scope()


def get_session() -> Iterator[Session]:
    yield from _session_scope()


def backend_name() -> str:
    try:
        return get_engine().url.get_backend_name()  # type: ignore[attr-defined]
    except Exception:
        # Fallback parse
        database_url = _database_url()
        return database_url.split(":", 1)[0] if ":" in database_url else ""


def is_postgres() -> bool:
    return backend_name().startswith("postgres")


def is_sqlite() -> bool:
    return backend_name().startswith("sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return ``value`` as an aware UTC datetime.

    SQLite drops tzinfo on the way back out, so naive values are taken to be
    UTC already.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
