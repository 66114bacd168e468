"""SQLAlchemy plumbing for the build history database.

The history lives in a single SQLite file by default
(``SBC_IMG_DB_URL``); tests pass an in-memory URL instead.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from sbc_imagegen.config import get_settings


class Base(DeclarativeBase):
    """Declarative base of the history tables."""


def get_engine(db_url: str | None = None) -> Engine:
    """Return an engine for `db_url` (default: the configured URL).

    The directory holding a SQLite database file is created on demand,
    so the first recorded build works on a fresh host.
    """
    url = make_url(db_url or get_settings().db_url)
    connect_args: dict[str, object] = {}
    if url.get_backend_name() == "sqlite":
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args)


def get_session_factory(engine: Engine | None = None) -> sessionmaker[Session]:
    """Return a session factory bound to `engine` (default: get_engine())."""
    return sessionmaker(
        bind=engine or get_engine(), autoflush=False, expire_on_commit=False
    )


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Iterator[Session]:
    """Open a session, committing on success and rolling back on error."""
    session = (session_factory or get_session_factory())()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Engine | None = None) -> None:
    """Create the build_records table if it does not exist yet."""
    # The model module registers BuildRecord on Base.metadata.
    from sbc_imagegen.records import models  # noqa: F401

    Base.metadata.create_all(bind=engine or get_engine())


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
]
