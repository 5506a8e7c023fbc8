"""Build history store.

Every run appends one row per product to a SQLite database (see
builds/models.py). The runner writes the rows once a run finished and
``bundlesmith history`` reads them back.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from bundlesmith.config import get_settings


class Base(DeclarativeBase):
    """Declarative base of the history tables."""

    pass


def sqlite_path(db_url: str) -> Path | None:
    """Return the database file of a SQLite URL.

    Returns None for other backends and for in-memory databases.
    """
    if not db_url.startswith("sqlite:///"):
        return None
    path = db_url.removeprefix("sqlite:///")
    if not path or path == ":memory:":
        return None
    return Path(path)


def get_engine(db_url: str | None = None) -> Any:
    """Open the history database.

    The directory of a SQLite file is created on first use, so a fresh
    checkout can record its first run without setup.

    Args:
        db_url: Database URL; defaults to ``Settings.db_url``.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        db_url = get_settings().db_url

    connect_args: dict[str, Any] = {}
    if db_url.startswith("sqlite"):
        # History is written from the thread that finished the run
        connect_args["check_same_thread"] = False
        path = sqlite_path(db_url)
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)

    return create_engine(db_url, connect_args=connect_args, echo=False)


def get_session_factory(engine: Any | None = None) -> sessionmaker[Session]:
    """Return a session factory bound to the history database."""
    if engine is None:
        engine = get_engine()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def get_session(
    session_factory: sessionmaker[Session] | None = None,
) -> Generator[Session, None, None]:
    """Write or read history rows in one transaction.

    Commits when the block completes and rolls back when it raises, so a
    run's rows are recorded together or not at all.

    Args:
        session_factory: Session factory; defaults to one from settings.

    Yields:
        SQLAlchemy Session instance.
    """
    if session_factory is None:
        session_factory = get_session_factory()

    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Any | None = None) -> None:
    """Create the history tables if they do not exist yet.

    Args:
        engine: SQLAlchemy engine; defaults to one from settings.
    """
    # BuildRecord must be mapped before metadata is complete
    from bundlesmith.builds import models as builds_models  # noqa: F401

    if engine is None:
        engine = get_engine()
    Base.metadata.create_all(bind=engine)


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "get_session",
    "get_session_factory",
    "sqlite_path",
]
