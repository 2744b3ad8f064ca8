"""Flash history database.

The history is a single SQLite file under the data directory unless
AESIR_DB_URL points elsewhere. open_history() is the entry point the CLI
uses: it creates the file's parent directory and the tables on first use.
"""

from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from aesir.config import get_settings


class Base(DeclarativeBase):
    """Base class for history ORM models."""

    pass


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the history database.

    The parent directory of a file-backed SQLite database is created on
    demand.

    Args:
        db_url: Database URL. If not provided, uses settings default.

    Returns:
        SQLAlchemy Engine instance.
    """
    if db_url is None:
        db_url = get_settings().db_url

    url = make_url(db_url)
    if url.get_backend_name() != "sqlite":
        return create_engine(url)

    if url.database and url.database != ":memory:":
        Path(url.database).parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args={"check_same_thread": False})


def create_all_tables(engine: Engine) -> None:
    """Create the history tables if they do not exist."""
    from aesir.flash import models as flash_models  # noqa: F401

    Base.metadata.create_all(bind=engine)


def open_history(db_url: str | None = None) -> sessionmaker[Session]:
    """Open the flash history and return a session factory for it.

    Args:
        db_url: Database URL. If not provided, uses settings default.

    Returns:
        Session factory bound to a database whose tables exist.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


__all__ = ["Base", "create_all_tables", "get_engine", "open_history"]
