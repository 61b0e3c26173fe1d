"""
Database engine configuration and helper utilities.
"""
from collections.abc import Generator

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from settings import get_settings


__all__ = ("engine", "build_engine", "create_db_and_tables", "get_db_session")


def _sqlite_set_pragmas(dbapi_connection, _connection_record):
    """
    Set pragmas on connection open:
    - Enable WAL (write-ahead log) for better concurrency.
    - Enforce foreign keys (off by default in SQLite).
    """
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA journal_mode=WAL;")
        cursor.execute("PRAGMA foreign_keys=ON;")
    finally:
        cursor.close()


def build_engine(database_url: str, **kwargs) -> Engine:
    """
    Create an engine for the given URL.

    SQLite engines get check_same_thread=False (sessions cross the threadpool
    FastAPI runs sync work in) and a 30 second lock timeout instead of the
    default 5 seconds.
    """
    if database_url.startswith("sqlite"):
        connect_args = kwargs.pop("connect_args", {})
        connect_args.setdefault("check_same_thread", False)
        connect_args.setdefault("timeout", 30)
        db_engine = create_engine(database_url, echo=False, connect_args=connect_args, **kwargs)
        event.listen(db_engine, "connect", _sqlite_set_pragmas)
        return db_engine

    return create_engine(database_url, echo=False, pool_pre_ping=True, **kwargs)


engine = build_engine(get_settings().database_url)


def create_db_and_tables(db_engine: Engine | None = None) -> None:
    """
    Create all tables defined on SQLModel metadata if they don't exist yet.
    Idempotent: calling multiple times will not overwrite existing tables.
    """
    # models must be imported so their tables are registered on the metadata
    import models  # noqa: F401

    SQLModel.metadata.create_all(db_engine or engine)


# Dependency and Service functions
def get_db_session() -> Generator[Session, None, None]:
    """
    Provide a database connection for the current request.

    This is a SQLAlchemy connection (not a logical user session). It enables
    queries/inserts/updates and is auto-closed by FastAPI after the response.
    """
    with Session(engine) as db_session:
        yield db_session
