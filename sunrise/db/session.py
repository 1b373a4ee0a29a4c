from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool


@dataclass(frozen=True)
class DBRuntime:
    engine: Engine
    SessionLocal: sessionmaker


def create_engine_and_sessionmaker(
    database_url: str,
    *,
    echo: bool = False,
) -> DBRuntime:
    """Create SQLAlchemy engine + sessionmaker.

    SQLite gets check_same_thread=False (FastAPI runs sync handlers in a
    threadpool), NullPool, and foreign keys switched on so ON DELETE CASCADE works.
    """
    is_sqlite = database_url.startswith("sqlite")

    connect_args: dict = {}
    if is_sqlite:
        connect_args["check_same_thread"] = False
        connect_args.setdefault("timeout", 5)

    engine_kwargs = dict(
        echo=echo,
        connect_args=connect_args,
        pool_pre_ping=True,
    )
    if is_sqlite:
        engine_kwargs["poolclass"] = NullPool

    engine = create_engine(database_url, **engine_kwargs)

    if is_sqlite:
        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection, connection_record):  # pragma: no cover
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA busy_timeout=5000")
            finally:
                cursor.close()

    SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    return DBRuntime(engine=engine, SessionLocal=SessionLocal)
