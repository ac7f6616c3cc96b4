"""Database initialization helpers."""

from __future__ import annotations

from sqlalchemy import event
from sqlalchemy.engine import Engine

from .db_models import Base


def init_db(engine: Engine) -> None:
    """Create every pipeline table that does not exist yet."""
    if engine.dialect.name == "sqlite":
        _configure_sqlite(engine)
    Base.metadata.create_all(engine)


def _configure_sqlite(engine: Engine) -> None:
    """Make SQLite usable from several worker threads.

    WAL plus a busy timeout lets readers and one writer coexist, and every
    transaction starts with ``BEGIN IMMEDIATE`` so a read-then-write
    transaction waits for the write lock up front instead of failing with
    "database is locked" halfway through.
    """
    if event.contains(engine, "connect", _set_sqlite_pragmas):
        return
    event.listen(engine, "connect", _set_sqlite_pragmas)
    event.listen(engine, "begin", _begin_immediate)
    # connections opened before the listeners were attached keep their defaults
    engine.dispose()


def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # pragma: no cover - driver hook
    # transactions are started by _begin_immediate, not by the driver
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("PRAGMA busy_timeout = 5000")
        cursor.execute("PRAGMA journal_mode = WAL")
    finally:
        cursor.close()


def _begin_immediate(connection) -> None:  # pragma: no cover - driver hook
    connection.exec_driver_sql("BEGIN IMMEDIATE")
