"""
SQLite connection management.

Provides a context manager ``get_connection()`` that:
  - Enables foreign key enforcement (OFF by default in SQLite).
  - Enables WAL journal mode for concurrent reads while background passes run.
  - Sets a busy timeout to handle lock contention gracefully.
  - Uses ``sqlite3.Row`` factory so rows behave like dicts.
  - Commits on clean exit, rolls back on exception.

Engine components never hold a connection between operations.  They receive
a ``ConnectionFactory`` — a zero-argument callable returning such a context
manager — and open one connection per operation, so request handling and the
two background passes never share in-process state.

Multi-statement state transitions run inside ``immediate_transaction()``,
which takes SQLite's write lock up front (``BEGIN IMMEDIATE``) so the
statements inside it commit together or not at all.

Usage::

    from portfolio_engine.db.connection import get_connection, immediate_transaction

    with get_connection("data/db/portfolio_engine.db") as conn:
        with immediate_transaction(conn):
            conn.execute("UPDATE ...")
            conn.execute("INSERT ...")
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from contextlib import AbstractContextManager, contextmanager
from functools import partial
from pathlib import Path
from typing import TYPE_CHECKING, Generator
from uuid import uuid4

if TYPE_CHECKING:
    from portfolio_engine.config import DatabaseConfig

logger = logging.getLogger(__name__)

ConnectionFactory = Callable[[], AbstractContextManager[sqlite3.Connection]]


@contextmanager
def get_connection(
    db_path: str,
    wal_mode: bool = True,
    busy_timeout_ms: int = 5000,
) -> Generator[sqlite3.Connection, None, None]:
    """Context manager yielding a configured SQLite connection.

    The connection is committed on clean exit and rolled back on exception.
    The database file (and any parent directories) are created if they do
    not already exist.

    Args:
        db_path: Path to the SQLite database file. Use ``":memory:"`` for
            in-memory databases (useful in tests).
        wal_mode: If ``True``, enable WAL journal mode for better concurrency.
        busy_timeout_ms: Milliseconds to wait when the database is locked
            before raising ``OperationalError``.

    Yields:
        An open, configured ``sqlite3.Connection``.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened or is locked.
    """
    if db_path != ":memory:":
        db_file = Path(db_path)
        db_file.parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, timeout=busy_timeout_ms / 1000)
    conn.row_factory = sqlite3.Row

    try:
        # These pragmas must be set before any DML/DDL
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms};")

        if wal_mode:
            conn.execute("PRAGMA journal_mode = WAL;")

        yield conn
        conn.commit()

    except Exception:
        conn.rollback()
        raise

    finally:
        conn.close()


def connection_factory(config: "DatabaseConfig", db_path: str | None = None) -> ConnectionFactory:
    """Build a ``ConnectionFactory`` that opens a fresh connection per call.

    Args:
        config: Database section of ``AppConfig``.
        db_path: Optional override for ``config.db_path``.
    """
    return partial(
        get_connection,
        db_path or config.db_path,
        wal_mode=config.wal_mode,
        busy_timeout_ms=config.busy_timeout_ms,
    )


def shared_connection_factory(conn: sqlite3.Connection) -> ConnectionFactory:
    """Build a ``ConnectionFactory`` that always hands out ``conn``.

    Each use commits on clean exit and rolls back on exception, but never
    closes the connection.  Meant for in-memory databases, which vanish with
    their only connection.
    """

    @contextmanager
    def _factory() -> Generator[sqlite3.Connection, None, None]:
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    return _factory


@contextmanager
def immediate_transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """Run a block of statements as one atomic write.

    Opens ``BEGIN IMMEDIATE`` (or a savepoint when a transaction is already
    open on ``conn``), commits on clean exit and rolls back on exception.

    Args:
        conn: Open connection.

    Yields:
        The same connection.
    """
    if conn.in_transaction:
        savepoint = f"sp_{uuid4().hex[:12]}"
        conn.execute(f"SAVEPOINT {savepoint};")
        try:
            yield conn
        except Exception:
            conn.execute(f"ROLLBACK TO {savepoint};")
            conn.execute(f"RELEASE {savepoint};")
            raise
        conn.execute(f"RELEASE {savepoint};")
        return

    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
    except Exception:
        conn.rollback()
        raise
    conn.commit()
