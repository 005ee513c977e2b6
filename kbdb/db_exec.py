#!/usr/bin/env python3
"""
db_exec.py

SQLite execution primitives used by the workload dispatcher.

  - open_database(): connection shared with the dispatcher thread.
  - prepare(): statement bound to a connection, reusable until closed.
  - insert_data(): execute + commit a plain SQL string.
  - insert_data_prepared(): execute a PreparedStatement with arguments,
    optionally closing it afterward.

Both insert functions are fire-and-forget for the dispatcher: errors are
logged here and reported as False, never raised.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from typing import Any, Optional, Sequence


LOG = logging.getLogger("db_exec")


def open_database(db_path: str) -> sqlite3.Connection:
    """
    Open (or create) the database at db_path.

    check_same_thread is disabled because the connection is created by the
    main thread and written by the dispatcher thread. Only the dispatcher
    writes, so there is never more than one user at a time.
    """
    db_dir = os.path.dirname(db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    conn = sqlite3.connect(db_path, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def sql_quote(value: str) -> str:
    """Quote value as an SQL string literal."""
    return "'" + value.replace("'", "''") + "'"


class PreparedStatement:
    """
    An SQL statement bound to a connection.

    Each statement keeps its own cursor until close() is called. Executing a
    closed statement raises sqlite3.ProgrammingError.
    """

    def __init__(self, conn: sqlite3.Connection, sql: str):
        self.conn = conn
        self.sql = sql
        self._cursor: Optional[sqlite3.Cursor] = conn.cursor()

    @property
    def closed(self) -> bool:
        return self._cursor is None

    def execute(self, args: Sequence[Any] = ()) -> None:
        if self._cursor is None:
            raise sqlite3.ProgrammingError(f"statement is closed: {self.sql}")
        self._cursor.execute(self.sql, tuple(args))
        self.conn.commit()

    def close(self) -> None:
        if self._cursor is not None:
            self._cursor.close()
            self._cursor = None


def prepare(conn: sqlite3.Connection, sql: str) -> PreparedStatement:
    return PreparedStatement(conn, sql)


def insert_data(db: sqlite3.Connection, query: str) -> bool:
    try:
        db.execute(query)
        db.commit()
    except sqlite3.Error as e:
        LOG.error("Query failed: %s (%s)", e, query)
        return False
    return True


def insert_data_prepared(stmt: PreparedStatement, args: Sequence[Any], close_stmt: bool) -> bool:
    """
    Execute stmt with args.

    When close_stmt is set the caller hands ownership of stmt over: it is
    closed here whether or not the execution succeeded.
    """
    try:
        stmt.execute(args)
    except (sqlite3.Error, OverflowError) as e:
        LOG.error("Prepared statement failed: %s (%s, args=%r)", e, stmt.sql, list(args))
        return False
    finally:
        if close_stmt:
            stmt.close()
    return True


__all__ = [
    "PreparedStatement",
    "insert_data",
    "insert_data_prepared",
    "open_database",
    "prepare",
    "sql_quote",
]
