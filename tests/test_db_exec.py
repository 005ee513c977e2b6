"""
Unit tests for db_exec.py : SQLite execution primitives, also driven through
a real dispatcher.
"""

import sqlite3

import pytest

from addr2line_context import Addr2lineContext
from conftest import FakeSymbolizer
from db_exec import (
    insert_data,
    insert_data_prepared,
    open_database,
    prepare,
    sql_quote,
)
from workload import NO_SYMBOL
from workload_dispatcher import spawn_query, spawn_stmt, start_context


@pytest.fixture
def conn(tmp_path):
    """Fresh database with a single symbols table."""
    c = open_database(str(tmp_path / "sub" / "kbdb.sqlite"))
    c.execute("CREATE TABLE symbols (name TEXT UNIQUE, file TEXT)")
    c.commit()
    yield c
    c.close()


def _rows(conn):
    return conn.execute("SELECT name, file FROM symbols ORDER BY rowid").fetchall()


# ─────────────────────────────────────────────────────────────────────────────
# 1. open_database / sql_quote
# ─────────────────────────────────────────────────────────────────────────────

class TestOpen:

    def test_creates_parent_dirs(self, tmp_path):
        path = tmp_path / "a" / "b" / "db.sqlite"
        c = open_database(str(path))
        c.close()
        assert path.exists()

    def test_sql_quote_escapes(self):
        assert sql_quote("it's") == "'it''s'"


# ─────────────────────────────────────────────────────────────────────────────
# 2. insert_data
# ─────────────────────────────────────────────────────────────────────────────

class TestInsertData:

    def test_executes_and_commits(self, conn):
        assert insert_data(conn, "INSERT INTO symbols VALUES ('schedule', 'kernel/sched.c')")
        assert _rows(conn) == [("schedule", "kernel/sched.c")]

    def test_error_is_reported_not_raised(self, conn):
        assert insert_data(conn, "INSERT INTO nowhere VALUES (1)") is False


# ─────────────────────────────────────────────────────────────────────────────
# 3. insert_data_prepared
# ─────────────────────────────────────────────────────────────────────────────

class TestInsertPrepared:

    def test_reusable_until_closed(self, conn):
        stmt = prepare(conn, "INSERT INTO symbols VALUES (?, ?)")
        assert insert_data_prepared(stmt, ["a", "a.c"], False)
        assert not stmt.closed
        assert insert_data_prepared(stmt, ["b", "b.c"], True)
        assert stmt.closed
        assert _rows(conn) == [("a", "a.c"), ("b", "b.c")]

    def test_closed_statement_fails(self, conn):
        stmt = prepare(conn, "INSERT INTO symbols VALUES (?, ?)")
        stmt.close()
        assert insert_data_prepared(stmt, ["a", "a.c"], False) is False
        assert _rows(conn) == []

    def test_close_after_failure(self, conn):
        stmt = prepare(conn, "INSERT INTO symbols VALUES (?, ?)")
        assert insert_data_prepared(stmt, ["dup", "x.c"], False)
        assert insert_data_prepared(stmt, ["dup", "y.c"], True) is False
        assert stmt.closed

    def test_oversized_integer_is_reported(self, conn):
        stmt = prepare(conn, "INSERT INTO symbols VALUES (?, ?)")
        assert insert_data_prepared(stmt, ["big", 0xffffffff81000000], True) is False
        assert stmt.closed

    def test_execute_closed_raises(self, conn):
        stmt = prepare(conn, "SELECT 1")
        stmt.close()
        with pytest.raises(sqlite3.ProgrammingError):
            stmt.execute()


# ─────────────────────────────────────────────────────────────────────────────
# 4. End to end through the dispatcher
# ─────────────────────────────────────────────────────────────────────────────

class TestPipeline:

    def test_all_variants_land_in_order(self, conn):
        sym = FakeSymbolizer({
            0x1000: [("kernel/sched.c", 42, "schedule")],
        })
        ctx = start_context(Addr2lineContext(sym, queue_size=2), insert_data, insert_data_prepared)
        w = ctx.workloads

        spawn_query(conn, 0x1000, "sym.schedule", w, "INSERT INTO symbols VALUES ('schedule', '%s')")
        spawn_query(conn, 0x9999, "sym.missing", w, "INSERT INTO symbols VALUES ('missing', '%s')")
        spawn_query(conn, 0, NO_SYMBOL, w, "INSERT INTO symbols VALUES ('raw', 'raw.c')")
        stmt = prepare(conn, "INSERT INTO symbols VALUES (?, ?)")
        spawn_stmt(conn, stmt, w, ["prepared", "p.c"], True)
        spawn_query(conn, 0, NO_SYMBOL, w, "INSERT INTO symbols VALUES ('raw', 'dup.c')")
        ctx.drain()

        assert _rows(conn) == [
            ("schedule", "kernel/sched.c"),
            ("missing", "NONE"),
            ("raw", "raw.c"),
            ("prepared", "p.c"),
        ]
        assert stmt.closed
        assert ctx.dispatcher.processed == 5
        assert ctx.dispatcher.failed == 1

    def test_quote_in_resolved_path(self, conn):
        sym = FakeSymbolizer({0x1: [("drivers/net/o'brien.c", 7, "obrien_init")]})
        ctx = start_context(Addr2lineContext(sym), insert_data, insert_data_prepared)

        spawn_query(conn, 0x1, "sym.obrien_init", ctx.workloads,
                    "INSERT INTO symbols VALUES ('obrien_init', '%s')")
        ctx.drain()

        assert _rows(conn) == [("obrien_init", "drivers/net/o'brien.c")]
        assert ctx.dispatcher.failed == 0
