"""
Shared fixtures: a scripted symbolizer and recording insert functions.
"""

import threading
import time

import pytest

from addr2line_context import Addr2lineContext
from dwarf_symbolizer import Candidate


class FakeSymbolizer:
    """
    Symbolizer driven by a dict: address -> list of (file, line, function).

    Addresses listed in errors raise RuntimeError; addresses in delays sleep
    before answering.
    """

    def __init__(self, table=None, errors=(), delays=None):
        self.table = table or {}
        self.errors = set(errors)
        self.delays = delays or {}
        self.calls = []
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def resolve(self, address):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self.calls.append(address)
            time.sleep(self.delays.get(address, 0))
            if address in self.errors:
                raise RuntimeError(f"broken DWARF at 0x{address:x}")
            return [Candidate(f, l, fn) for f, l, fn in self.table.get(address, [])]
        finally:
            with self._guard:
                self.active -= 1


class Recorder:
    """
    Stands in for the database execution primitives.

    Every call is appended to records as ("query", db, query) or
    ("stmt", stmt, args, close_stmt), together with the calling thread.
    """

    def __init__(self, fail_queries=(), delay=0.0):
        self.records = []
        self.threads = set()
        self.fail_queries = set(fail_queries)
        self.delay = delay
        self.active = 0
        self.max_active = 0
        self._guard = threading.Lock()

    def _enter(self):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.threads.add(threading.current_thread().name)
        time.sleep(self.delay)

    def _leave(self):
        with self._guard:
            self.active -= 1

    def insert(self, db, query):
        self._enter()
        try:
            self.records.append(("query", db, query))
            if query in self.fail_queries:
                raise RuntimeError("constraint failed")
            return True
        finally:
            self._leave()

    def insert_prepared(self, stmt, args, close_stmt):
        self._enter()
        try:
            self.records.append(("stmt", stmt, list(args), close_stmt))
            return True
        finally:
            self._leave()

    @property
    def queries(self):
        return [r[2] for r in self.records if r[0] == "query"]


@pytest.fixture
def symbolizer():
    return FakeSymbolizer({
        0x1000: [("kernel/sched.c", 42, "schedule")],
        0x2000: [
            ("include/linux/list.h", 10, "list_add"),
            ("./kernel/../kernel/fork.c", 200, "copy_process"),
        ],
        0x3000: [
            ("a/inner.h", 1, "inner"),
            ("b//middle.h", 2, "middle"),
            ("c/outer.c", 3, "outer"),
        ],
    })


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def context(symbolizer, recorder):
    """A started context: fake symbolizer, recording DB, queue of 4."""
    from workload_dispatcher import start_context
    return start_context(Addr2lineContext(symbolizer, queue_size=4), recorder.insert, recorder.insert_prepared)
