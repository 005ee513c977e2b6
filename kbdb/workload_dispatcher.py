#!/usr/bin/env python3
"""
workload_dispatcher.py

Single writer for the address -> source pipeline.

Producers anywhere in the analysis tool call spawn_query() / spawn_stmt().
Those only put a Workload on the context queue; they never touch the
database or the symbolizer. One WorkloadDispatcher thread drains the queue
in FIFO order, resolves addresses when needed and calls the insert
functions, so database writes are never issued concurrently.

Resolution rule for RESOLVE workloads (build_query):
  - no candidates: the query gets "NONE" as path,
  - otherwise walk candidates in order, filling the query with each cleaned
    file path, and stop at the first one whose function equals the
    requested symbol (with "sym." removed). With no match, the last
    candidate wins.

Templates are printf-style: the first "%s" takes the path, written with
single quotes doubled, and a literal "%" is spelled "%%".

Typical use:

    conn = open_database("kbdb.sqlite")
    ctx = addr2line_init("vmlinux", insert_data, insert_data_prepared)
    spawn_query(conn, 0xffffffff81000000, "sym.startup_64", ctx.workloads,
                "INSERT INTO a2l (file) VALUES ('%s')")
    ctx.drain()
"""

from __future__ import annotations

import logging
import queue
import re
import threading
from typing import Any, Callable, List, Optional, Sequence

from addr2line_context import (
    Addr2lineContext,
    DEFAULT_QUEUE_SIZE,
    NONE_LOCATION,
    clean_path,
    load_symbolizer,
)
from dwarf_symbolizer import Candidate
from workload import NO_SYMBOL, Workload, WorkloadKind


LOG = logging.getLogger("workload_dispatcher")

# insert_func(db, query) and insert_prepared_func(stmt, args, close_stmt).
# Returning False marks the write as failed; None counts as success.
InsertFunc = Callable[[Any, str], Optional[bool]]
InsertPreparedFunc = Callable[[Any, Sequence[Any], bool], Optional[bool]]

SYMBOL_PREFIX = "sym."


# ---------------------------------------------------------------------------
# Query building
# ---------------------------------------------------------------------------

_VERB_RE = re.compile(r"%[%s]")


def escape_template(text: str) -> str:
    """Make text safe to embed literally in a query template."""
    return text.replace("%", "%%")


def fill_template(template: str, value: str) -> str:
    """
    printf-style fill: the first "%s" becomes value and "%%" becomes "%".

    Any further "%s" is left as is. value itself is never rescanned.
    """
    filled = []

    def verb(match):
        if match.group(0) == "%%":
            return "%"
        if filled:
            return match.group(0)
        filled.append(value)
        return value

    query = _VERB_RE.sub(verb, template)
    if not filled:
        LOG.debug("Query template has no placeholder: %s", template)
    return query


def sql_literal_body(path: str) -> str:
    """Path as it may appear between single quotes in SQL."""
    return path.replace("'", "''")


def build_query(template: str, name: str, candidates: List[Candidate]) -> str:
    if not candidates:
        return fill_template(template, NONE_LOCATION)

    wanted = name.replace(SYMBOL_PREFIX, "")
    query = template
    for cand in candidates:
        query = fill_template(template, sql_literal_body(clean_path(cand.file)))
        if cand.function == wanted:
            break
    return query


# ---------------------------------------------------------------------------
# Consumer
# ---------------------------------------------------------------------------

class WorkloadDispatcher(threading.Thread):
    """
    The only consumer of context.workloads.

    Runs forever as a daemon thread; process exit is the only way out.
    processed / failed count every workload handled and the ones whose write
    failed.
    """

    def __init__(
        self,
        context: Addr2lineContext,
        insert_func: InsertFunc,
        insert_prepared_func: InsertPreparedFunc,
    ):
        super().__init__(name="workload-dispatcher", daemon=True)
        self.context = context
        self.insert_func = insert_func
        self.insert_prepared_func = insert_prepared_func
        self.processed = 0
        self.failed = 0

    def run(self) -> None:
        workloads = self.context.workloads
        while True:
            item = workloads.get()
            try:
                self.dispatch(item)
            finally:
                workloads.task_done()

    def dispatch(self, item: Workload) -> None:
        kind = item.kind
        try:
            if kind is WorkloadKind.PREPARED:
                ok = self.insert_prepared_func(item.statement, item.args, item.close_stmt)
            elif kind is WorkloadKind.RAW:
                ok = self.insert_func(item.db, item.query)
            else:
                candidates = self.context.resolve(item.addr)
                ok = self.insert_func(item.db, build_query(item.query, item.name, candidates))
        except Exception:
            LOG.exception("Workload %s failed (addr=0x%x name=%s)", kind.value, item.addr, item.name)
            ok = False

        self.processed += 1
        if ok is False:
            self.failed += 1


def addr2line_init(
    binary: str,
    insert_func: InsertFunc,
    insert_prepared_func: InsertPreparedFunc,
    queue_size: int = DEFAULT_QUEUE_SIZE,
) -> Addr2lineContext:
    """
    Open binary, build the shared context and start its dispatcher.

    Failing to open the binary is fatal.
    """
    context = Addr2lineContext(load_symbolizer(binary), queue_size)
    return start_context(context, insert_func, insert_prepared_func)


def start_context(
    context: Addr2lineContext,
    insert_func: InsertFunc,
    insert_prepared_func: InsertPreparedFunc,
) -> Addr2lineContext:
    """Attach and start the one dispatcher of context."""
    if context.dispatcher is not None:
        raise RuntimeError("context already has a dispatcher")
    context.dispatcher = WorkloadDispatcher(context, insert_func, insert_prepared_func)
    context.dispatcher.start()
    return context


# ---------------------------------------------------------------------------
# Producers
# ---------------------------------------------------------------------------

def spawn_query(db: Any, addr: int, name: str, workloads: queue.Queue, query: str) -> None:
    """
    Queue a plain query. With name != "None" the query is a template whose
    "%s" receives the source path of addr.
    """
    workloads.put(Workload(addr=addr, name=name, query=query, db=db))


def spawn_stmt(db: Any, stmt: Any, workloads: queue.Queue, args: Sequence[Any], close_stmt: bool) -> None:
    """Queue a prepared statement execution."""
    workloads.put(Workload(name=NO_SYMBOL, db=db, statement=stmt, args=tuple(args), close_stmt=close_stmt))


__all__ = [
    "WorkloadDispatcher",
    "addr2line_init",
    "build_query",
    "escape_template",
    "fill_template",
    "sql_literal_body",
    "spawn_query",
    "spawn_stmt",
    "start_context",
]
