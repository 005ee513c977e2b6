#!/usr/bin/env python3
"""
addr2line_context.py

Shared resolver state for the address -> source pipeline.

An Addr2lineContext owns:
  - the opened symbolizer for one binary image,
  - the lock that serializes every call into that symbolizer,
  - the bounded work queue feeding the single dispatcher thread
    (see workload_dispatcher.py).

The context is built once at startup and lives for the whole process.
"""

from __future__ import annotations

import logging
import os
import queue
import threading
from typing import List

from dwarf_symbolizer import Candidate, DwarfSymbolizer, SymbolizerError


LOG = logging.getLogger("addr2line_context")

# Capacity of the work queue; producers block once it is full.
DEFAULT_QUEUE_SIZE = 16

# In-band marker for "no source location".
NONE_LOCATION = "NONE"


def clean_path(path: str) -> str:
    """Normalize '.', '..' and duplicate separators in a source path."""
    return os.path.normpath(path)


def load_symbolizer(binary: str) -> DwarfSymbolizer:
    """Open binary for symbolization. Failure is fatal."""
    try:
        return DwarfSymbolizer(binary)
    except SymbolizerError as e:
        LOG.error("Cannot load debug info: %s", e)
        raise SystemExit(1)


class Addr2lineContext:
    """
    Resolver handle: symbolizer + lock + work queue.

    symbolizer:
        Any object with resolve(address) -> List[Candidate]. It does not need
        to be thread safe; all calls go through self.lock.
    """

    def __init__(self, symbolizer, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.symbolizer = symbolizer
        self.lock = threading.Lock()
        self.workloads: "queue.Queue" = queue.Queue(maxsize=queue_size)
        self.dispatcher = None

    def resolve(self, address: int) -> List[Candidate]:
        """
        Resolve address under the lock.

        Symbolizer failures are logged and reported as no candidates, so an
        empty list is the only not-found signal callers see.
        """
        with self.lock:
            try:
                return list(self.symbolizer.resolve(address))
            except Exception as e:
                LOG.warning("Symbolizer failed for 0x%x: %s", address, e)
                return []

    def resolve_addr(self, address: int) -> str:
        """
        Return "file:line" for address, or "NONE" when nothing covers it.

        With several candidates the last one (the out-of-line function) is
        used.
        """
        candidates = self.resolve(address)
        if not candidates:
            return NONE_LOCATION
        last = candidates[-1]
        return f"{clean_path(last.file)}:{last.line}"

    def drain(self) -> None:
        """Block until every submitted workload has been processed."""
        self.workloads.join()


__all__ = [
    "Addr2lineContext",
    "DEFAULT_QUEUE_SIZE",
    "NONE_LOCATION",
    "clean_path",
    "load_symbolizer",
]
