#!/usr/bin/env python3
"""
workload.py

Unit of deferred database work carried on the Addr2lineContext queue.

A Workload is one of three variants, decided by which fields are set:

  PREPARED - statement is not None: run statement with args, optionally
             closing it afterward (close_stmt).
  RAW      - name == "None": run query verbatim.
  RESOLVE  - any other name: resolve addr first, put the resulting source
             path into query, then run it. name is the symbol the address
             belongs to and is used to pick among several candidates.

Fields of the inactive variants are left at their zero values and ignored.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Tuple


# Symbol name marking a raw query that needs no resolution.
NO_SYMBOL = "None"


class WorkloadKind(enum.Enum):
    PREPARED = "prepared"
    RAW = "raw"
    RESOLVE = "resolve"


@dataclass(frozen=True)
class Workload:
    addr: int = 0
    name: str = NO_SYMBOL
    query: str = ""
    db: Any = None
    statement: Any = None
    args: Tuple[Any, ...] = field(default_factory=tuple)
    close_stmt: bool = False

    @property
    def kind(self) -> WorkloadKind:
        if self.statement is not None:
            return WorkloadKind.PREPARED
        if self.name == NO_SYMBOL:
            return WorkloadKind.RAW
        return WorkloadKind.RESOLVE


__all__ = [
    "NO_SYMBOL",
    "Workload",
    "WorkloadKind",
]
