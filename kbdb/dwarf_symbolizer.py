#!/usr/bin/env python3
"""
dwarf_symbolizer.py

DWARF based address symbolizer built on pyelftools.

Given an ELF image with debug information (typically vmlinux), map a numeric
address to the list of source locations that describe it, in the same order
"addr2line -f -i" prints them:

  - the innermost inlined function first, carrying the line-table location
    of the address,
  - then each enclosing function, carrying the call-site location of the
    inlined frame before it,
  - the out-of-line function (DW_TAG_subprogram) last.

Compilation units are parsed lazily. When the image has .debug_aranges we
only load the unit that covers the requested address; otherwise all units
are loaded once on first use.

This module is NOT thread safe. Callers that share a DwarfSymbolizer between
threads must serialize access (see addr2line_context.py).
"""

from __future__ import annotations

import logging
import os
from bisect import bisect_right
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from elftools.common.exceptions import DWARFError, ELFError
from elftools.dwarf.ranges import BaseAddressEntry
from elftools.elf.elffile import ELFFile


LOG = logging.getLogger("dwarf_symbolizer")

_FUNCTION_TAGS = ("DW_TAG_subprogram", "DW_TAG_inlined_subroutine")

# DW_AT_high_pc encoded with a constant form is an offset from DW_AT_low_pc.
_CONSTANT_FORMS = (
    "DW_FORM_data1",
    "DW_FORM_data2",
    "DW_FORM_data4",
    "DW_FORM_data8",
    "DW_FORM_sdata",
    "DW_FORM_udata",
    "DW_FORM_implicit_const",
)

# Key used for the merged table when the image has no .debug_aranges.
_ALL_UNITS = -1


class SymbolizerError(Exception):
    """Raised when the ELF image or its DWARF data cannot be read."""


@dataclass(frozen=True)
class Candidate:
    """
    One source location offered for an address.

    file:
        Source path as recorded in the debug info (joined with the unit's
        compilation directory when relative).
    line:
        Line number, 0 when unknown.
    function:
        Function name, "" when no function DIE covers the address.
    """
    file: str
    line: int
    function: str


@dataclass
class _Scope:
    """A function or inlined-function DIE with its address ranges."""
    name: str
    ranges: List[Tuple[int, int]]
    depth: int = 0
    call_file: str = ""
    call_line: int = 0
    inlined: List["_Scope"] = field(default_factory=list)

    def covers(self, address: int) -> bool:
        return any(low <= address < high for low, high in self.ranges)


@dataclass
class _UnitTable:
    """
    Lookup tables for one compilation unit (or for all of them merged).

    rows:
        (low, high, file, line) line-table ranges, sorted by low.
    scopes:
        (low, high, scope) for every range of every top-level function,
        sorted by low.
    """
    rows: List[Tuple[int, int, str, int]] = field(default_factory=list)
    scopes: List[Tuple[int, int, _Scope]] = field(default_factory=list)
    _row_keys: List[int] = field(default_factory=list)
    _scope_keys: List[int] = field(default_factory=list)

    def finalize(self) -> None:
        self.rows.sort(key=lambda r: r[0])
        self.scopes.sort(key=lambda s: s[0])
        self._row_keys = [r[0] for r in self.rows]
        self._scope_keys = [s[0] for s in self.scopes]

    def find_row(self, address: int) -> Optional[Tuple[int, int, str, int]]:
        i = bisect_right(self._row_keys, address) - 1
        if i < 0:
            return None
        row = self.rows[i]
        if row[0] <= address < row[1]:
            return row
        return None

    def find_chain(self, address: int) -> List[_Scope]:
        """Return the scopes covering address, outermost first."""
        i = bisect_right(self._scope_keys, address) - 1
        if i < 0:
            return []
        low, high, top = self.scopes[i]
        if not (low <= address < high):
            return []
        inner = [s for s in top.inlined if s.covers(address)]
        inner.sort(key=lambda s: s.depth)
        return [top] + inner


# ---------------------------------------------------------------------------
# DIE helpers
# ---------------------------------------------------------------------------

def _decode(value) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _die_name(die, _hops: int = 0) -> str:
    """
    Name of a function DIE, following DW_AT_abstract_origin and
    DW_AT_specification for inlined and out-of-line instances.
    """
    attr = die.attributes.get("DW_AT_name")
    if attr is not None:
        return _decode(attr.value)
    if _hops > 8:
        return ""
    for ref in ("DW_AT_abstract_origin", "DW_AT_specification"):
        if ref in die.attributes:
            return _die_name(die.get_DIE_from_attribute(ref), _hops + 1)
    return ""


def _lineprog_file(lineprog, index: int, comp_dir: str) -> str:
    """
    Resolve a line-program file index into a path.

    DWARF < 5 numbers files from 1 and directory 0 is the compilation
    directory; DWARF 5 numbers both from 0.
    """
    if lineprog is None:
        return ""
    header = lineprog.header
    version = header["version"]
    entries = header["file_entry"]
    dirs = header["include_directory"]

    if version < 5:
        index -= 1
    if index < 0 or index >= len(entries):
        return ""

    entry = entries[index]
    name = _decode(entry.name)
    dir_index = entry.dir_index

    directory = ""
    if version >= 5:
        if dir_index < len(dirs):
            directory = _decode(dirs[dir_index])
    elif dir_index == 0:
        directory = comp_dir
    elif dir_index - 1 < len(dirs):
        directory = _decode(dirs[dir_index - 1])

    path = os.path.join(directory, name) if directory else name
    if comp_dir and not os.path.isabs(path):
        path = os.path.join(comp_dir, path)
    return path


# ---------------------------------------------------------------------------
# Symbolizer
# ---------------------------------------------------------------------------

class DwarfSymbolizer:
    """
    Address -> [Candidate] lookups for a single ELF image.

    Raises SymbolizerError from the constructor when the file cannot be
    opened or is not an ELF image.
    """

    def __init__(self, path: str):
        self.path = path
        try:
            self._stream = open(path, "rb")
        except OSError as e:
            raise SymbolizerError(f"cannot open {path}: {e}") from e

        try:
            self._elf = ELFFile(self._stream)
        except ELFError as e:
            self._stream.close()
            raise SymbolizerError(f"{path} is not a valid ELF image: {e}") from e

        self._dwarf = None
        self._aranges = None
        self._tables: Dict[int, _UnitTable] = {}
        self._has_dwarf = self._elf.has_dwarf_info()
        if not self._has_dwarf:
            LOG.warning("%s has no DWARF debug info; all lookups will be empty", path)

    def close(self) -> None:
        self._stream.close()

    # -- loading -----------------------------------------------------------

    def _dwarf_info(self):
        if self._dwarf is None:
            self._dwarf = self._elf.get_dwarf_info()
            self._aranges = self._dwarf.get_aranges()
            if self._aranges is None:
                LOG.info("%s has no .debug_aranges; loading all units", self.path)
        return self._dwarf

    def _range_list(self, die, offset: int, base: int) -> List[Tuple[int, int]]:
        out: List[Tuple[int, int]] = []
        range_lists = self._dwarf.range_lists()
        if range_lists is None:
            return out
        for entry in range_lists.get_range_list_at_offset(offset, cu=die.cu):
            if isinstance(entry, BaseAddressEntry):
                base = entry.base_address
                continue
            if getattr(entry, "is_absolute", False):
                out.append((entry.begin_offset, entry.end_offset))
            else:
                out.append((base + entry.begin_offset, base + entry.end_offset))
        return out

    def _die_ranges(self, die, cu_base: int) -> List[Tuple[int, int]]:
        attrs = die.attributes
        if "DW_AT_low_pc" in attrs and "DW_AT_high_pc" in attrs:
            low = attrs["DW_AT_low_pc"].value
            high_attr = attrs["DW_AT_high_pc"]
            if high_attr.form in _CONSTANT_FORMS:
                high = low + high_attr.value
            else:
                high = high_attr.value
            return [(low, high)] if low < high else []

        if "DW_AT_ranges" in attrs:
            ranges_attr = attrs["DW_AT_ranges"]
            if ranges_attr.form == "DW_FORM_rnglistx":
                LOG.debug("Skipping DW_FORM_rnglistx ranges at DIE 0x%x", die.offset)
                return []
            return [(lo, hi) for lo, hi in self._range_list(die, ranges_attr.value, cu_base) if lo < hi]

        return []

    def _load_unit(self, cu, table: _UnitTable) -> None:
        top = cu.get_top_DIE()
        comp_dir_attr = top.attributes.get("DW_AT_comp_dir")
        comp_dir = _decode(comp_dir_attr.value) if comp_dir_attr is not None else ""
        low_attr = top.attributes.get("DW_AT_low_pc")
        cu_base = low_attr.value if low_attr is not None else 0

        lineprog = self._dwarf.line_program_for_CU(cu)
        file_cache: Dict[int, str] = {}

        def file_for(index: int) -> str:
            if index not in file_cache:
                file_cache[index] = _lineprog_file(lineprog, index, comp_dir)
            return file_cache[index]

        # Line table: each state covers [state.address, next.address).
        if lineprog is not None:
            prev = None
            for entry in lineprog.get_entries():
                state = entry.state
                if state is None:
                    continue
                if prev is not None and state.address > prev.address:
                    table.rows.append((prev.address, state.address, file_for(prev.file), prev.line))
                prev = None if state.end_sequence else state

        # Function scopes. Every subprogram is top-level, including nested
        # ones; inlined scopes hang off the closest enclosing subprogram.
        stack = [(child, None, 0) for child in top.iter_children()]
        while stack:
            die, owner, depth = stack.pop()
            child_owner, child_depth = owner, depth

            if die.tag in _FUNCTION_TAGS:
                inlined = die.tag == "DW_TAG_inlined_subroutine" and owner is not None
                ranges = self._die_ranges(die, cu_base)
                if ranges:
                    call_file_attr = die.attributes.get("DW_AT_call_file")
                    call_line_attr = die.attributes.get("DW_AT_call_line")
                    scope = _Scope(
                        name=_die_name(die),
                        ranges=ranges,
                        depth=depth if inlined else 0,
                        call_file=file_for(call_file_attr.value) if call_file_attr is not None else "",
                        call_line=call_line_attr.value if call_line_attr is not None else 0,
                    )
                    if inlined:
                        owner.inlined.append(scope)
                        child_depth = depth + 1
                    else:
                        for low, high in ranges:
                            table.scopes.append((low, high, scope))
                        child_owner, child_depth = scope, 1
                elif not inlined:
                    # Abstract or declaration-only subprogram: its children
                    # carry no code of the enclosing function.
                    child_owner, child_depth = None, 0

            if die.has_children:
                for child in die.iter_children():
                    stack.append((child, child_owner, child_depth))

    def _table_for(self, address: int) -> Optional[_UnitTable]:
        dwarf = self._dwarf_info()

        if self._aranges is None:
            table = self._tables.get(_ALL_UNITS)
            if table is None:
                table = _UnitTable()
                for cu in dwarf.iter_CUs():
                    self._load_unit(cu, table)
                table.finalize()
                self._tables[_ALL_UNITS] = table
            return table

        try:
            cu_offset = self._aranges.cu_offset_at_addr(address)
        except IndexError:
            cu_offset = None
        if cu_offset is None:
            return None

        table = self._tables.get(cu_offset)
        if table is None:
            table = _UnitTable()
            self._load_unit(dwarf.get_CU_at(cu_offset), table)
            table.finalize()
            self._tables[cu_offset] = table
        return table

    # -- lookup ------------------------------------------------------------

    def resolve(self, address: int) -> List[Candidate]:
        """
        Return the candidates for address, innermost inlined frame first.

        An empty list means the address is not covered by the debug info.
        Raises SymbolizerError if the DWARF data is malformed.
        """
        if not self._has_dwarf:
            return []

        try:
            table = self._table_for(address)
        except (ELFError, DWARFError, KeyError, IndexError, ValueError) as e:
            raise SymbolizerError(f"failed to read DWARF from {self.path}: {e}") from e

        if table is None:
            return []
        row = table.find_row(address)
        if row is None:
            return []

        return chain_candidates(row[2], row[3], table.find_chain(address))


def chain_candidates(file: str, line: int, chain: List[_Scope]) -> List[Candidate]:
    """
    Build the candidate list for an address from its line-table location and
    its covering scopes (outermost first).
    """
    if not chain:
        return [Candidate(file, line, "")]

    out: List[Candidate] = []
    for scope in reversed(chain):
        out.append(Candidate(file, line, scope.name))
        file, line = scope.call_file, scope.call_line
    return out


__all__ = [
    "Candidate",
    "DwarfSymbolizer",
    "SymbolizerError",
    "chain_candidates",
]
