#!/usr/bin/env python3
"""
kbdb_a2l.py

Command line entry point for the address -> source stage of the kernel
binary DB builder.

Subcommands:

  resolve BINARY ADDR_FILE
      Resolve every address listed in ADDR_FILE against the DWARF info of
      BINARY. ADDR_FILE holds one "ADDRESS [SYMBOL]" per line (hex, "0x"
      optional); blank lines and "#" comments are ignored.

      Without --db the result is printed as "ADDRESS<TAB>file:line".
      With --db every address becomes a workload on the dispatcher queue
      and its source file is stored in --table.

  strip INPUT OUTPUT
      Write a copy of INPUT without debug sections.

Usage examples:

  python3 ./kbdb/kbdb_a2l.py resolve vmlinux addrs.txt
  python3 ./kbdb/kbdb_a2l.py resolve --db out/kbdb.sqlite vmlinux addrs.txt
  python3 ./kbdb/kbdb_a2l.py strip --tool aarch64-linux-gnu-strip vmlinux vmlinux.stripped
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Tuple

from addr2line_context import Addr2lineContext, DEFAULT_QUEUE_SIZE, load_symbolizer
from db_exec import insert_data, insert_data_prepared, open_database, sql_quote
from strip_runner import DEFAULT_STRIP_TOOL, strip
from workload import NO_SYMBOL
from workload_dispatcher import addr2line_init, escape_template, spawn_query


LOG = logging.getLogger("kbdb_a2l")

DEFAULT_TABLE = "addr2line"


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="Resolve binary addresses to source locations and store them in a database.",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )
    sub = p.add_subparsers(dest="command", required=True)

    r = sub.add_parser("resolve", help="Resolve addresses to file:line.")
    r.add_argument("binary", metavar="BINARY", help="ELF image with debug info (e.g. vmlinux).")
    r.add_argument("addr_file", metavar="ADDR_FILE", help="File with one 'ADDRESS [SYMBOL]' per line.")
    r.add_argument(
        "--db",
        help="SQLite database to write to. If not set, results are printed to stdout.",
    )
    r.add_argument(
        "--table",
        default=DEFAULT_TABLE,
        help=f"Table receiving the resolved files (default: {DEFAULT_TABLE}).",
    )
    r.add_argument(
        "--queue-size",
        type=int,
        default=DEFAULT_QUEUE_SIZE,
        help=f"Capacity of the workload queue (default: {DEFAULT_QUEUE_SIZE}).",
    )

    s = sub.add_parser("strip", help="Strip debug sections from an ELF image.")
    s.add_argument("input", metavar="INPUT")
    s.add_argument("output", metavar="OUTPUT")
    s.add_argument(
        "--tool",
        default=DEFAULT_STRIP_TOOL,
        help=f"strip executable to use (default: {DEFAULT_STRIP_TOOL}).",
    )
    return p


def parse_address_line(line: str) -> Tuple[int, str] | None:
    """
    Parse "ADDRESS [SYMBOL]". Returns None for blank and comment lines.
    Raises ValueError on a malformed address.
    """
    s = line.strip()
    if not s or s.startswith("#"):
        return None
    parts = s.split(None, 1)
    addr = int(parts[0], 16)
    name = parts[1].strip() if len(parts) > 1 else ""
    return addr, name


def load_addresses(path: Path) -> List[Tuple[int, str]]:
    out: List[Tuple[int, str]] = []
    with open(path, "r", encoding="utf-8", errors="replace") as f:
        for lineno, line in enumerate(f, 1):
            try:
                parsed = parse_address_line(line)
            except ValueError:
                LOG.warning("%s:%d: bad address, skipped: %s", path, lineno, line.strip())
                continue
            if parsed is not None:
                out.append(parsed)
    LOG.info("Loaded %d addresses from %s", len(out), path)
    return out


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def print_locations(binary: str, addresses: List[Tuple[int, str]]) -> None:
    context = Addr2lineContext(load_symbolizer(binary))
    for addr, _name in addresses:
        print(f"0x{addr:x}\t{context.resolve_addr(addr)}")


def store_locations(
    binary: str,
    addresses: List[Tuple[int, str]],
    db_path: str,
    table: str,
    queue_size: int,
) -> None:
    conn = open_database(db_path)
    context = addr2line_init(binary, insert_data, insert_data_prepared, queue_size)
    workloads = context.workloads

    spawn_query(
        conn, 0, NO_SYMBOL, workloads,
        f"CREATE TABLE IF NOT EXISTS {table} (address TEXT, symbol TEXT, file TEXT)",
    )
    for addr, name in addresses:
        # "%s" is left for the dispatcher to fill with the resolved file;
        # any "%" in the symbol is escaped so it stays literal.
        template = (
            f"INSERT INTO {escape_template(table)} (address, symbol, file) "
            f"VALUES ({sql_quote(f'0x{addr:x}')}, {escape_template(sql_quote(name))}, '%s')"
        )
        spawn_query(conn, addr, name, workloads, template)

    context.drain()
    dispatcher = context.dispatcher
    LOG.info(
        "Stored %d workloads in %s (%d failed)",
        dispatcher.processed,
        db_path,
        dispatcher.failed,
    )


def run_resolve(args: argparse.Namespace) -> None:
    addr_file = Path(args.addr_file)
    if not addr_file.is_file():
        LOG.error("Address file does not exist: %s", addr_file)
        raise SystemExit(1)

    addresses = load_addresses(addr_file)
    if args.db:
        store_locations(args.binary, addresses, args.db, args.table, args.queue_size)
    else:
        print_locations(args.binary, addresses)


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main() -> None:
    args = build_argparser().parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    if args.command == "strip":
        strip(args.tool, args.input, args.output)
        return

    run_resolve(args)


if __name__ == "__main__":
    main()
