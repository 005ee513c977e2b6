#!/usr/bin/env python3
"""
strip_runner.py

Thin wrapper around the external "strip" tool.

strip() writes a copy of an ELF image without debug sections:

    <tool> --strip-debug <input> -o <output>

A missing tool, a launch failure or a non-zero exit code are all fatal.
"""

from __future__ import annotations

import logging
import shutil
import subprocess


LOG = logging.getLogger("strip_runner")

DEFAULT_STRIP_TOOL = "strip"


def strip(executable: str, fn: str, outfile: str) -> None:
    tool = shutil.which(executable)
    if tool is None:
        LOG.error("%s not found in PATH. Please install binutils.", executable)
        raise SystemExit(1)

    cmd = [tool, "--strip-debug", fn, "-o", outfile]
    LOG.debug("Running: %s", cmd)

    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            check=False,
        )
    except OSError as e:
        LOG.error("Failed to run %s: %s", executable, e)
        raise SystemExit(1)

    if proc.returncode != 0:
        LOG.error(
            "%s exited with code %d for %s: %s",
            executable,
            proc.returncode,
            fn,
            proc.stderr.strip(),
        )
        raise SystemExit(1)

    LOG.info("Stripped %s -> %s", fn, outfile)


__all__ = [
    "DEFAULT_STRIP_TOOL",
    "strip",
]
