"""
Unit tests for strip_runner.py : external strip tool wrapper.
"""

import subprocess
from types import SimpleNamespace

import pytest

import strip_runner


@pytest.fixture
def runs(monkeypatch):
    """Capture subprocess.run calls; every call succeeds by default."""
    state = SimpleNamespace(calls=[], returncode=0, stderr="")

    def fake_run(cmd, **kwargs):
        state.calls.append(cmd)
        return subprocess.CompletedProcess(cmd, state.returncode, "", state.stderr)

    monkeypatch.setattr(strip_runner.subprocess, "run", fake_run)
    return state


class TestStrip:

    def test_missing_tool_aborts_before_running(self, monkeypatch, runs, tmp_path):
        monkeypatch.setattr(strip_runner.shutil, "which", lambda name: None)
        out = tmp_path / "vmlinux.stripped"
        with pytest.raises(SystemExit):
            strip_runner.strip("no-such-strip", str(tmp_path / "vmlinux"), str(out))
        assert runs.calls == []
        assert not out.exists()

    def test_invokes_strip_debug(self, monkeypatch, runs):
        monkeypatch.setattr(strip_runner.shutil, "which", lambda name: f"/usr/bin/{name}")
        strip_runner.strip("strip", "vmlinux", "vmlinux.stripped")
        assert runs.calls == [["/usr/bin/strip", "--strip-debug", "vmlinux", "-o", "vmlinux.stripped"]]

    def test_nonzero_exit_is_fatal(self, monkeypatch, runs):
        monkeypatch.setattr(strip_runner.shutil, "which", lambda name: f"/usr/bin/{name}")
        runs.returncode = 1
        runs.stderr = "strip: vmlinux: file format not recognized"
        with pytest.raises(SystemExit):
            strip_runner.strip("strip", "vmlinux", "out")

    def test_launch_failure_is_fatal(self, monkeypatch):
        monkeypatch.setattr(strip_runner.shutil, "which", lambda name: f"/usr/bin/{name}")

        def boom(cmd, **kwargs):
            raise PermissionError(13, "Permission denied")

        monkeypatch.setattr(strip_runner.subprocess, "run", boom)
        with pytest.raises(SystemExit):
            strip_runner.strip("strip", "vmlinux", "out")

    def test_default_tool(self):
        assert strip_runner.DEFAULT_STRIP_TOOL == "strip"
