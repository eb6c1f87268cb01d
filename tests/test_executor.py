"""Tests for tether.executor: running callback executables."""

import json
import os
import sys

import pytest

from tether.executor import run_executable
from tether.report import ToolExecutionError

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX shell scripts")


def _script(tmp_path, body, name="cb.sh"):
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    os.chmod(path, 0o755)
    return str(path)


class TestRunExecutable:
    def test_receives_json_argument(self, tmp_path):
        exe = _script(tmp_path, 'printf "%s" "$1"\n')
        out = run_executable(exe, {"city": "Oslo", "n": 2})
        assert json.loads(out) == {"city": "Oslo", "n": 2}

    def test_stdout_returned_verbatim(self, tmp_path):
        exe = _script(tmp_path, "echo line1\necho line2\n")
        assert run_executable(exe, {}) == "line1\nline2\n"

    def test_non_zero_exit_includes_stderr_tail(self, tmp_path):
        exe = _script(tmp_path, "echo 'bad input' >&2\nexit 3\n")
        with pytest.raises(ToolExecutionError) as exc:
            run_executable(exe, {})
        assert "exited with code 3" in str(exc.value)
        assert "bad input" in str(exc.value)

    def test_missing_executable(self, tmp_path):
        with pytest.raises(ToolExecutionError, match="failed to run callback"):
            run_executable(str(tmp_path / "nope"), {})

    def test_not_executable(self, tmp_path):
        path = tmp_path / "plain.txt"
        path.write_text("hello", encoding="utf-8")
        with pytest.raises(ToolExecutionError, match="failed to run callback"):
            run_executable(str(path), {})

    def test_timeout_kills_process(self, tmp_path):
        exe = _script(tmp_path, "sleep 30\n")
        with pytest.raises(ToolExecutionError, match="timed out after 0.5s"):
            run_executable(exe, {}, timeout=0.5)

    def test_stdin_is_closed(self, tmp_path):
        exe = _script(tmp_path, "cat\necho done\n")
        assert run_executable(exe, {}, timeout=5) == "done\n"

    def test_oversized_stdout_is_an_error(self, tmp_path, monkeypatch):
        monkeypatch.setattr("tether.executor.MAX_OUTPUT", 10)
        exe = _script(tmp_path, "printf '0123456789ABC'\n")
        with pytest.raises(ToolExecutionError, match="more than 10 bytes"):
            run_executable(exe, {})

    def test_stdout_at_limit_is_kept(self, tmp_path, monkeypatch):
        monkeypatch.setattr("tether.executor.MAX_OUTPUT", 10)
        exe = _script(tmp_path, "printf '0123456789'\n")
        assert run_executable(exe, {}) == "0123456789"
