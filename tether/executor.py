"""Run local tool callbacks as subprocesses.

A callback is an executable that receives the function arguments as one
JSON-encoded positional argument and answers on stdout.
"""

import json
import os
import subprocess
import sys
import threading
from pathlib import Path

from .report import ToolExecutionError

DEFAULT_TIMEOUT = 60
MAX_OUTPUT = 1024 * 1024  # stdout beyond this fails the call
STDERR_TAIL = 2000
_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def _drain(
    stream, chunks: list[bytes], limit: int, overflow: threading.Event
) -> threading.Thread:
    def _reader():
        total = 0
        try:
            while True:
                chunk = stream.read(4096)
                if not chunk:
                    break
                if total + len(chunk) > limit:
                    overflow.set()
                if total >= limit:
                    continue  # keep draining to prevent pipe backpressure
                chunks.append(chunk[: limit - total])
                total += len(chunks[-1])
        except (OSError, ValueError):
            pass  # pipe closed after kill

    thread = threading.Thread(target=_reader, daemon=True)
    thread.start()
    return thread


def run_executable(path: str, args: dict, timeout: float = DEFAULT_TIMEOUT) -> str:
    """Execute ``path`` with ``args`` as a JSON argument; return its stdout.

    Raises ToolExecutionError on spawn failure, non-zero exit, timeout or
    when stdout exceeds MAX_OUTPUT.
    """
    exe = str(Path(path).expanduser())
    cmd = [exe, json.dumps(args, ensure_ascii=False)]

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(cmd, **popen_kwargs)
    except OSError as e:
        raise ToolExecutionError(f"failed to run callback '{exe}': {e}") from e

    out_chunks: list[bytes] = []
    err_chunks: list[bytes] = []
    out_overflow = threading.Event()
    readers = [
        _drain(proc.stdout, out_chunks, MAX_OUTPUT, out_overflow),
        _drain(proc.stderr, err_chunks, MAX_OUTPUT, threading.Event()),
    ]

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    for reader in readers:
        reader.join(timeout=2)
    proc.stdout.close()
    proc.stderr.close()

    stdout = b"".join(out_chunks).decode("utf-8", errors="replace")
    stderr = b"".join(err_chunks).decode("utf-8", errors="replace").strip()
    tail = f": {stderr[-STDERR_TAIL:]}" if stderr else ""

    if timed_out:
        raise ToolExecutionError(f"callback '{exe}' timed out after {timeout}s{tail}")
    if proc.returncode != 0:
        raise ToolExecutionError(
            f"callback '{exe}' exited with code {proc.returncode}{tail}"
        )
    if out_overflow.is_set():
        raise ToolExecutionError(
            f"callback '{exe}' wrote more than {MAX_OUTPUT} bytes to stdout"
        )
    return stdout
