"""No-shell subprocess execution with timeouts and kill escalation.

Every external command tickgov runs (verification templates, external
builder drivers, the agent CLI) goes through ``run_argv``: an explicit argv
list, never a shell, a wall-clock timeout enforced with SIGTERM then SIGKILL,
cooperative cancellation, and bounded output capture.
"""

import os
import subprocess
import tempfile
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import IO

TIMEOUT_EXIT_CODE = 124
POLL_INTERVAL_SECONDS = 0.1


@dataclass
class ProcessResult:
    """Outcome of one command.

    ``timed_out`` and ``cancelled`` are reported separately from the exit
    code; a timed-out run carries exit code 124.
    """

    exit_code: int
    stdout: str
    stderr: str
    timed_out: bool
    cancelled: bool
    duration_ms: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


def tail_truncate(text: str, max_chars: int) -> str:
    """Keep the last ``max_chars`` characters of text, marking the cut."""
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    return f"[... truncated {len(text) - max_chars} chars ...]\n{text[-max_chars:]}"


def _read_tail(f: IO[bytes], max_bytes: int) -> str:
    size = f.seek(0, os.SEEK_END)
    skipped = max(0, size - max_bytes) if max_bytes > 0 else 0
    f.seek(skipped)
    text = f.read().decode("utf-8", errors="replace")
    if skipped:
        return f"[... truncated {skipped} bytes ...]\n{text}"
    return text


def _stop(proc: subprocess.Popen, grace_seconds: float) -> None:
    proc.terminate()
    try:
        proc.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        proc.kill()
        proc.wait()


def run_argv(
    argv: list[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = None,
    env: dict[str, str] | None = None,
    cancel: threading.Event | None = None,
    kill_grace_seconds: float = 1.0,
    max_output_bytes: int = 64 * 1024,
) -> ProcessResult:
    """Run a command without a shell.

    Output is spooled to temporary files and only the tail is read back, so
    a runaway command cannot grow memory without bound.

    Args:
        argv: Program and arguments
        cwd: Working directory
        timeout: Wall-clock limit in seconds (None for no limit)
        env: Full environment for the child (None inherits)
        cancel: Event that, once set, terminates the child
        kill_grace_seconds: Time between SIGTERM and SIGKILL
        max_output_bytes: Tail bound applied to stdout and stderr

    Returns:
        ProcessResult for the run

    Raises:
        FileNotFoundError: If the program does not exist
        PermissionError: If the program is not executable
    """
    start = time.monotonic()
    deadline = start + timeout if timeout is not None else None
    timed_out = False
    cancelled = False

    with tempfile.TemporaryFile() as out, tempfile.TemporaryFile() as err:
        proc = subprocess.Popen(
            argv,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=out,
            stderr=err,
        )
        while True:
            if cancel is not None and cancel.is_set():
                cancelled = True
                _stop(proc, kill_grace_seconds)
                break
            wait = POLL_INTERVAL_SECONDS
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    _stop(proc, kill_grace_seconds)
                    break
                wait = min(wait, remaining)
            try:
                proc.wait(timeout=wait)
                break
            except subprocess.TimeoutExpired:
                continue

        stdout = _read_tail(out, max_output_bytes)
        stderr = _read_tail(err, max_output_bytes)

    return ProcessResult(
        exit_code=TIMEOUT_EXIT_CODE if timed_out else proc.returncode,
        stdout=stdout,
        stderr=stderr,
        timed_out=timed_out,
        cancelled=cancelled,
        duration_ms=int((time.monotonic() - start) * 1000),
    )
