"""Lock manager for the tick workspace.

Provides crash-safe single-writer locking so only one tick can mutate the
working tree at a time. The lock file records the holder's PID, start time
and the kernel boot id; a lock from a previous boot or a dead process is
stale and reclaimed. A lock file that cannot be fully validated is never
overwritten.
"""

import json
import logging
import os
import socket
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from types import TracebackType
from typing import Any

from tickgov.atomic_io import atomic_write_json
from tickgov.errors import LockCorruptError, LockHeldError

logger = logging.getLogger(__name__)

BOOT_ID_PATH = Path("/proc/sys/kernel/random/boot_id")


@dataclass(frozen=True)
class LockInfo:
    """Contents of the lock file."""

    pid: int
    started_at: str
    boot_id: str


@lru_cache(maxsize=1)
def get_boot_id() -> str:
    """Identify the current boot.

    Uses the kernel boot id where available, otherwise the hostname plus the
    boot time rounded to the minute.
    """
    try:
        boot_id = BOOT_ID_PATH.read_text().strip()
        if boot_id:
            return boot_id
    except OSError:
        pass
    boot_time = int(time.time() - time.monotonic()) // 60 * 60
    return f"{socket.gethostname()}-{boot_time}"


def is_process_running(pid: int) -> bool:
    """Check if a process with given PID is running.

    Args:
        pid: Process ID to check

    Returns:
        True if process exists, False otherwise
    """
    try:
        os.kill(pid, 0)  # Signal 0 doesn't kill, just checks existence
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by another user
        return True


def parse_lock(path: Path, text: str) -> LockInfo:
    """Parse and validate lock file contents.

    Raises:
        LockCorruptError: On invalid JSON or an invalid shape
    """
    try:
        data: Any = json.loads(text)
    except json.JSONDecodeError as e:
        raise LockCorruptError(str(path), f"invalid JSON: {e.msg}") from e

    if not isinstance(data, dict):
        raise LockCorruptError(str(path), f"expected an object, got {type(data).__name__}")

    pid = data.get("pid")
    if not isinstance(pid, int) or isinstance(pid, bool) or pid <= 0:
        raise LockCorruptError(str(path), f"pid must be a positive integer, got {pid!r}")

    for key in ("started_at", "boot_id"):
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            raise LockCorruptError(str(path), f"{key} must be a non-empty string")

    return LockInfo(pid=pid, started_at=data["started_at"], boot_id=data["boot_id"])


class TickLock:
    """Workspace lock held for the duration of one tick.

    Usage:
        lock = TickLock(workspace / "lock.json")
        with lock:
            # run the tick - lock is held
            ...
        # Lock is released

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path

    def read(self) -> LockInfo | None:
        """Read the current lock.

        Returns:
            LockInfo if a lock file exists, None otherwise

        Raises:
            LockCorruptError: If the file exists but is invalid
        """
        try:
            text = self.lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        return parse_lock(self.lock_path, text)

    def is_stale(self, info: LockInfo) -> bool:
        """A lock is stale if it predates this boot or its holder is gone."""
        return info.boot_id != get_boot_id() or not is_process_running(info.pid)

    def acquire(self) -> LockInfo:
        """Acquire the lock, reclaiming a stale one.

        Returns:
            The lock now held by this process

        Raises:
            LockHeldError: If a live process holds the lock
            LockCorruptError: If the lock file cannot be validated
        """
        existing = self.read()
        if existing is not None:
            if not self.is_stale(existing):
                raise LockHeldError(str(self.lock_path), asdict(existing))
            logger.warning(
                "Reclaiming stale lock %s (pid=%s, boot_id=%s)",
                self.lock_path,
                existing.pid,
                existing.boot_id,
            )

        info = LockInfo(
            pid=os.getpid(),
            started_at=datetime.now(timezone.utc).isoformat(),
            boot_id=get_boot_id(),
        )
        atomic_write_json(self.lock_path, asdict(info))
        return info

    def release(self) -> None:
        """Release the lock.

        Safe to call even if lock doesn't exist.
        """
        try:
            self.lock_path.unlink()
        except FileNotFoundError:
            pass

    def __enter__(self) -> "TickLock":
        self.acquire()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        """Release lock on context exit."""
        self.release()
