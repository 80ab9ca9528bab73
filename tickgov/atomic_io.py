"""Atomic file writes for workspace artifacts.

Every runner-owned artifact (lock, state, reports, TASK.json) is written with
the write-temp, fsync, rename pattern so a crash never leaves a partial file.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from tickgov.errors import AtomicWriteError

logger = logging.getLogger(__name__)

TMP_SUFFIX = ".tmp"


def atomic_write_text(path: Path | str, content: str) -> None:
    """Write text to a file atomically.

    Args:
        path: Target file path
        content: Text content; a trailing newline is added if missing

    Raises:
        AtomicWriteError: If the write or rename fails
    """
    if not content.endswith("\n"):
        content += "\n"
    atomic_write_bytes(path, content.encode("utf-8"))


def atomic_write_bytes(path: Path | str, data: bytes) -> None:
    """Write bytes to a file atomically, exactly as given."""
    path = Path(path)
    tmp_path = path.with_name(path.name + TMP_SUFFIX)

    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except OSError as e:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        raise AtomicWriteError(str(path), f"Failed to write {path}: {e}") from e


def atomic_write_json(path: Path | str, data: Any) -> None:
    """Serialize data as indented JSON and write it atomically."""
    atomic_write_text(path, json.dumps(data, indent=2, ensure_ascii=False))


def read_json(path: Path | str) -> Any | None:
    """Read a JSON file.

    Returns:
        Parsed JSON, or None if the file does not exist

    Raises:
        json.JSONDecodeError: If the file exists but is not valid JSON
    """
    try:
        with open(path, encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def cleanup_tmp_files(directory: Path, suffix: str = TMP_SUFFIX) -> list[Path]:
    """Delete leftover temp files from interrupted atomic writes.

    Only the top level of ``directory`` is scanned.

    Args:
        directory: Workspace directory to clean
        suffix: File name suffix marking temp files

    Returns:
        Paths that were deleted
    """
    deleted: list[Path] = []
    if not directory.is_dir():
        return deleted

    for entry in sorted(directory.iterdir()):
        if entry.is_file() and entry.name.endswith(suffix):
            try:
                entry.unlink()
                deleted.append(entry)
            except OSError as e:
                logger.warning("Failed to delete tmp file %s: %s", entry, e)
    return deleted
