"""Patch-mode builder: validate and apply a planner-supplied unified diff.

Every path named by the diff is checked before anything is applied:
syntactic validity, containment in the repository, absence of symlinks on
the path, and the task's scope. Only a diff whose every path passes is
written to a temp file and handed to ``git apply`` (no shell).
"""

import logging
import os
import re
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from tickgov import codes, git
from tickgov.globs import matches_any
from tickgov.models import TaskScope

logger = logging.getLogger(__name__)

HEADER_PREFIXES = ("--- ", "+++ ")
RENAME_PREFIXES = ("rename from ", "rename to ", "copy from ", "copy to ")
DEV_NULL = "/dev/null"


@dataclass
class PatchCheck:
    ok: bool
    stop_code: str | None = None
    reason: str = ""
    path: str | None = None


def _clean_header_path(raw: str, strip_prefix: bool) -> str:
    # Drop the optional tab-separated timestamp
    path = raw.split("\t", 1)[0].rstrip("\r")
    if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
        path = path[1:-1]
    if strip_prefix and path[:2] in ("a/", "b/"):
        path = path[2:]
    return path


HUNK_RE = re.compile(r"^@@ -\d+(?:,(\d+))? \+\d+(?:,(\d+))? @@")


def extract_patch_paths(diff: str) -> list[str]:
    """Collect every path a unified diff would touch.

    Reads ``---``/``+++`` headers (stripping ``a/`` and ``b/``, skipping
    ``/dev/null``) plus git rename and copy headers, which can move files
    without content headers. Hunk bodies are skipped by their line counts,
    so content lines that happen to start with ``--- `` or ``+++ `` are
    never taken for headers.
    """
    paths: list[str] = []
    old_left = new_left = 0
    for line in diff.splitlines():
        if old_left > 0 or new_left > 0:
            if line.startswith("\\"):
                continue
            if line.startswith("-"):
                old_left -= 1
            elif line.startswith("+"):
                new_left -= 1
            else:
                old_left -= 1
                new_left -= 1
            continue
        hunk = HUNK_RE.match(line)
        if hunk:
            old_left = int(hunk.group(1) or 1)
            new_left = int(hunk.group(2) or 1)
            continue
        if line.startswith(HEADER_PREFIXES):
            path = _clean_header_path(line[4:], strip_prefix=True)
        elif line.startswith(RENAME_PREFIXES):
            path = _clean_header_path(line.split(" ", 2)[2], strip_prefix=False)
        else:
            continue
        if path == DEV_NULL:
            continue
        if path not in paths:
            paths.append(path)
    return paths


def check_path_syntax(path: str) -> str | None:
    """Reject null bytes, absolute paths and ``..`` segments."""
    if not path:
        return "empty path"
    if "\0" in path:
        return "path contains a null byte"
    if path.startswith("/") or path.startswith("\\") or (len(path) > 1 and path[1] == ":"):
        return "absolute path"
    if ".." in PurePosixPath(path.replace("\\", "/")).parts:
        return "path contains a '..' segment"
    return None


def escapes_root(path: str, repo_root: Path) -> bool:
    root = repo_root.resolve()
    return not (root / path).resolve().is_relative_to(root)


def find_symlink(path: str, repo_root: Path) -> str | None:
    """First component of path (including path itself) that is a symlink.

    Uses lstat per component so missing trailing components, such as a new
    file in a new directory, are fine.
    """
    current = repo_root
    parts = PurePosixPath(path).parts
    for i, part in enumerate(parts):
        current = current / part
        try:
            st = os.lstat(current)
        except FileNotFoundError:
            return None
        if stat.S_ISLNK(st.st_mode):
            return "/".join(parts[: i + 1])
    return None


def validate_patch_paths(
    paths: list[str], repo_root: Path, scope: TaskScope, runner_owned_globs: list[str]
) -> PatchCheck:
    """Run every safety check on every path; the first failure wins."""
    if not paths:
        return PatchCheck(ok=False, stop_code=codes.STOP_PATCH_INVALID_PATH, reason="patch names no files")

    for path in paths:
        problem = check_path_syntax(path)
        if problem:
            return PatchCheck(False, codes.STOP_PATCH_INVALID_PATH, f"{problem}: {path!r}", path)

    for path in paths:
        if escapes_root(path, repo_root):
            return PatchCheck(
                False, codes.STOP_PATCH_INVALID_PATH, f"path escapes repository root: {path}", path
            )

    for path in paths:
        link = find_symlink(path, repo_root)
        if link:
            return PatchCheck(False, codes.STOP_PATCH_SYMLINK, f"symlink on path: {link}", path)

    for path in paths:
        if matches_any(path, runner_owned_globs) or matches_any(path, scope.forbidden_globs):
            return PatchCheck(
                False, codes.STOP_PATCH_SCOPE_VIOLATION, f"path is forbidden: {path}", path
            )
        if scope.allowed_globs and not matches_any(path, scope.allowed_globs):
            return PatchCheck(
                False, codes.STOP_PATCH_SCOPE_VIOLATION, f"path outside allowed scope: {path}", path
            )

    return PatchCheck(ok=True)


def apply_patch(diff: str, repo_root: Path) -> tuple[bool, str]:
    """Apply a diff with ``git apply``.

    Returns:
        (ok, error message)
    """
    fd, tmp_name = tempfile.mkstemp(prefix="tickgov-", suffix=".patch")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(diff if diff.endswith("\n") else diff + "\n")
        result = git.run_git(["apply", "--whitespace=nowarn", tmp_name], repo_root, check=False)
        if result.returncode != 0:
            logger.warning("git apply failed: %s", result.stderr.strip())
            return False, result.stderr.strip() or f"git apply exited {result.returncode}"
        return True, ""
    finally:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass


def run_patch(
    diff: str, repo_root: Path, scope: TaskScope, runner_owned_globs: list[str]
) -> PatchCheck:
    """Validate then apply a patch.

    Returns:
        PatchCheck; on apply failure the code is STOP_PATCH_APPLY_FAILED
    """
    paths = extract_patch_paths(diff)
    check = validate_patch_paths(paths, repo_root, scope, runner_owned_globs)
    if not check.ok:
        logger.warning("Patch rejected: %s", check.reason)
        return check
    ok, error = apply_patch(diff, repo_root)
    if not ok:
        return PatchCheck(ok=False, stop_code=codes.STOP_PATCH_APPLY_FAILED, reason=error)
    logger.info("Applied patch touching %d path(s)", len(paths))
    return PatchCheck(ok=True)
