"""Rollback engine: return the working tree to a known commit.

Runner-owned files that were already dirty when the tick started are
snapshotted at preflight. Rollback writes the snapshot back after the
reset, so an operator's uncommitted edits to them survive.
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path

from tickgov import codes, git
from tickgov.atomic_io import atomic_write_bytes
from tickgov.errors import AtomicWriteError, GitError
from tickgov.globs import matches_any

logger = logging.getLogger(__name__)

# Repository-relative path -> file content, or None if the file was absent
Snapshot = dict[str, bytes | None]


@dataclass
class RollbackResult:
    ok: bool
    error: str | None = None


@dataclass(frozen=True)
class BlockedOutcome:
    """A blocked report code plus the reason shown to the operator."""

    code: str
    reason: str


def snapshot_files(paths: list[str], cwd: Path) -> Snapshot:
    """Record the content of each regular file; symlinks and directories are skipped."""
    snapshot: Snapshot = {}
    for rel in paths:
        target = cwd / rel
        if target.is_symlink() or target.is_dir():
            continue
        try:
            snapshot[rel] = target.read_bytes()
        except FileNotFoundError:
            snapshot[rel] = None
    return snapshot


def changed_files(snapshot: Snapshot, cwd: Path) -> list[str]:
    """Snapshotted paths whose content differs from the snapshot now."""
    current = snapshot_files(list(snapshot), cwd)
    return [rel for rel, content in snapshot.items() if current.get(rel) != content]


def restore_files(snapshot: Snapshot, cwd: Path) -> list[str]:
    """Write back every snapshotted file that changed.

    Returns:
        The restored paths

    Raises:
        AtomicWriteError: If a file cannot be written
        OSError: If a file that did not exist cannot be removed
    """
    restored = []
    for rel in changed_files(snapshot, cwd):
        content = snapshot[rel]
        if content is None:
            (cwd / rel).unlink(missing_ok=True)
        else:
            atomic_write_bytes(cwd / rel, content)
        restored.append(rel)
    return restored


def rollback_to_commit(
    commit: str, untracked_paths: list[str], cwd: Path, preserve: Snapshot | None = None
) -> RollbackResult:
    """Reset tracked files to commit and delete the given untracked paths.

    Args:
        commit: Commit to reset to
        untracked_paths: Repository-relative paths created by the builder
        cwd: Repository root
        preserve: Files to write back after the reset

    Returns:
        RollbackResult; ok is False if any step failed
    """
    try:
        git.run_git(["reset", "--hard", commit], cwd)
    except (GitError, OSError) as e:
        logger.error("git reset --hard %s failed: %s", commit, e)
        return RollbackResult(ok=False, error=str(e))

    root = cwd.resolve()
    for rel in untracked_paths:
        target = cwd / rel
        # Never follow a path outside the repository
        if not target.resolve().is_relative_to(root) and not target.is_symlink():
            return RollbackResult(ok=False, error=f"Refusing to remove path outside repository: {rel}")
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            else:
                target.unlink()
        except FileNotFoundError:
            continue
        except OSError as e:
            logger.error("Failed to remove untracked path %s: %s", rel, e)
            return RollbackResult(ok=False, error=f"Failed to remove {rel}: {e}")

    if preserve:
        try:
            restored = restore_files(preserve, cwd)
        except (AtomicWriteError, OSError) as e:
            logger.error("Failed to restore runner-owned files: %s", e)
            return RollbackResult(ok=False, error=f"Failed to restore runner-owned files: {e}")
        if restored:
            logger.info("Restored runner-owned files: %s", ", ".join(restored))

    logger.info("Rolled back to %s (%d untracked paths removed)", commit[:12], len(untracked_paths))
    return RollbackResult(ok=True)


def verify_clean_worktree(cwd: Path, ignore_globs: list[str] | None = None) -> tuple[bool, list[str]]:
    """Check that no tracked or untracked changes remain.

    Paths matching ignore_globs (runner-owned files) do not count.

    Returns:
        (clean, dirty_paths)
    """
    paths = [path for _, path in git.status_entries(cwd)]
    dirty = [path for path in paths if not matches_any(path, ignore_globs or [])]
    if not paths:
        diff = git.run_git(["diff", "--quiet", "HEAD"], cwd, check=False)
        if diff.returncode != 0:
            dirty = ["(tracked changes)"]
    return not dirty, dirty


def perform_rollback_with_clean_check(
    commit: str,
    untracked_paths: list[str],
    cwd: Path,
    ignore_globs: list[str] | None = None,
    preserve: Snapshot | None = None,
) -> BlockedOutcome | None:
    """Roll back and confirm the worktree is clean.

    Returns:
        None on success, otherwise a BLOCKED_ROLLBACK_FAILED or
        BLOCKED_ROLLBACK_DIRTY outcome. Neither is retried.
    """
    result = rollback_to_commit(commit, untracked_paths, cwd, preserve)
    if not result.ok:
        return BlockedOutcome(
            code=codes.BLOCKED_ROLLBACK_FAILED,
            reason=f"Rollback to {commit[:12]} failed: {result.error}",
        )

    try:
        clean, dirty = verify_clean_worktree(cwd, ignore_globs)
    except GitError as e:
        return BlockedOutcome(
            code=codes.BLOCKED_ROLLBACK_FAILED,
            reason=f"Could not verify worktree after rollback: {e}",
        )
    if not clean:
        return BlockedOutcome(
            code=codes.BLOCKED_ROLLBACK_DIRTY,
            reason=f"Worktree still dirty after rollback: {', '.join(dirty)}",
        )
    return None
