"""Preflight checks run after the lock is held and before any agent call."""

import logging
from dataclasses import dataclass, field
from pathlib import Path

from tickgov import codes, git
from tickgov.atomic_io import cleanup_tmp_files
from tickgov.config import TickgovConfig
from tickgov.errors import GitError
from tickgov.globs import matches_any
from tickgov.rollback import Snapshot, snapshot_files
from tickgov.state import WorkspaceState, exhausted_budgets

logger = logging.getLogger(__name__)


@dataclass
class PreflightResult:
    ok: bool
    base_commit: str | None = None
    blocked_code: str | None = None
    blocked_reason: str = ""
    warnings: list[str] = field(default_factory=list)
    runner_owned_dirty: list[str] = field(default_factory=list)
    runner_owned_snapshot: Snapshot = field(default_factory=dict)


def _blocked(code: str, reason: str) -> PreflightResult:
    logger.warning("Preflight blocked: %s (%s)", code, reason)
    return PreflightResult(ok=False, blocked_code=code, blocked_reason=reason)


def split_dirty(repo_root: Path, runner_owned_globs: list[str]) -> tuple[list[str], list[str]]:
    """Uncommitted paths, split into (foreign, runner-owned)."""
    dirty, owned = [], []
    for _, path in git.status_entries(repo_root):
        (owned if matches_any(path, runner_owned_globs) else dirty).append(path)
    return dirty, owned


def run_preflight(
    config: TickgovConfig, repo_root: Path, workspace: Path, state: WorkspaceState
) -> PreflightResult:
    """Check that a tick can safely start.

    Checks, in order: git repository, clean worktree, readable HEAD,
    crash-artifact cleanup, milestone budget caps. Runner-owned files
    that are already dirty do not block the tick; their content is
    snapshotted so the judge can detect builder changes to them and
    rollback can put them back.

    Returns:
        PreflightResult with the base commit, or the blocked code
    """
    if config.runner.require_git and not git.is_git_repo(repo_root):
        return _blocked(codes.BLOCKED_MISSING_CONFIG, f"{repo_root} is not inside a git repository")

    try:
        dirty, owned_dirty = split_dirty(repo_root, config.runner.runner_owned_globs)
    except GitError as e:
        return _blocked(codes.BLOCKED_MISSING_CONFIG, f"git status failed: {e}")
    if dirty:
        shown = ", ".join(dirty[:10]) + (f" (+{len(dirty) - 10} more)" if len(dirty) > 10 else "")
        return _blocked(codes.BLOCKED_DIRTY_WORKTREE, f"Uncommitted changes: {shown}")

    try:
        base_commit = git.head_commit(repo_root)
    except GitError as e:
        return _blocked(codes.BLOCKED_MISSING_CONFIG, f"Cannot resolve HEAD (no commits?): {e}")

    warnings = []
    removed = cleanup_tmp_files(workspace, config.runner.crash_cleanup.delete_tmp_suffix)
    if removed:
        warnings.append(f"Removed {len(removed)} leftover temp file(s) from a previous crash")
        logger.info("Removed crash artifacts: %s", ", ".join(p.name for p in removed))

    exhausted = exhausted_budgets(state.budgets, config.budgets)
    if exhausted:
        return _blocked(
            codes.BLOCKED_BUDGET_CAP,
            f"Milestone {state.milestone_id or '-'} budget exhausted: {', '.join(exhausted)}",
        )

    return PreflightResult(
        ok=True,
        base_commit=base_commit,
        warnings=warnings,
        runner_owned_dirty=owned_dirty,
        runner_owned_snapshot=snapshot_files(owned_dirty, repo_root),
    )
