"""Thin git wrappers.

All git access goes through ``run_git``, which runs git with an argv list
(no shell) in the repository root and raises GitError on failure.
"""

import subprocess
from pathlib import Path

from tickgov.errors import GitError


def run_git(args: list[str], cwd: Path, check: bool = True) -> subprocess.CompletedProcess:
    """Run a git command.

    Args:
        args: Arguments after ``git``
        cwd: Repository root
        check: Raise GitError on a non-zero exit

    Returns:
        The completed process with text stdout/stderr
    """
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
    )
    if check and result.returncode != 0:
        raise GitError(args, result.returncode, result.stderr)
    return result


def is_git_repo(cwd: Path) -> bool:
    try:
        result = run_git(["rev-parse", "--is-inside-work-tree"], cwd, check=False)
    except FileNotFoundError:
        return False
    return result.returncode == 0 and result.stdout.strip() == "true"


def head_commit(cwd: Path) -> str:
    return run_git(["rev-parse", "HEAD"], cwd).stdout.strip()


def current_branch(cwd: Path) -> str | None:
    """Current branch name, or None on a detached HEAD."""
    result = run_git(["symbolic-ref", "--quiet", "--short", "HEAD"], cwd, check=False)
    return result.stdout.strip() or None


def status_entries(cwd: Path) -> list[tuple[str, str]]:
    """(XY status, path) pairs from porcelain status, untracked files expanded.

    Uses NUL-separated output so unusual file names need no unquoting.
    For renames the new path is reported.
    """
    output = run_git(
        ["status", "--porcelain", "-z", "--untracked-files=all"], cwd
    ).stdout
    fields = output.split("\0")
    entries = []
    i = 0
    while i < len(fields):
        item = fields[i]
        i += 1
        if len(item) < 4:
            continue
        code, path = item[:2], item[3:]
        if code[0] in "RC":
            i += 1  # skip the original path
        entries.append((code, path))
    return entries


def untracked_files(cwd: Path) -> list[str]:
    return [path for code, path in status_entries(cwd) if code == "??"]


def diff_name_status(base: str, cwd: Path) -> str:
    """Name-status of tracked changes between base and the working tree."""
    return run_git(["diff", "--name-status", "-z", "-M", base], cwd).stdout


def diff_numstat(base: str, cwd: Path) -> str:
    return run_git(["diff", "--numstat", "-z", "-M", base], cwd).stdout


def diff_patch(base: str, cwd: Path) -> str:
    """Full unified diff of tracked changes against base."""
    return run_git(["diff", base], cwd).stdout


def commit_paths(paths: list[str], message: str, cwd: Path) -> str:
    """Stage exactly the given paths (including deletions) and commit.

    Returns:
        The new HEAD commit
    """
    run_git(["add", "-A", "--", *paths], cwd)
    run_git(["commit", "-m", message], cwd)
    return head_commit(cwd)


def branch_exists(name: str, cwd: Path) -> bool:
    result = run_git(["show-ref", "--verify", "--quiet", f"refs/heads/{name}"], cwd, check=False)
    return result.returncode == 0


def checkout(name: str, cwd: Path, create_from: str | None = None) -> None:
    """Switch to branch ``name``, creating it from ``create_from`` when given."""
    if create_from is None:
        run_git(["checkout", name], cwd)
    else:
        run_git(["checkout", "-b", name, create_from], cwd)
