"""Judge engine: policy checks over the working tree after a build.

Pure functions over git state. Each check returns a small result value
carrying the report code of the first violation; none of them mutate the
repository. The tick orchestrator calls them in a fixed order and rolls
back on the first failure.
"""

from dataclasses import dataclass, field
from pathlib import Path

from tickgov import codes, git
from tickgov.config import DiffLimitsConfig, ScopeConfig
from tickgov.globs import is_lockfile, matches_any, normalize_path
from tickgov.models import DiffLimits, Task, TaskScope
from tickgov.rollback import Snapshot, changed_files


@dataclass(frozen=True)
class Rename:
    old: str
    new: str


@dataclass
class TouchedFiles:
    """Files changed relative to the base commit.

    ``all`` is every path that exists after the change (modified, added,
    rename targets and untracked files); deletions are listed separately.
    ``paths`` adds deletions and rename sources: everything the change
    touched on either side.
    """

    modified: list[str] = field(default_factory=list)
    added: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    renamed: list[Rename] = field(default_factory=list)
    untracked: list[str] = field(default_factory=list)

    @property
    def tracked(self) -> list[str]:
        return _unique(
            self.modified + self.added + self.deleted + [r.new for r in self.renamed]
        )

    @property
    def all(self) -> list[str]:
        return _unique(
            self.modified + self.added + [r.new for r in self.renamed] + self.untracked
        )

    @property
    def paths(self) -> list[str]:
        return _unique(self.all + self.deleted + [r.old for r in self.renamed])

    @property
    def new_files(self) -> list[str]:
        return _unique(self.added + self.untracked + [r.new for r in self.renamed])

    @property
    def is_empty(self) -> bool:
        return not self.all and not self.deleted


@dataclass(frozen=True)
class BlastRadius:
    files_touched: int = 0
    lines_added: int = 0
    lines_deleted: int = 0
    new_files: int = 0

    @property
    def lines_changed(self) -> int:
        return self.lines_added + self.lines_deleted


@dataclass
class CheckResult:
    """Outcome of a single judge check.

    ``stop_code`` is None when ``ok``; ``violations`` lists offending paths
    where the check is path-based.
    """

    ok: bool
    stop_code: str | None = None
    reason: str = ""
    violations: list[str] = field(default_factory=list)


PASS = CheckResult(ok=True)


def _unique(paths: list[str]) -> list[str]:
    return list(dict.fromkeys(paths))


def parse_name_status(output: str) -> TouchedFiles:
    """Parse ``git diff --name-status -z`` output."""
    touched = TouchedFiles()
    fields = output.split("\0")
    i = 0
    while i < len(fields):
        status = fields[i]
        i += 1
        if not status:
            continue
        kind = status[0]
        if kind in "RC":
            old, new = fields[i], fields[i + 1]
            i += 2
            if kind == "R":
                touched.renamed.append(Rename(old=old, new=new))
            else:
                touched.added.append(new)
            continue
        path = fields[i]
        i += 1
        if kind == "A":
            touched.added.append(path)
        elif kind == "D":
            touched.deleted.append(path)
        else:
            # M, T (type change), U (unmerged)
            touched.modified.append(path)
    return touched


def get_touched_files(base_commit: str, cwd: Path) -> TouchedFiles:
    """Diff the working tree (tracked and untracked) against base_commit."""
    touched = parse_name_status(git.diff_name_status(base_commit, cwd))
    touched.untracked = git.untracked_files(cwd)
    return touched


def exclude_paths(touched: TouchedFiles, paths: set[str]) -> TouchedFiles:
    """Drop paths that were already dirty before the builder ran.

    A rename with one excluded end keeps the other end, as an addition or
    a deletion.
    """
    if not paths:
        return touched
    result = TouchedFiles(
        modified=[p for p in touched.modified if p not in paths],
        added=[p for p in touched.added if p not in paths],
        deleted=[p for p in touched.deleted if p not in paths],
        untracked=[p for p in touched.untracked if p not in paths],
    )
    for r in touched.renamed:
        if r.old in paths and r.new in paths:
            continue
        if r.old in paths:
            result.added.append(r.new)
        elif r.new in paths:
            result.deleted.append(r.old)
        else:
            result.renamed.append(r)
    return result


def parse_numstat(output: str) -> tuple[int, int]:
    """Sum added/deleted lines from ``git diff --numstat -z`` output.

    Binary files (``-`` counts) contribute zero lines.
    """
    added = deleted = 0
    fields = output.split("\0")
    i = 0
    while i < len(fields):
        record = fields[i]
        i += 1
        if not record:
            continue
        parts = record.split("\t", 2)
        if len(parts) < 3:
            continue
        if parts[2] == "":
            # Rename: the old and new paths follow as separate fields
            i += 2
        if parts[0].isdigit():
            added += int(parts[0])
        if parts[1].isdigit():
            deleted += int(parts[1])
    return added, deleted


def _count_lines(path: Path) -> int:
    try:
        with open(path, "rb") as f:
            data = f.read()
    except (IsADirectoryError, FileNotFoundError, PermissionError):
        return 0
    if b"\0" in data[:8192]:
        return 0
    return data.count(b"\n") + (1 if data and not data.endswith(b"\n") else 0)


def compute_blast_radius(base_commit: str, touched: TouchedFiles, cwd: Path) -> BlastRadius:
    """Measure the size of the change.

    Tracked line counts come from git numstat; untracked files count every
    line as added.
    """
    added, deleted = parse_numstat(git.diff_numstat(base_commit, cwd))
    added += sum(_count_lines(cwd / path) for path in touched.untracked)
    return BlastRadius(
        files_touched=len(touched.all) + len(touched.deleted),
        lines_added=added,
        lines_deleted=deleted,
        new_files=len(touched.new_files),
    )


def resolve_scope(task: Task, scope_config: ScopeConfig) -> TaskScope:
    """Task scope, or the configured defaults when the planner omitted it.

    Configured default forbidden globs always apply on top of the task's.
    """
    if task.scope is None:
        return TaskScope(
            allowed_globs=list(scope_config.default_allowed_globs),
            forbidden_globs=list(scope_config.default_forbidden_globs),
            allow_new_files=scope_config.default_allow_new_files,
            allow_lockfile_changes=scope_config.default_allow_lockfile_changes,
        )
    forbidden = _unique(task.scope.forbidden_globs + scope_config.default_forbidden_globs)
    return TaskScope(
        allowed_globs=list(task.scope.allowed_globs),
        forbidden_globs=forbidden,
        allow_new_files=task.scope.allow_new_files,
        allow_lockfile_changes=task.scope.allow_lockfile_changes,
    )


def resolve_limits(task: Task | None, limits_config: DiffLimitsConfig) -> DiffLimits:
    if task is not None and task.diff_limits is not None:
        return task.diff_limits
    return DiffLimits(
        max_files_touched=limits_config.default_max_files_touched,
        max_lines_changed=limits_config.default_max_lines_changed,
    )


def _violation(code: str, paths: list[str], what: str) -> CheckResult:
    return CheckResult(
        ok=False,
        stop_code=code,
        reason=f"{what}: {', '.join(paths)}",
        violations=paths,
    )


def check_scope_violations(
    touched: TouchedFiles,
    task_scope: TaskScope,
    scope_config: ScopeConfig,
    runner_owned_globs: list[str],
) -> CheckResult:
    """Check touched paths against scope policy.

    Rules are evaluated in order and the first violated rule decides the
    stop code:
      1. runner-owned paths are always forbidden
      2. forbidden globs deny, even when an allowed glob also matches
      3. with a non-empty allow list, every path must match it
      4. lockfiles require allow_lockfile_changes
      5. new files require allow_new_files

    Deleted files and rename sources count as touched for every rule
    except the new-file rule, so moving a protected file out of place is a
    violation.
    """
    paths = _unique([normalize_path(p) for p in touched.paths])

    owned = [p for p in paths if matches_any(p, runner_owned_globs)]
    if owned:
        return _violation(codes.STOP_RUNNER_OWNED_MUTATION, owned, "Files match runner-owned globs")

    forbidden = [p for p in paths if matches_any(p, task_scope.forbidden_globs)]
    if forbidden:
        return _violation(
            codes.STOP_SCOPE_VIOLATION_FORBIDDEN, forbidden, "Files match forbidden glob patterns"
        )

    if task_scope.allowed_globs:
        outside = [p for p in paths if not matches_any(p, task_scope.allowed_globs)]
        if outside:
            return _violation(
                codes.STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED,
                outside,
                "Files do not match any allowed glob pattern",
            )

    if not task_scope.allow_lockfile_changes:
        lockfiles = [p for p in paths if is_lockfile(p, scope_config.lockfiles)]
        if lockfiles:
            return _violation(
                codes.STOP_LOCKFILE_CHANGE_FORBIDDEN, lockfiles, "Lockfile changes are not allowed"
            )

    if not task_scope.allow_new_files:
        new_files = [normalize_path(p) for p in touched.new_files]
        if new_files:
            return _violation(
                codes.STOP_SCOPE_VIOLATION_NEW_FILE, new_files, "New files are not allowed"
            )

    return PASS


def check_runner_owned_unchanged(snapshot: Snapshot, cwd: Path) -> CheckResult:
    """Fail when a runner-owned file that was dirty before the build changed.

    Such files are left out of the diff against the base commit, so their
    content is compared with the preflight snapshot instead.
    """
    changed = changed_files(snapshot, cwd)
    if changed:
        return _violation(
            codes.STOP_RUNNER_OWNED_MUTATION, changed, "Runner-owned files changed during the build"
        )
    return PASS


def check_diff_limits(blast: BlastRadius, limits: DiffLimits) -> CheckResult:
    """Fail when files touched or lines changed exceed the limits."""
    reasons = []
    if blast.files_touched > limits.max_files_touched:
        reasons.append(
            f"files touched {blast.files_touched} exceeds limit {limits.max_files_touched}"
        )
    if blast.lines_changed > limits.max_lines_changed:
        reasons.append(
            f"lines changed {blast.lines_changed} exceeds limit {limits.max_lines_changed}"
        )
    if reasons:
        return CheckResult(ok=False, stop_code=codes.STOP_DIFF_TOO_LARGE, reason="; ".join(reasons))
    return PASS


def check_head_moved(expected_base_commit: str, cwd: Path) -> CheckResult:
    """Detect HEAD moving between tick start and judge time."""
    current = git.head_commit(cwd)
    if current != expected_base_commit:
        return CheckResult(
            ok=False,
            stop_code=codes.STOP_HEAD_MOVED,
            reason=f"HEAD moved from {expected_base_commit[:12]} to {current[:12]} during the tick",
        )
    return PASS


def check_side_effects(task_kind: str, touched: TouchedFiles) -> CheckResult:
    """Question and verify-only tasks must not touch any file."""
    if task_kind not in ("question", "verify_only") or touched.is_empty:
        return PASS
    paths = touched.paths
    code = (
        codes.STOP_QUESTION_SIDE_EFFECTS
        if task_kind == "question"
        else codes.STOP_VERIFY_ONLY_SIDE_EFFECTS
    )
    return _violation(code, paths, f"A {task_kind} task must not modify files")
