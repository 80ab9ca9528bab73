"""Report codes and verdicts.

Every tick ends with exactly one report code. The verdict is derived from the
code's prefix: ``SUCCESS`` is a success, ``STOP_*`` a recoverable stop with a
clean working tree, and ``BLOCKED_*`` a condition requiring operator action.
"""

from typing import Literal

Verdict = Literal["success", "stop", "blocked"]

SUCCESS = "SUCCESS"

# Scope and blast radius
STOP_SCOPE_VIOLATION_FORBIDDEN = "STOP_SCOPE_VIOLATION_FORBIDDEN"
STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED = "STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED"
STOP_SCOPE_VIOLATION_NEW_FILE = "STOP_SCOPE_VIOLATION_NEW_FILE"
STOP_LOCKFILE_CHANGE_FORBIDDEN = "STOP_LOCKFILE_CHANGE_FORBIDDEN"
STOP_RUNNER_OWNED_MUTATION = "STOP_RUNNER_OWNED_MUTATION"
STOP_DIFF_TOO_LARGE = "STOP_DIFF_TOO_LARGE"
STOP_HEAD_MOVED = "STOP_HEAD_MOVED"

# Side effects of read-only task kinds
STOP_QUESTION_SIDE_EFFECTS = "STOP_QUESTION_SIDE_EFFECTS"
STOP_VERIFY_ONLY_SIDE_EFFECTS = "STOP_VERIFY_ONLY_SIDE_EFFECTS"

# Verification
STOP_VERIFY_TAINTED = "STOP_VERIFY_TAINTED"
STOP_VERIFY_FAILED_FAST = "STOP_VERIFY_FAILED_FAST"
STOP_VERIFY_FAILED_SLOW = "STOP_VERIFY_FAILED_SLOW"
STOP_VERIFY_FLAKY_OR_TIMEOUT = "STOP_VERIFY_FLAKY_OR_TIMEOUT"

# Builder
STOP_BUILDER_JSON_PARSE = "STOP_BUILDER_JSON_PARSE"
STOP_BUILDER_SCHEMA_INVALID = "STOP_BUILDER_SCHEMA_INVALID"
STOP_BUILDER_SHAPE_INVALID = "STOP_BUILDER_SHAPE_INVALID"
STOP_BUILDER_CLI_ERROR = "STOP_BUILDER_CLI_ERROR"
STOP_BUILDER_TIMEOUT = "STOP_BUILDER_TIMEOUT"
STOP_PATCH_INVALID_PATH = "STOP_PATCH_INVALID_PATH"
STOP_PATCH_SCOPE_VIOLATION = "STOP_PATCH_SCOPE_VIOLATION"
STOP_PATCH_SYMLINK = "STOP_PATCH_SYMLINK"
STOP_PATCH_APPLY_FAILED = "STOP_PATCH_APPLY_FAILED"

# Planner and reviewer
STOP_ORCHESTRATOR_ASK_QUESTION = "STOP_ORCHESTRATOR_ASK_QUESTION"
STOP_REDISPATCH_IDENTICAL_TASK = "STOP_REDISPATCH_IDENTICAL_TASK"
STOP_REVIEWER_FORCED_PATCH = "STOP_REVIEWER_FORCED_PATCH"
STOP_REVIEWER_ASK_QUESTION = "STOP_REVIEWER_ASK_QUESTION"

STOP_INTERRUPTED = "STOP_INTERRUPTED"

# Environment blocks
BLOCKED_LOCK_HELD = "BLOCKED_LOCK_HELD"
BLOCKED_CRASH_RECOVERY_REQUIRED = "BLOCKED_CRASH_RECOVERY_REQUIRED"
BLOCKED_MISSING_CONFIG = "BLOCKED_MISSING_CONFIG"
BLOCKED_DIRTY_WORKTREE = "BLOCKED_DIRTY_WORKTREE"
BLOCKED_BUDGET_CAP = "BLOCKED_BUDGET_CAP"
BLOCKED_ROLLBACK_FAILED = "BLOCKED_ROLLBACK_FAILED"
BLOCKED_ROLLBACK_DIRTY = "BLOCKED_ROLLBACK_DIRTY"
BLOCKED_ORCHESTRATOR_OUTPUT_INVALID = "BLOCKED_ORCHESTRATOR_OUTPUT_INVALID"
BLOCKED_TRANSPORT_STALLED = "BLOCKED_TRANSPORT_STALLED"
BLOCKED_BUILDER_COMMAND_NOT_FOUND = "BLOCKED_BUILDER_COMMAND_NOT_FOUND"
BLOCKED_BUILDER_MODE_NOT_ALLOWED = "BLOCKED_BUILDER_MODE_NOT_ALLOWED"
BLOCKED_BRANCH_FAILED = "BLOCKED_BRANCH_FAILED"
BLOCKED_COMMIT_FAILED = "BLOCKED_COMMIT_FAILED"

ALL_CODES: frozenset[str] = frozenset(
    value
    for name, value in dict(globals()).items()
    if name.isupper() and isinstance(value, str) and name == value
)


def verdict_for(code: str) -> Verdict:
    """Map a report code to its verdict.

    Args:
        code: A report code such as ``STOP_DIFF_TOO_LARGE``

    Returns:
        The verdict implied by the code's prefix

    Raises:
        ValueError: If the code is not a known report code
    """
    if code not in ALL_CODES:
        raise ValueError(f"Unknown report code: {code}")
    if code == SUCCESS:
        return "success"
    if code.startswith("STOP_"):
        return "stop"
    return "blocked"
