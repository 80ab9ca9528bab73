"""Runner-owned work branches.

When ``git.branching.mode`` is not ``off``, the tick moves HEAD onto a
branch named from a template before the builder runs, so accepted work
lands there instead of on whatever the operator had checked out:

    per_tick       a fresh branch per building tick (collisions get -1, -2, ...)
    per_n_tasks    one branch per batch of ``n_tasks`` ticks
    per_milestone  one branch per milestone

Branches of the last two modes are reused when they already exist.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from tickgov import git
from tickgov.config import BranchingConfig
from tickgov.errors import GitError
from tickgov.models import Task

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES = {
    "per_tick": "tickgov/{{task_id}}",
    "per_n_tasks": "tickgov/batch-{{seq}}",
    "per_milestone": "tickgov/{{milestone_id}}",
}
FALLBACK_NAME = "tickgov/branch"
MAX_SUFFIX = 100

# Both {{name}} and {name} are accepted
_PLACEHOLDER = re.compile(r"\{\{?(\w+)\}?\}")
_INVALID_CHARS = re.compile(r"[^A-Za-z0-9/_.-]")


@dataclass
class BranchResult:
    """Outcome of ensure_branch().

    Attributes:
        ok: HEAD is on the branch
        name: Branch name
        existed: The branch existed before this call
        switched: HEAD moved to a different branch
        error: Failure detail when not ok
    """

    ok: bool
    name: str = ""
    existed: bool = False
    switched: bool = False
    error: str | None = None


def expand_template(template: str, params: dict[str, Any]) -> str:
    """Substitute placeholders; unknown or missing ones become empty."""

    def substitute(match: re.Match) -> str:
        value = params.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(substitute, template)


def sanitize_branch_name(name: str) -> str:
    """Make ``name`` acceptable to ``git check-ref-format``."""
    name = _INVALID_CHARS.sub("-", name)
    name = re.sub(r"\.{2,}", ".", name)
    name = re.sub(r"/+", "/", name)
    name = "/".join(part.strip(".-") for part in name.split("/"))
    name = re.sub(r"/+", "/", name).strip("/")
    if name.endswith(".lock"):
        name = name[: -len(".lock")]
    return name or FALLBACK_NAME


def branch_params(config: BranchingConfig, task: Task, run_id: str, tick_count: int) -> dict[str, Any]:
    """Template parameters for a tick; ``tick_count`` is 1-based."""
    seq = (tick_count - 1) // config.n_tasks if config.n_tasks > 0 else 0
    return {
        "task_id": task.task_id,
        "milestone_id": task.milestone_id,
        "run_id": run_id,
        "tick_count": tick_count,
        "seq": seq,
        "batch_index": seq,
        "YYYYMMDD": datetime.now().strftime("%Y%m%d"),
    }


def branch_name(config: BranchingConfig, params: dict[str, Any]) -> str:
    template = config.name_template or DEFAULT_TEMPLATES.get(config.mode, FALLBACK_NAME)
    return sanitize_branch_name(expand_template(template, params))


def _available_name(base: str, cwd: Path) -> str:
    if not git.branch_exists(base, cwd):
        return base
    for i in range(1, MAX_SUFFIX + 1):
        candidate = f"{base}-{i}"
        if not git.branch_exists(candidate, cwd):
            return candidate
    return f"{base}-{int(datetime.now().timestamp())}"


def ensure_branch(config: BranchingConfig, params: dict[str, Any], cwd: Path) -> BranchResult:
    """Put HEAD on the branch this tick should build on.

    Args:
        config: Branching settings (mode must not be ``off``)
        params: Template parameters from branch_params()
        cwd: Repository root

    Returns:
        BranchResult; git failures are reported, not raised
    """
    name = branch_name(config, params)
    try:
        current = git.current_branch(cwd)
        if current == name:
            return BranchResult(ok=True, name=name, existed=True)

        if config.mode == "per_tick":
            name = _available_name(name, cwd)
        existed = git.branch_exists(name, cwd)
        if existed:
            git.checkout(name, cwd)
        else:
            git.checkout(name, cwd, create_from=config.base_ref)
    except (GitError, OSError) as e:
        logger.error("Cannot switch to branch %s: %s", name, e)
        return BranchResult(ok=False, name=name, error=str(e))

    logger.info("[BRANCH] %s branch %s", "Switched to" if existed else "Created", name)
    return BranchResult(ok=True, name=name, existed=existed, switched=True)
