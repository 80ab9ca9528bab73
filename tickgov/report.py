"""Tick reports and workspace artifacts.

REPORT.json is the canonical outcome of a tick and is written for every
tick. REPORT.md is a truncated Markdown rendering, BLOCKED.json exists only
while the last verdict is ``blocked``, and ``history/<run_id>/`` keeps a
snapshot per tick. Everything but REPORT.json is best-effort.
"""

import logging
import shutil
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tickgov import codes
from tickgov.atomic_io import atomic_write_json, atomic_write_text
from tickgov.config import TickgovConfig
from tickgov.judge import BlastRadius
from tickgov.models import Question, Task
from tickgov.state import BudgetCounts, TokenUsage
from tickgov.verify import VerificationRun

logger = logging.getLogger(__name__)

REPORT_JSON = "REPORT.json"
REPORT_MD = "REPORT.md"
BLOCKED_JSON = "BLOCKED.json"
DIFF_PATCH = "diff.patch"
VERIFY_LOG = "verify.log"
TRUNCATION_MARKER = "\n\n... (truncated)\n"

REMEDIATION: dict[str, str] = {
    codes.BLOCKED_MISSING_CONFIG: (
        "Create or fix tickgov.json in the repository root (run `tickgov init`) "
        "and make sure the tick runs inside a git repository."
    ),
    codes.BLOCKED_DIRTY_WORKTREE: (
        "Commit or stash all uncommitted changes and remove untracked files. "
        "The worktree must be clean before running a tick."
    ),
    codes.BLOCKED_LOCK_HELD: (
        "Another tick holds the lock. Wait for it to finish, or if that process "
        "crashed, run `tickgov unlock`."
    ),
    codes.BLOCKED_CRASH_RECOVERY_REQUIRED: (
        "The lock file is corrupt. Inspect it, then delete it (or run `tickgov unlock`)."
    ),
    codes.BLOCKED_BUDGET_CAP: (
        "A milestone budget cap was reached. Raise the cap in tickgov.json or "
        "move the planner to a new milestone."
    ),
    codes.BLOCKED_ROLLBACK_FAILED: (
        "Rolling back the builder's changes failed. The worktree may contain "
        "partial changes; inspect `git status` and restore it by hand."
    ),
    codes.BLOCKED_ROLLBACK_DIRTY: (
        "The worktree is still dirty after rollback. Inspect `git status`, "
        "clean it by hand and retry."
    ),
    codes.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID: (
        "The planner returned invalid output after all retries. Check the "
        "diagnostics and the planner prompt."
    ),
    codes.BLOCKED_TRANSPORT_STALLED: (
        "The agent transport stalled (connection stall, reset or timeout). "
        "Check connectivity and API status, then retry. Quote the request id "
        "when reporting the issue."
    ),
    codes.BLOCKED_BUILDER_COMMAND_NOT_FOUND: (
        "The external builder command was not found on PATH or is not "
        "executable. Fix builder.external.command."
    ),
    codes.BLOCKED_BUILDER_MODE_NOT_ALLOWED: (
        "The planner asked for patch mode but builder.allow_patch_mode is false."
    ),
    codes.BLOCKED_BRANCH_FAILED: (
        "Switching to the work branch failed. Check git.branching.base_ref "
        "and name_template, and that the branch can be checked out."
    ),
    codes.BLOCKED_COMMIT_FAILED: (
        "Committing the accepted change failed. Check the git identity "
        "(user.name, user.email) and commit hooks, then retry."
    ),
}


@dataclass
class ScopeSummary:
    ok: bool = True
    violations: list[str] = field(default_factory=list)
    touched_paths: list[str] = field(default_factory=list)


@dataclass
class DiffSummary:
    files_changed: int = 0
    lines_changed: int = 0
    diff_patch_path: str | None = None


@dataclass
class VerificationSummary:
    exec_mode: str = "argv_no_shell"
    runs: list[VerificationRun] = field(default_factory=list)
    verify_log_path: str | None = None


@dataclass
class BudgetSummary:
    milestone_id: str | None = None
    ticks: int = 0
    orchestrator_calls: int = 0
    builder_calls: int = 0
    verify_runs: int = 0
    estimated_cost_usd: float = 0.0
    warnings: list[str] = field(default_factory=list)

    @classmethod
    def from_counts(
        cls, milestone_id: str | None, counts: BudgetCounts, warnings: list[str]
    ) -> "BudgetSummary":
        return cls(milestone_id=milestone_id, warnings=list(warnings), **asdict(counts))


@dataclass
class Report:
    """Durable outcome of one tick (REPORT.json)."""

    run_id: str
    started_at: str
    ended_at: str
    duration_ms: int
    base_commit: str | None
    head_commit: str | None
    task: dict[str, Any] | None
    verdict: str
    code: str
    reason: str = ""
    branch: str | None = None
    blast_radius: BlastRadius = field(default_factory=BlastRadius)
    scope: ScopeSummary = field(default_factory=ScopeSummary)
    diff: DiffSummary = field(default_factory=DiffSummary)
    verification: VerificationSummary = field(default_factory=VerificationSummary)
    budgets: BudgetSummary = field(default_factory=BudgetSummary)
    usage: TokenUsage = field(default_factory=TokenUsage)
    escalation: str = "none"
    risk_flags: list[str] = field(default_factory=list)
    reviewer_error: str | None = None
    question: Question | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["usage"] = self.usage.to_dict()
        data["verification"]["runs"] = [run.to_dict() for run in self.verification.runs]
        for key in ("branch", "reviewer_error", "question"):
            if data[key] is None:
                del data[key]
        return data


def task_summary(task: Task | None) -> dict[str, Any] | None:
    if task is None:
        return None
    return {
        "task_id": task.task_id,
        "milestone_id": task.milestone_id,
        "task_kind": task.task_kind,
        "intent": task.intent,
    }


def build_report(
    *,
    run_id: str,
    started_at: datetime,
    code: str,
    reason: str = "",
    base_commit: str | None = None,
    head_commit: str | None = None,
    task: Task | None = None,
    **details: Any,
) -> Report:
    """Assemble a Report; the verdict is derived from the code.

    Extra keyword arguments set the remaining Report fields.
    """
    ended = datetime.now(timezone.utc)
    return Report(
        run_id=run_id,
        started_at=started_at.isoformat(),
        ended_at=ended.isoformat(),
        duration_ms=int((ended - started_at).total_seconds() * 1000),
        base_commit=base_commit,
        head_commit=head_commit,
        task=task_summary(task),
        verdict=codes.verdict_for(code),
        code=code,
        reason=reason,
        **details,
    )


# =============================================================================
# MARKDOWN
# =============================================================================


def render_markdown(report: Report) -> str:
    """Render a report as Markdown."""
    lines = [
        "# Tick Report",
        "",
        "## Summary",
        "",
        f"- **Run ID**: {report.run_id}",
        f"- **Started**: {report.started_at}",
        f"- **Ended**: {report.ended_at}",
        f"- **Duration**: {report.duration_ms}ms",
        f"- **Verdict**: {report.verdict.upper()} ({report.code})",
        f"- **Base Commit**: {report.base_commit or '-'}",
        f"- **Head Commit**: {report.head_commit or '-'}",
    ]
    if report.branch:
        lines.append(f"- **Branch**: {report.branch}")
    if report.reason:
        lines.append(f"- **Reason**: {report.reason}")
    if report.escalation != "none":
        lines.append(f"- **Escalation**: {report.escalation} ({', '.join(report.risk_flags)})")
    lines.append("")

    if report.task:
        lines += [
            "## Task",
            "",
            f"- **Task ID**: {report.task['task_id']}",
            f"- **Milestone**: {report.task['milestone_id']}",
            f"- **Kind**: {report.task['task_kind']}",
            f"- **Intent**: {report.task['intent']}",
            "",
        ]

    if report.question:
        lines += ["## Question", "", report.question.prompt]
        for choice in report.question.choices or []:
            lines.append(f"  - {choice}")
        lines.append("")

    br = report.blast_radius
    lines += [
        "## Blast Radius",
        "",
        f"- **Files Touched**: {br.files_touched}",
        f"- **Lines Added**: {br.lines_added}",
        f"- **Lines Deleted**: {br.lines_deleted}",
        f"- **New Files**: {br.new_files}",
        "",
        "## Scope",
        "",
    ]
    if report.scope.ok:
        lines.append("OK, no violations")
    else:
        lines.append("**Violations**:")
        lines += [f"  - {v}" for v in report.scope.violations]
    if report.scope.touched_paths:
        lines += ["", "**Touched Paths**:"]
        lines += [f"  - {p}" for p in report.scope.touched_paths]
    lines += ["", "## Verification", ""]

    if not report.verification.runs:
        lines.append("No verification runs.")
    else:
        lines.append("| Template ID | Phase | Exit Code | Duration (ms) |")
        lines.append("|-------------|-------|-----------|---------------|")
        for run in report.verification.runs:
            status = "TIMEOUT" if run.timed_out else ("ok" if run.exit_code == 0 else "fail")
            lines.append(
                f"| {run.template_id} | {run.phase} | {status} {run.exit_code} | {run.duration_ms} |"
            )
        if report.verification.verify_log_path:
            lines += ["", f"**Log**: {report.verification.verify_log_path}"]

    b = report.budgets
    lines += [
        "",
        "## Budgets",
        "",
        f"- **Milestone**: {b.milestone_id or '-'}",
        f"- **Ticks**: {b.ticks}",
        f"- **Orchestrator Calls**: {b.orchestrator_calls}",
        f"- **Builder Calls**: {b.builder_calls}",
        f"- **Verification Runs**: {b.verify_runs}",
        f"- **Estimated Cost**: ${b.estimated_cost_usd:.4f}",
    ]
    if b.warnings:
        lines += ["", "**Warnings**:"]
        lines += [f"  - {w}" for w in b.warnings]
    if report.reviewer_error:
        lines += ["", f"**Reviewer error**: {report.reviewer_error}"]
    return "\n".join(lines) + "\n"


def truncate_markdown(text: str, max_chars: int) -> str:
    if max_chars <= 0 or len(text) <= max_chars:
        return text
    keep = max(0, max_chars - len(TRUNCATION_MARKER))
    return text[:keep] + TRUNCATION_MARKER


# =============================================================================
# WRITERS
# =============================================================================


def write_report(report: Report, workspace: Path, config: TickgovConfig) -> None:
    """Write REPORT.json, then REPORT.md if enabled.

    REPORT.json errors propagate. The Markdown rendering never fails the
    tick; a failure is logged and REPORT.md is left as it was.
    """
    atomic_write_json(workspace / REPORT_JSON, report.to_dict())

    md_config = config.runner.render_report_md
    if not md_config.enabled:
        return
    try:
        text = truncate_markdown(render_markdown(report), md_config.max_chars)
        atomic_write_text(workspace / REPORT_MD, text)
    except Exception as e:
        logger.warning("Failed to render %s: %s", REPORT_MD, e)


def read_last_report_md(workspace: Path, max_chars: int = 0) -> str:
    try:
        text = (workspace / REPORT_MD).read_text(encoding="utf-8")
    except OSError:
        return ""
    return truncate_markdown(text, max_chars)


def build_blocked_data(
    code: str, reason: str, diagnostics: dict[str, Any] | None = None
) -> dict[str, Any]:
    """BLOCKED.json content with the remediation for the code."""
    data: dict[str, Any] = {
        "blocked_at": datetime.now(timezone.utc).isoformat(),
        "code": code,
        "reason": reason,
        "remediation": REMEDIATION.get(code, "No specific remediation available."),
    }
    if diagnostics:
        data["diagnostics"] = diagnostics
    return data


def write_blocked(workspace: Path, data: dict[str, Any]) -> None:
    atomic_write_json(workspace / BLOCKED_JSON, data)


def clear_blocked(workspace: Path) -> None:
    """Delete a stale BLOCKED.json (best-effort)."""
    try:
        (workspace / BLOCKED_JSON).unlink()
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Failed to delete %s: %s", BLOCKED_JSON, e)


def sync_blocked(
    report: Report, workspace: Path, diagnostics: dict[str, Any] | None = None
) -> None:
    """Make BLOCKED.json match the report's verdict."""
    if report.verdict == "blocked":
        write_blocked(workspace, build_blocked_data(report.code, report.reason, diagnostics))
    else:
        clear_blocked(workspace)


def history_dir(workspace: Path, config: TickgovConfig, run_id: str) -> Path:
    return workspace / config.history.dir / run_id


def write_history(
    report: Report,
    workspace: Path,
    config: TickgovConfig,
    diff_patch: str | None = None,
    verify_log: str | None = None,
) -> Path | None:
    """Snapshot this tick's artifacts under ``history/<run_id>/``.

    Best-effort: failures are logged and None is returned.
    """
    if not config.history.enabled:
        return None
    target = history_dir(workspace, config, report.run_id)
    try:
        target.mkdir(parents=True, exist_ok=True)
        shutil.copy2(workspace / REPORT_JSON, target / REPORT_JSON)
        if (workspace / REPORT_MD).exists() and config.runner.render_report_md.enabled:
            shutil.copy2(workspace / REPORT_MD, target / REPORT_MD)
        if diff_patch and config.history.include_diff_patch:
            atomic_write_text(target / DIFF_PATCH, diff_patch)
        if verify_log and config.history.include_verify_log:
            atomic_write_text(target / VERIFY_LOG, verify_log)
    except OSError as e:
        logger.warning("Failed to write history snapshot %s: %s", target, e)
        return None
    return target


def artifact_paths(
    config: TickgovConfig, run_id: str, diff_patch: str | None, verify_log: str | None
) -> tuple[str | None, str | None]:
    """Workspace-relative paths the history snapshot will use."""
    if not config.history.enabled:
        return None, None
    base = f"{config.history.dir}/{run_id}"
    diff_path = f"{base}/{DIFF_PATCH}" if diff_patch and config.history.include_diff_patch else None
    log_path = f"{base}/{VERIFY_LOG}" if verify_log and config.history.include_verify_log else None
    return diff_path, log_path
