"""Tick orchestrator.

Runs one governed tick as a state machine:

    LOCK -> PREFLIGHT -> ORCHESTRATE -> BUILD -> JUDGE -> REPORT -> END

Each phase either hands over to the next one or ends the tick with a report
code. Every policy violation after the builder may have touched the tree
goes through rollback-with-clean-check; a failed rollback turns the stop
into a block. Whatever happens, a REPORT.json is written and the lock is
released. Cancellation ends the tick with STOP_INTERRUPTED; any other
exception also writes that report and is then re-raised.
"""

import asyncio
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Iterator

from opentelemetry import trace

from tickgov import codes, git, telemetry
from tickgov.branching import branch_params, ensure_branch
from tickgov.builder import map_builder_failure, run_builder
from tickgov.config import TickgovConfig
from tickgov.errors import GitError, LockCorruptError, LockHeldError, TickInterrupted
from tickgov.fingerprint import fingerprint
from tickgov.globs import matches_any, normalize_path
from tickgov.invoker import AgentInvoker
from tickgov.judge import (
    BlastRadius,
    TouchedFiles,
    check_diff_limits,
    check_head_moved,
    check_runner_owned_unchanged,
    check_scope_violations,
    check_side_effects,
    compute_blast_radius,
    exclude_paths,
    get_touched_files,
    resolve_limits,
    resolve_scope,
)
from tickgov.lock import TickLock
from tickgov.models import Question, Task
from tickgov.planner import PlannerContext, request_task
from tickgov.preflight import run_preflight
from tickgov.report import (
    BudgetSummary,
    DiffSummary,
    Report,
    ScopeSummary,
    VerificationSummary,
    artifact_paths,
    build_report,
    read_last_report_md,
    sync_blocked,
    write_history,
    write_report,
)
from tickgov.reviewer import run_reviewer_if_needed
from tickgov.risk import compute_risk_flags, should_escalate
from tickgov.rollback import BlockedOutcome, Snapshot, perform_rollback_with_clean_check
from tickgov.state import (
    TickPhase,
    TickState,
    TokenUsage,
    WorkspaceState,
    add_error,
    add_usage,
    append_stop_history,
    apply_deltas,
    budget_warnings,
    compute_budget_warning,
    create_initial_state,
    ensure_milestone,
    record_task_failure,
    reset_failure_streak,
    set_base_commit,
    set_builder_result,
    set_task,
    transition_phase,
)
from tickgov.verify import VerificationRun, run_verifications

logger = logging.getLogger(__name__)

READ_ONLY_KINDS = ("question", "verify_only")

# Outcomes that neither extend nor reset the failure streak
NEUTRAL_CODES = frozenset(
    {
        codes.STOP_ORCHESTRATOR_ASK_QUESTION,
        codes.STOP_REVIEWER_ASK_QUESTION,
        codes.STOP_INTERRUPTED,
    }
)


@dataclass
class Ending:
    """How a tick ends: report code, reason and optional BLOCKED diagnostics."""

    code: str
    reason: str = ""
    diagnostics: dict[str, Any] | None = None


@dataclass
class TickOutcome:
    """Result of one tick.

    Attributes:
        report: The persisted report
        usage: Token usage of every agent call in the tick
        state: Final TickState
        workspace_state: Workspace state after the tick
        orchestrator_stop: The planner signalled that the milestone is done
    """

    report: Report
    usage: TokenUsage
    state: TickState
    workspace_state: WorkspaceState
    orchestrator_stop: bool = False


@dataclass
class _Findings:
    """What the tick learned on the way; feeds the report and budgets."""

    orchestrator_calls: int = 0
    reviewer_calls: int = 0
    builder_calls: int = 0
    verify_runs: int = 0
    rollbacks: int = 0
    touched: TouchedFiles | None = None
    blast: BlastRadius = field(default_factory=BlastRadius)
    scope: ScopeSummary = field(default_factory=ScopeSummary)
    runs: list[VerificationRun] = field(default_factory=list)
    verify_log: str = ""
    diff_patch: str = ""
    escalation: str = "none"
    risk_flags: list[str] = field(default_factory=list)
    reviewer_error: str | None = None
    question: Question | None = None
    task_fingerprint: str | None = None
    orchestrator_stop: bool = False
    branch: str | None = None
    runner_owned_dirty: set[str] = field(default_factory=set)
    runner_owned_snapshot: Snapshot = field(default_factory=dict)


class TickRunner:
    """Runs a single tick. Create one per tick."""

    def __init__(
        self,
        config: TickgovConfig,
        repo_root: Path,
        invoker: AgentInvoker,
        cancel: threading.Event | None = None,
        tracer: trace.Tracer | None = None,
    ) -> None:
        self.config = config
        self.repo_root = repo_root
        self.workspace = config.workspace_path(repo_root)
        self.invoker = invoker
        self.cancel = cancel
        self.tracer = tracer or trace.get_tracer(__name__)
        self.lock = TickLock(self.workspace / config.runner.lockfile)
        self.state = create_initial_state()
        self.workspace_state = WorkspaceState()
        self.findings = _Findings()

    async def run(self) -> TickOutcome:
        self.workspace.mkdir(parents=True, exist_ok=True)
        with self.tracer.start_as_current_span("tickgov.tick") as span:
            span.set_attribute("tick.run_id", self.state.run_id)
            outcome = await self._run_locked()
            span.set_attribute("tick.verdict", outcome.report.verdict)
            span.set_attribute("tick.code", outcome.report.code)
            span.set_attribute("tick.cost_usd", outcome.usage.cost_usd)
            span.set_attribute("tick.total_tokens", outcome.usage.total_tokens)
        _record_metrics(outcome.report, self.findings, outcome.usage)
        return outcome

    # -------------------------------------------------------------------------
    # LOCK and top-level handling
    # -------------------------------------------------------------------------

    async def _run_locked(self) -> TickOutcome:
        try:
            self.lock.acquire()
        except LockHeldError as e:
            logger.warning("Lock held: %s", e)
            # The holder owns the workspace; write nothing
            return self._finish(
                Ending(codes.BLOCKED_LOCK_HELD, str(e), {"holder": e.holder}),
                write_artifacts=False,
            )
        except LockCorruptError as e:
            logger.error("Lock corrupt: %s", e)
            return self._finish(
                Ending(
                    codes.BLOCKED_CRASH_RECOVERY_REQUIRED,
                    str(e),
                    {"lock_path": e.path, "detail": e.detail},
                ),
                persist_state=False,
            )

        try:
            self.workspace_state = WorkspaceState.load(self.workspace)
            ending = await self._run_phases()
            return self._finish(ending)
        except (TickInterrupted, KeyboardInterrupt, asyncio.CancelledError) as e:
            logger.warning("Tick %s interrupted during %s", self.state.run_id, self.state.phase.value)
            return self._finish(self._interrupted(str(e) or type(e).__name__))
        except Exception as e:
            logger.exception("Tick %s failed during %s", self.state.run_id, self.state.phase.value)
            try:
                self._finish(self._interrupted(f"{type(e).__name__}: {e}"))
            except Exception:
                logger.exception("Failed to persist the interrupted report")
            raise
        finally:
            self.state = transition_phase(self.state, TickPhase.END)
            self.lock.release()
            logger.info("[END] Lock released")

    def _interrupted(self, reason: str) -> Ending:
        """Ending for an aborted tick; rolls back if the builder may have run."""
        self.state = add_error(self.state, reason)
        if self.state.phase in (TickPhase.BUILD, TickPhase.JUDGE) and self.state.base_commit:
            try:
                blocked = self._rollback()
            except (GitError, OSError) as e:
                blocked = BlockedOutcome(codes.BLOCKED_ROLLBACK_FAILED, f"Rollback failed: {e}")
            if blocked is not None:
                return Ending(blocked.code, f"Interrupted ({reason}); {blocked.reason}")
        return Ending(codes.STOP_INTERRUPTED, reason)

    def _check_cancel(self) -> None:
        if self.cancel is not None and self.cancel.is_set():
            raise TickInterrupted("Stop requested")

    @contextmanager
    def _phase(self, phase: TickPhase) -> Iterator[None]:
        self._check_cancel()
        self.state = transition_phase(self.state, phase)
        logger.info("[%s] run %s", phase.value, self.state.run_id)
        with self.tracer.start_as_current_span(f"tickgov.{phase.value.lower()}"):
            yield

    async def _run_phases(self) -> Ending:
        with self._phase(TickPhase.PREFLIGHT):
            ending = self._preflight()
        if ending:
            return ending
        with self._phase(TickPhase.ORCHESTRATE):
            ending = await self._orchestrate() or self._branch()
        if ending:
            return ending
        with self._phase(TickPhase.BUILD):
            ending = await self._build()
        if ending:
            return ending
        with self._phase(TickPhase.JUDGE):
            return await self._judge()

    # -------------------------------------------------------------------------
    # PREFLIGHT
    # -------------------------------------------------------------------------

    def _preflight(self) -> Ending | None:
        result = run_preflight(self.config, self.repo_root, self.workspace, self.workspace_state)
        for warning in result.warnings:
            logger.warning("[PREFLIGHT] %s", warning)
        if not result.ok:
            return Ending(result.blocked_code or codes.BLOCKED_MISSING_CONFIG, result.blocked_reason)
        self.state = set_base_commit(self.state, result.base_commit)
        self.findings.runner_owned_dirty = set(result.runner_owned_dirty)
        self.findings.runner_owned_snapshot = result.runner_owned_snapshot
        logger.info("[PREFLIGHT] passed (base %s)", result.base_commit[:12])
        return None

    # -------------------------------------------------------------------------
    # ORCHESTRATE (planner, redispatch guard, reviewer gate)
    # -------------------------------------------------------------------------

    async def _orchestrate(self) -> Ending | None:
        ws = self.workspace_state
        context = PlannerContext(
            milestone_id=ws.milestone_id,
            last_verdict=ws.last_verdict,
            last_code=ws.last_code,
            last_report_md=self._last_report_md(),
        )
        outcome = await request_task(self.config, self.invoker, self.repo_root, context, self.cancel)
        self.findings.orchestrator_calls += outcome.calls
        self.state = add_usage(self.state, outcome.usage)
        if outcome.task is None:
            return Ending(
                outcome.blocked_code or codes.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID,
                outcome.reason,
                outcome.diagnostics,
            )

        task = outcome.task
        self.state = set_task(self.state, task)
        self.workspace_state = ensure_milestone(self.workspace_state, task.milestone_id)

        if task.is_stop_signal:
            self.findings.orchestrator_stop = True
            reason = task.control.reason if task.control and task.control.reason else "planner requested stop"
            logger.info("[ORCHESTRATE] Stop signal: %s", reason)
            return Ending(codes.SUCCESS, f"Planner stop: {reason}")

        self.findings.task_fingerprint = fingerprint(task)
        if ws.last_failed_fingerprint and self.findings.task_fingerprint == ws.last_failed_fingerprint:
            return Ending(
                codes.STOP_REDISPATCH_IDENTICAL_TASK,
                f"Planner re-proposed the task that failed last time ({task.task_id})",
            )

        if task.task_kind == "question":
            self.findings.question = task.question
        return await self._review_gate(task)

    def _branch(self) -> Ending | None:
        branching = self.config.git.branching
        task = self.state.task
        if branching.mode == "off" or task is None or not _will_build(task):
            return None
        params = branch_params(
            branching, task, self.state.run_id, self.workspace_state.total_ticks + 1
        )
        result = ensure_branch(branching, params, self.repo_root)
        if not result.ok:
            return Ending(
                codes.BLOCKED_BRANCH_FAILED,
                f"Cannot switch to branch {result.name}: {result.error}",
                {"branch": result.name, "mode": branching.mode},
            )
        self.findings.branch = result.name
        if result.switched:
            # Judge against the branch tip, not the commit preflight saw
            self.state = set_base_commit(self.state, git.head_commit(self.repo_root))
        return None

    def _last_report_md(self) -> str:
        return read_last_report_md(self.workspace, self.config.runner.render_report_md.max_chars)

    async def _review_gate(self, task: Task) -> Ending | None:
        if not _will_build(task):
            return None

        ws = self.workspace_state
        current_tick = ws.total_ticks + 1
        flags = compute_risk_flags(
            touched_paths=[],
            blast=None,
            limits=resolve_limits(task, self.config.diff_limits),
            scope=resolve_scope(task, self.config.scope),
            trigger=self.config.reviewer.trigger,
            stop_history=ws.stop_history,
            current_tick=current_tick,
            verify_failed=ws.last_code
            in (codes.STOP_VERIFY_FAILED_FAST, codes.STOP_VERIFY_FAILED_SLOW),
            budget_warning=ws.budget_warning,
        )
        mode = should_escalate(ws, self.config, current_tick, flags)
        self.findings.escalation = mode
        self.findings.risk_flags = list(flags)
        if mode == "human":
            logger.warning("Escalation to a human is due (flags: %s)", ", ".join(flags) or "none")
        if mode != "reviewer":
            return None

        with self.tracer.start_as_current_span("tickgov.review") as span:
            span.set_attribute("review.risk_flags", ", ".join(flags))
            outcome = await run_reviewer_if_needed(
                self.config,
                self.invoker,
                self.repo_root,
                task,
                list(flags),
                last_report_md=self._last_report_md(),
                cancel=self.cancel,
            )
        self.findings.reviewer_calls += outcome.calls
        self.findings.reviewer_error = outcome.reviewer_error
        self.state = add_usage(self.state, outcome.usage)
        if outcome.stop_code is None:
            return None
        if outcome.question is not None:
            self.findings.question = outcome.question
        return Ending(outcome.stop_code, outcome.reason or outcome.reviewer_error or "")

    # -------------------------------------------------------------------------
    # BUILD
    # -------------------------------------------------------------------------

    async def _build(self) -> Ending | None:
        task = self.state.task
        if task is None or not _will_build(task):
            logger.info("[BUILD] nothing to build for a %s task", task.task_kind if task else "missing")
            return None

        result = await run_builder(
            self.state,
            task,
            self.config,
            self.invoker,
            self.repo_root,
            self.workspace,
            self.cancel,
        )
        self.findings.builder_calls += result.calls
        self.state = add_usage(self.state, result.usage)
        self.state = set_builder_result(self.state, result.result)
        if result.success:
            if not result.builder_output_valid:
                self.state = add_error(
                    self.state,
                    f"Builder output invalid ({result.parse_error_kind}); judging the diff anyway",
                )
            return None

        code = map_builder_failure(result)
        return self._violation(code, result.error or "Builder failed", result.diagnostics)

    # -------------------------------------------------------------------------
    # JUDGE
    # -------------------------------------------------------------------------

    async def _judge(self) -> Ending:
        task = self.state.task
        base = self.state.base_commit
        cfg = self.config

        head = check_head_moved(base, self.repo_root)
        if not head.ok:
            # Keep whatever moved HEAD; only discard working tree changes
            return self._violation(
                head.stop_code, head.reason, rollback_to=git.head_commit(self.repo_root)
            )

        touched = self._measure()

        owned = check_runner_owned_unchanged(self._guarded_snapshot(), self.repo_root)
        if not owned.ok:
            self.findings.scope = replace(self.findings.scope, ok=False, violations=owned.violations)
            return self._violation(owned.stop_code, owned.reason)

        if task.task_kind in READ_ONLY_KINDS:
            side = check_side_effects(task.task_kind, touched)
            if not side.ok:
                self.findings.scope = replace(self.findings.scope, ok=False, violations=side.violations)
                return self._violation(side.stop_code, side.reason)
            if task.task_kind == "question":
                prompt = task.question.prompt if task.question else task.intent
                return Ending(codes.STOP_ORCHESTRATOR_ASK_QUESTION, prompt)
        else:
            scope = check_scope_violations(
                touched, resolve_scope(task, cfg.scope), cfg.scope, cfg.runner.runner_owned_globs
            )
            if not scope.ok:
                self.findings.scope = replace(self.findings.scope, ok=False, violations=scope.violations)
                return self._violation(scope.stop_code, scope.reason)
            limits = check_diff_limits(self.findings.blast, resolve_limits(task, cfg.diff_limits))
            if not limits.ok:
                return self._violation(limits.stop_code, limits.reason)

        verification = await asyncio.to_thread(
            run_verifications, task, cfg.verification, self.repo_root, self.cancel
        )
        self.findings.runs = verification.runs
        self.findings.verify_runs += len(verification.runs)
        self.findings.verify_log = verification.log
        if not verification.ok:
            return self._violation(verification.stop_code, verification.reason)

        return self._accept(task, touched)

    def _measure(self) -> TouchedFiles:
        base = self.state.base_commit
        touched = exclude_paths(
            get_touched_files(base, self.repo_root), self.findings.runner_owned_dirty
        )
        self.findings.touched = touched
        self.findings.blast = compute_blast_radius(base, touched, self.repo_root)
        self.findings.scope = ScopeSummary(touched_paths=touched.paths)
        if self.config.history.enabled and self.config.history.include_diff_patch and touched.tracked:
            self.findings.diff_patch = git.diff_patch(base, self.repo_root)
        return touched

    def _guarded_snapshot(self) -> Snapshot:
        """Snapshotted files outside the workspace directory.

        The runner itself writes workspace files during a tick (driver task
        files, for one), so only the rest must stay byte-identical.
        """
        prefix = normalize_path(self.config.workspace_dir).rstrip("/") + "/"
        return {
            path: content
            for path, content in self.findings.runner_owned_snapshot.items()
            if not path.startswith(prefix)
        }

    def _accept(self, task: Task, touched: TouchedFiles) -> Ending:
        if task.task_kind != "execute" or touched.is_empty or not self.config.runner.commit_on_success:
            return Ending(codes.SUCCESS, "All checks passed")
        paths = touched.paths
        message = f"tickgov: {task.task_id}: {task.intent.splitlines()[0][:72]}"
        try:
            head = git.commit_paths(paths, message, self.repo_root)
        except GitError as e:
            return self._violation(codes.BLOCKED_COMMIT_FAILED, f"git commit failed: {e}")
        logger.info("[JUDGE] Committed %d path(s) as %s", len(paths), head[:12])
        return Ending(codes.SUCCESS, f"All checks passed; committed {head[:12]}")

    # -------------------------------------------------------------------------
    # Violations and rollback
    # -------------------------------------------------------------------------

    def _violation(
        self,
        code: str,
        reason: str,
        diagnostics: dict[str, Any] | None = None,
        rollback_to: str | None = None,
    ) -> Ending:
        """Roll back after a violation; a failed rollback becomes the outcome."""
        logger.warning("Violation %s: %s", code, reason)
        if self.findings.touched is None and rollback_to is None:
            self._measure()
        blocked = self._rollback(rollback_to)
        if blocked is not None:
            logger.error("Rollback after %s failed: %s", code, blocked.reason)
            return Ending(
                blocked.code,
                f"{reason}; {blocked.reason}",
                {**(diagnostics or {}), "original_code": code},
            )
        return Ending(code, reason, diagnostics)

    def _rollback(self, commit: str | None = None) -> BlockedOutcome | None:
        owned = self.config.runner.runner_owned_globs
        untracked = [
            path for path in git.untracked_files(self.repo_root) if not matches_any(path, owned)
        ]
        self.findings.rollbacks += 1
        return perform_rollback_with_clean_check(
            commit or self.state.base_commit,
            untracked,
            self.repo_root,
            ignore_globs=owned,
            preserve=self.findings.runner_owned_snapshot,
        )

    # -------------------------------------------------------------------------
    # REPORT
    # -------------------------------------------------------------------------

    def _finish(
        self, ending: Ending, *, write_artifacts: bool = True, persist_state: bool = True
    ) -> TickOutcome:
        """Build the report and persist it, BLOCKED.json, STATE.json and history."""
        if write_artifacts and persist_state:
            self._update_workspace_state(ending)
        self.state = transition_phase(self.state, TickPhase.REPORT)

        with self.tracer.start_as_current_span("tickgov.report"):
            f = self.findings
            ws = self.workspace_state
            diff_path, log_path = artifact_paths(
                self.config, self.state.run_id, f.diff_patch, f.verify_log
            )
            report = build_report(
                run_id=self.state.run_id,
                started_at=self.state.started_at,
                code=ending.code,
                reason=ending.reason,
                base_commit=self.state.base_commit,
                head_commit=self._head() if write_artifacts else None,
                task=self.state.task,
                blast_radius=f.blast,
                scope=f.scope,
                diff=DiffSummary(
                    files_changed=f.blast.files_touched,
                    lines_changed=f.blast.lines_changed,
                    diff_patch_path=diff_path,
                ),
                verification=VerificationSummary(runs=f.runs, verify_log_path=log_path),
                budgets=BudgetSummary.from_counts(
                    ws.milestone_id, ws.budgets, budget_warnings(ws.budgets, self.config.budgets)
                ),
                usage=self.state.usage,
                branch=f.branch,
                escalation=f.escalation,
                risk_flags=f.risk_flags,
                reviewer_error=f.reviewer_error,
                question=f.question,
                errors=list(self.state.errors),
            )
            logger.info("[REPORT] %s %s %s", report.verdict.upper(), report.code, report.reason)

            if write_artifacts:
                write_report(report, self.workspace, self.config)
                sync_blocked(report, self.workspace, ending.diagnostics)
                if persist_state:
                    self.workspace_state.save(self.workspace)
                write_history(report, self.workspace, self.config, f.diff_patch, f.verify_log)

        return TickOutcome(
            report=report,
            usage=self.state.usage,
            state=self.state,
            workspace_state=self.workspace_state,
            orchestrator_stop=f.orchestrator_stop,
        )

    def _update_workspace_state(self, ending: Ending) -> None:
        f = self.findings
        ws = apply_deltas(
            self.workspace_state,
            ticks=1,
            orchestrator_calls=f.orchestrator_calls + f.reviewer_calls,
            builder_calls=f.builder_calls,
            verify_runs=f.verify_runs,
            cost_usd=self.state.usage.cost_usd,
        )
        verdict = codes.verdict_for(ending.code)
        if verdict != "success":
            ws = append_stop_history(ws, ws.total_ticks, verdict)
        if verdict == "success":
            ws = reset_failure_streak(ws)
        elif ending.code not in NEUTRAL_CODES:
            ws = record_task_failure(ws, f.task_fingerprint)
        self.workspace_state = replace(
            ws,
            last_run_id=self.state.run_id,
            last_verdict=verdict,
            last_code=ending.code,
            budget_warning=compute_budget_warning(ws.budgets, self.config.budgets),
        )

    def _head(self) -> str | None:
        try:
            return git.head_commit(self.repo_root)
        except (GitError, OSError):
            return None


def _will_build(task: Task) -> bool:
    """Whether the task's builder runs: execute tasks, and questions that carry one."""
    if task.task_kind == "execute":
        return True
    return task.task_kind == "question" and task.builder is not None


def _record_metrics(report: Report, findings: _Findings, usage: TokenUsage) -> None:
    """Record metrics if instruments are initialized."""
    try:
        telemetry.ticks_counter.add(1)
        telemetry.verdicts_counter.add(1, {"verdict": report.verdict, "code": report.code})
        telemetry.agent_calls_counter.add(findings.orchestrator_calls, {"role": "planner"})
        telemetry.agent_calls_counter.add(findings.reviewer_calls, {"role": "reviewer"})
        telemetry.agent_calls_counter.add(findings.builder_calls, {"role": "builder"})
        telemetry.verify_runs_counter.add(findings.verify_runs)
        telemetry.rollbacks_counter.add(findings.rollbacks)
        telemetry.tokens_counter.add(usage.input_tokens, {"kind": "input"})
        telemetry.tokens_counter.add(usage.output_tokens, {"kind": "output"})
        telemetry.tokens_counter.add(
            usage.cache_read_tokens + usage.cache_creation_tokens, {"kind": "cache"}
        )
        telemetry.cost_counter.add(usage.cost_usd)
        telemetry.tick_duration.record(report.duration_ms / 1000)
    except (AttributeError, NameError):
        # Instruments not initialized - telemetry disabled
        pass


async def run_tick(
    config: TickgovConfig,
    *,
    repo_root: Path,
    invoker: AgentInvoker | None = None,
    cancel: threading.Event | None = None,
    tracer: trace.Tracer | None = None,
) -> TickOutcome:
    """Run one governed tick.

    Args:
        config: tickgov configuration
        repo_root: Repository root
        invoker: Agent invoker (defaults to the configured agent CLI)
        cancel: Cooperative cancellation signal
        tracer: OpenTelemetry tracer

    Returns:
        TickOutcome with the persisted report and the tick's token usage

    Raises:
        Exception: Genuine faults are re-raised after the interrupted
            report has been written and the lock released
    """
    runner = TickRunner(
        config,
        repo_root,
        invoker or AgentInvoker(cli=config.agent, cwd=repo_root),
        cancel=cancel,
        tracer=tracer,
    )
    return await runner.run()
