"""Tick state and workspace state.

``TickState`` is the in-flight record of one tick. It is immutable: every
phase transition returns a new value, so the state seen by crash handling
is always a consistent snapshot.

``WorkspaceState`` is the cumulative record persisted in STATE.json across
ticks: per-milestone budgets, the last verdict, stop history and the
failure streak used for escalation.
"""

import json
import logging
import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from tickgov.atomic_io import atomic_write_json
from tickgov.config import BudgetsConfig
from tickgov.models import BuilderResult, Task

logger = logging.getLogger(__name__)

STATE_FILENAME = "STATE.json"
STOP_HISTORY_CAP = 50


class TickPhase(str, Enum):
    LOCK = "LOCK"
    PREFLIGHT = "PREFLIGHT"
    ORCHESTRATE = "ORCHESTRATE"
    BUILD = "BUILD"
    JUDGE = "JUDGE"
    REPORT = "REPORT"
    END = "END"


@dataclass(frozen=True)
class TokenUsage:
    """Token and cost totals for agent calls.

    Accumulated by value: ``add`` returns a new total.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0
    cost_usd: float = 0.0
    calls: int = 0

    @property
    def total_tokens(self) -> int:
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_creation_tokens
        )

    def add(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
            cost_usd=self.cost_usd + other.cost_usd,
            calls=self.calls + other.calls,
        )

    @classmethod
    def from_cli_usage(cls, usage: dict[str, Any] | None, cost_usd: float = 0.0) -> "TokenUsage":
        """Build from the ``usage`` block of the agent CLI's JSON output."""
        usage = usage or {}

        def count(key: str) -> int:
            value = usage.get(key, 0)
            return value if isinstance(value, int) and not isinstance(value, bool) else 0

        return cls(
            input_tokens=count("input_tokens"),
            output_tokens=count("output_tokens"),
            cache_read_tokens=count("cache_read_input_tokens"),
            cache_creation_tokens=count("cache_creation_input_tokens"),
            cost_usd=float(cost_usd or 0.0),
            calls=1,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["total_tokens"] = self.total_tokens
        return data


def generate_run_id() -> str:
    """Sortable unique run id: UTC timestamp plus a random suffix."""
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class TickState:
    """In-flight state of one tick.

    Attributes:
        phase: Current phase of the state machine
        run_id: Unique id of this tick
        started_at: When the tick started
        base_commit: HEAD at preflight time (None until PREFLIGHT passes)
        task: Task from the planner (None until ORCHESTRATE assigns one)
        builder_result: Builder's structured result, if any
        errors: Accumulated error messages
        usage: Token usage of every agent call made in this tick
    """

    phase: TickPhase
    run_id: str
    started_at: datetime
    base_commit: str | None = None
    task: Task | None = None
    builder_result: BuilderResult | None = None
    errors: tuple[str, ...] = ()
    usage: TokenUsage = field(default_factory=TokenUsage)


def create_initial_state(run_id: str | None = None) -> TickState:
    return TickState(
        phase=TickPhase.LOCK,
        run_id=run_id or generate_run_id(),
        started_at=datetime.now(timezone.utc),
    )


def transition_phase(state: TickState, phase: TickPhase) -> TickState:
    return replace(state, phase=phase)


def set_base_commit(state: TickState, base_commit: str) -> TickState:
    return replace(state, base_commit=base_commit)


def set_task(state: TickState, task: Task | None) -> TickState:
    return replace(state, task=task)


def set_builder_result(state: TickState, result: BuilderResult | None) -> TickState:
    return replace(state, builder_result=result)


def add_error(state: TickState, error: str) -> TickState:
    return replace(state, errors=state.errors + (error,))


def add_usage(state: TickState, usage: TokenUsage) -> TickState:
    return replace(state, usage=state.usage.add(usage))


# =============================================================================
# WORKSPACE STATE (STATE.json)
# =============================================================================


@dataclass
class BudgetCounts:
    ticks: int = 0
    orchestrator_calls: int = 0
    builder_calls: int = 0
    verify_runs: int = 0
    estimated_cost_usd: float = 0.0


@dataclass(frozen=True)
class StopHistoryEntry:
    tick: int
    verdict: str


@dataclass
class WorkspaceState:
    """Cumulative state persisted across ticks.

    Budgets count per milestone and reset when the planner moves to a new
    milestone. ``total_ticks`` never resets and numbers the stop history.
    Update helpers return new values and never mutate.
    """

    milestone_id: str | None = None
    total_ticks: int = 0
    budgets: BudgetCounts = field(default_factory=BudgetCounts)
    budget_warning: bool = False
    last_run_id: str | None = None
    last_verdict: str | None = None
    last_code: str | None = None
    stop_history: list[StopHistoryEntry] = field(default_factory=list)
    failure_streak: int = 0
    last_failed_fingerprint: str | None = None

    def save(self, workspace: Path) -> None:
        """Persist state atomically to STATE.json in the workspace."""
        atomic_write_json(workspace / STATE_FILENAME, asdict(self))

    @classmethod
    def load(cls, workspace: Path) -> "WorkspaceState":
        """Load STATE.json, falling back to a fresh state.

        A missing or unreadable file yields defaults; an unreadable file is
        logged since budgets restart from zero.
        """
        path = workspace / STATE_FILENAME
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return cls()
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Ignoring unreadable %s: %s", path, e)
            return cls()
        if not isinstance(data, dict):
            logger.warning("Ignoring %s: expected an object", path)
            return cls()

        try:
            return cls(
                milestone_id=data.get("milestone_id"),
                total_ticks=int(data.get("total_ticks", 0)),
                budgets=BudgetCounts(**data.get("budgets", {})),
                budget_warning=bool(data.get("budget_warning", False)),
                last_run_id=data.get("last_run_id"),
                last_verdict=data.get("last_verdict"),
                last_code=data.get("last_code"),
                stop_history=[
                    StopHistoryEntry(tick=e["tick"], verdict=e["verdict"])
                    for e in data.get("stop_history", [])
                ],
                failure_streak=int(data.get("failure_streak", 0)),
                last_failed_fingerprint=data.get("last_failed_fingerprint"),
            )
        except (TypeError, KeyError, ValueError) as e:
            logger.warning("Ignoring malformed %s: %s", path, e)
            return cls()


def ensure_milestone(state: WorkspaceState, milestone_id: str) -> WorkspaceState:
    """Reset budgets when the milestone changes."""
    if state.milestone_id == milestone_id:
        return state
    if state.milestone_id is not None:
        logger.info("Milestone changed %s -> %s; resetting budgets", state.milestone_id, milestone_id)
    return replace(state, milestone_id=milestone_id, budgets=BudgetCounts(), budget_warning=False)


def apply_deltas(
    state: WorkspaceState,
    *,
    ticks: int = 0,
    orchestrator_calls: int = 0,
    builder_calls: int = 0,
    verify_runs: int = 0,
    cost_usd: float = 0.0,
) -> WorkspaceState:
    b = state.budgets
    budgets = BudgetCounts(
        ticks=b.ticks + ticks,
        orchestrator_calls=b.orchestrator_calls + orchestrator_calls,
        builder_calls=b.builder_calls + builder_calls,
        verify_runs=b.verify_runs + verify_runs,
        estimated_cost_usd=round(b.estimated_cost_usd + cost_usd, 6),
    )
    return replace(state, total_ticks=state.total_ticks + ticks, budgets=budgets)


def _budget_pairs(budgets: BudgetCounts, config: BudgetsConfig) -> list[tuple[str, float, float]]:
    limits = config.per_milestone
    return [
        ("ticks", budgets.ticks, limits.max_ticks),
        ("orchestrator_calls", budgets.orchestrator_calls, limits.max_orchestrator_calls),
        ("builder_calls", budgets.builder_calls, limits.max_builder_calls),
        ("verify_runs", budgets.verify_runs, limits.max_verify_runs),
        ("estimated_cost_usd", budgets.estimated_cost_usd, limits.max_estimated_cost_usd),
    ]


def budget_warnings(budgets: BudgetCounts, config: BudgetsConfig) -> list[str]:
    """Human-readable warnings for counters at or past the warn fraction."""
    warnings = []
    for name, used, limit in _budget_pairs(budgets, config):
        if limit > 0 and used >= limit * config.warn_at_fraction:
            warnings.append(f"Budget {name} at {used}/{limit}")
    return warnings


def compute_budget_warning(budgets: BudgetCounts, config: BudgetsConfig) -> bool:
    return bool(budget_warnings(budgets, config))


def exhausted_budgets(budgets: BudgetCounts, config: BudgetsConfig) -> list[str]:
    """Counters that have reached their hard cap."""
    return [
        f"{name} {used}/{limit}"
        for name, used, limit in _budget_pairs(budgets, config)
        if limit > 0 and used >= limit
    ]


def append_stop_history(state: WorkspaceState, tick: int, verdict: str) -> WorkspaceState:
    history = (state.stop_history + [StopHistoryEntry(tick=tick, verdict=verdict)])[
        -STOP_HISTORY_CAP:
    ]
    return replace(state, stop_history=history)


def record_task_failure(state: WorkspaceState, task_fingerprint: str | None) -> WorkspaceState:
    return replace(
        state,
        failure_streak=state.failure_streak + 1,
        last_failed_fingerprint=task_fingerprint or state.last_failed_fingerprint,
    )


def reset_failure_streak(state: WorkspaceState) -> WorkspaceState:
    return replace(state, failure_streak=0, last_failed_fingerprint=None)
