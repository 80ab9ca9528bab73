"""Risk flags and escalation decisions.

Risk flags are derived from the judge's findings and the stop history.
``should_escalate`` turns the workspace state and flags into one of
``none``, ``reviewer`` or ``human``.
"""

import logging
from typing import Literal

from tickgov.config import ReviewerTriggerConfig, TickgovConfig
from tickgov.globs import globs_overlap, matches_any
from tickgov.judge import BlastRadius
from tickgov.models import DiffLimits, TaskScope
from tickgov.state import StopHistoryEntry, WorkspaceState

logger = logging.getLogger(__name__)

RiskFlag = Literal["high_risk_path", "diff_fraction", "verify_fail", "repeated_stop", "budget_warning"]
EscalationMode = Literal["none", "reviewer", "human"]


def check_high_risk_globs(
    touched_paths: list[str], scope: TaskScope | None, high_risk_globs: list[str]
) -> bool:
    """True when a touched path, or an allowed glob, hits a sensitive glob."""
    if not high_risk_globs:
        return False
    if any(matches_any(path, high_risk_globs) for path in touched_paths):
        return True
    if scope is not None:
        return any(
            globs_overlap(allowed, risky)
            for allowed in scope.allowed_globs
            for risky in high_risk_globs
        )
    return False


def check_diff_fraction(blast: BlastRadius, limits: DiffLimits, threshold: float) -> bool:
    """True when files or lines reach ``threshold`` of their limit."""
    if threshold <= 0:
        return False
    if limits.max_files_touched > 0 and blast.files_touched / limits.max_files_touched >= threshold:
        return True
    if limits.max_lines_changed > 0 and blast.lines_changed / limits.max_lines_changed >= threshold:
        return True
    return False


def check_repeated_stops(
    history: list[StopHistoryEntry], window_ticks: int, max_stops: int, current_tick: int
) -> bool:
    """Count stop verdicts in ``[current_tick - window_ticks, current_tick]``.

    The window start is clamped at 0 and both ends are inclusive. A
    non-positive window or maximum disables the check.
    """
    if window_ticks <= 0 or max_stops <= 0:
        return False
    window_start = max(0, current_tick - window_ticks)
    stops = sum(
        1
        for entry in history
        if entry.verdict == "stop" and window_start <= entry.tick <= current_tick
    )
    return stops >= max_stops


def compute_risk_flags(
    *,
    touched_paths: list[str],
    blast: BlastRadius | None,
    limits: DiffLimits,
    scope: TaskScope | None,
    trigger: ReviewerTriggerConfig,
    stop_history: list[StopHistoryEntry],
    current_tick: int,
    verify_failed: bool = False,
    budget_warning: bool = False,
) -> list[RiskFlag]:
    """Derive the ordered list of risk flags for a tick."""
    flags: list[RiskFlag] = []
    if trigger.on_high_risk_paths and check_high_risk_globs(
        touched_paths, scope, trigger.high_risk_globs
    ):
        flags.append("high_risk_path")
    if blast is not None and check_diff_fraction(blast, limits, trigger.diff_fraction_threshold):
        flags.append("diff_fraction")
    if trigger.on_verify_fail and verify_failed:
        flags.append("verify_fail")
    if trigger.on_repeated_stop and check_repeated_stops(
        stop_history, trigger.stop_window_ticks, trigger.max_stops_in_window, current_tick
    ):
        flags.append("repeated_stop")
    if budget_warning:
        flags.append("budget_warning")
    return flags


def should_escalate(
    state: WorkspaceState,
    config: TickgovConfig,
    current_tick: int,
    risk_flags: list[RiskFlag] | tuple[RiskFlag, ...] = (),
) -> EscalationMode:
    """Decide who must look at the next step.

    A failure streak at or above the threshold goes to a human and
    short-circuits every other check. Otherwise risk flags, or a repeated
    stop window, go to the reviewer when one is enabled and to a human when
    not.
    """
    threshold = config.escalation.failure_streak_threshold
    if threshold > 0 and state.failure_streak >= threshold:
        logger.info("Failure streak %d reached threshold %d", state.failure_streak, threshold)
        return "human"

    trigger = config.reviewer.trigger
    repeated = trigger.on_repeated_stop and check_repeated_stops(
        state.stop_history, trigger.stop_window_ticks, trigger.max_stops_in_window, current_tick
    )
    if risk_flags or repeated:
        return "reviewer" if config.reviewer.enabled else "human"
    return "none"
