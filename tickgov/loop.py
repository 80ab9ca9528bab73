"""Loop primitives: run ticks back to back until something needs attention.

The loop holds no scheduling policy of its own. It stops after the first
tick that does not succeed, when a budget warning appears, when the planner
signals the milestone is done, on a stop request, or after ``max_ticks``.
"""

import logging
import signal
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from opentelemetry import trace

from tickgov.config import TickgovConfig
from tickgov.invoker import AgentInvoker
from tickgov.report import Report
from tickgov.risk import should_escalate
from tickgov.state import TokenUsage, WorkspaceState
from tickgov.tick import TickOutcome, run_tick

logger = logging.getLogger(__name__)


class StopFlag:
    """Stop request shared between signal handlers and the loop.

    The first request lets the running tick finish. A second request also
    sets ``cancel``, which the running tick observes and ends with
    STOP_INTERRUPTED.
    """

    def __init__(self) -> None:
        self._requested = threading.Event()
        self.cancel = threading.Event()

    def request(self) -> None:
        if self._requested.is_set():
            self.cancel.set()
        self._requested.set()

    def is_set(self) -> bool:
        return self._requested.is_set()

    def reset(self) -> None:
        self._requested.clear()
        self.cancel.clear()


def install_signal_handlers(flag: StopFlag) -> Callable[[], None]:
    """Route SIGINT and SIGTERM to ``flag``.

    Must be called from the main thread.

    Returns:
        Callable that restores the previous handlers
    """
    previous = {}

    def handler(signum: int, frame: object) -> None:
        name = signal.Signals(signum).name
        if flag.is_set():
            logger.warning("%s received again, interrupting the current tick", name)
        else:
            logger.warning("%s received, will stop after the current tick", name)
        flag.request()

    for signum in (signal.SIGINT, signal.SIGTERM):
        previous[signum] = signal.signal(signum, handler)

    def restore() -> None:
        for signum, old in previous.items():
            signal.signal(signum, old)

    return restore


@dataclass
class LoopResult:
    """Summary of a loop run.

    Attributes:
        ticks_executed: Ticks that ran
        final_verdict: Verdict of the last tick ("success" when none ran)
        stop_reason: max_ticks, stop_requested, verdict, budget_warning,
            orchestrator_stop or escalation_human
        reports: Report of every tick, in order
        usage: Token usage summed across ticks
    """

    ticks_executed: int = 0
    final_verdict: str = "success"
    stop_reason: str = "max_ticks"
    reports: list[Report] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)


async def run_loop(
    config: TickgovConfig,
    max_ticks: int,
    *,
    repo_root: Path,
    invoker: AgentInvoker | None = None,
    stop_flag: StopFlag | None = None,
    tracer: trace.Tracer | None = None,
    on_tick: Callable[[TickOutcome], None] | None = None,
) -> LoopResult:
    """Run up to ``max_ticks`` ticks.

    Before each tick the escalation decision is re-evaluated from
    STATE.json; when a human is due the loop stops without running the
    tick (``escalation_human``). Running ``tickgov tick`` by hand is the
    human step.

    Args:
        config: tickgov configuration
        max_ticks: Upper bound on ticks to run
        repo_root: Repository root
        invoker: Agent invoker shared by every tick
        stop_flag: Stop requests (signal handlers are not installed here)
        tracer: OpenTelemetry tracer
        on_tick: Called after every tick with its outcome

    Returns:
        LoopResult
    """
    flag = stop_flag or StopFlag()
    workspace = config.workspace_path(repo_root)
    result = LoopResult()

    while True:
        if flag.is_set():
            result.stop_reason = "stop_requested"
            break
        if result.ticks_executed >= max_ticks:
            result.stop_reason = "max_ticks"
            break

        ws = WorkspaceState.load(workspace)
        if should_escalate(ws, config, ws.total_ticks + 1) == "human":
            logger.warning(
                "Escalation to a human is due (failure streak %d); not starting another tick",
                ws.failure_streak,
            )
            result.stop_reason = "escalation_human"
            break

        outcome = await run_tick(
            config, repo_root=repo_root, invoker=invoker, cancel=flag.cancel, tracer=tracer
        )
        result.ticks_executed += 1
        result.reports.append(outcome.report)
        result.final_verdict = outcome.report.verdict
        result.usage = result.usage.add(outcome.usage)
        logger.info(
            "[LOOP] Tick %d: %s %s (loop total %d tokens, $%.2f)",
            result.ticks_executed,
            outcome.report.verdict.upper(),
            outcome.report.code,
            result.usage.total_tokens,
            result.usage.cost_usd,
        )
        if on_tick is not None:
            on_tick(outcome)

        if flag.is_set():
            result.stop_reason = "stop_requested"
            break
        if outcome.report.verdict != "success":
            result.stop_reason = "verdict"
            break
        if outcome.workspace_state.budget_warning:
            result.stop_reason = "budget_warning"
            break
        if outcome.orchestrator_stop:
            result.stop_reason = "orchestrator_stop"
            break

    logger.info(
        "[LOOP] Stopped (%s) after %d tick(s): %d tokens, $%.2f",
        result.stop_reason,
        result.ticks_executed,
        result.usage.total_tokens,
        result.usage.cost_usd,
    )
    return result
