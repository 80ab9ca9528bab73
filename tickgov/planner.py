"""Planner: obtain one Task per tick from the planning agent.

Malformed output (no JSON, schema failure, broken invariants) is retried a
bounded number of times with the errors fed back to the agent. Transport
stalls are not retried; they block the tick with a diagnostic.
"""

import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tickgov import codes
from tickgov.config import TickgovConfig
from tickgov.errors import AgentError, TaskValidationError
from tickgov.invoker import AgentInvoker
from tickgov.json_extract import extract_json
from tickgov.models import Task
from tickgov.prompts import PLANNER_SYSTEM, PLANNER_USER, load_template, render
from tickgov.state import TokenUsage
from tickgov.transport import classify_agent_error, stall_diagnostics

logger = logging.getLogger(__name__)

EXCERPT_CHARS = 2000


@dataclass
class PlannerContext:
    milestone_id: str | None = None
    last_verdict: str | None = None
    last_code: str | None = None
    last_report_md: str = ""


@dataclass
class PlannerOutcome:
    """Result of asking the planner for a task.

    Exactly one of ``task`` or ``blocked_code`` is set.
    """

    task: Task | None
    calls: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    blocked_code: str | None = None
    reason: str = ""
    diagnostics: dict[str, Any] | None = None


def parse_task_output(text: str) -> tuple[Task | None, dict[str, Any]]:
    """Extract and validate a Task from planner output.

    Returns:
        (task, diagnostics); task is None when the output is unusable and
        diagnostics explain why
    """
    extracted = extract_json(text)
    if not extracted.ok:
        return None, {"extract_method": None, "error": extracted.error}
    try:
        task = Task.from_dict(extracted.value)
    except TaskValidationError as e:
        return None, {"extract_method": extracted.method, "schema_errors": e.errors}
    return task, {"extract_method": extracted.method}


def build_prompt(config: TickgovConfig, repo_root: Path, context: PlannerContext) -> tuple[str, str]:
    """Render the planner's (system, user) prompts."""
    system = load_template(repo_root, config.planner.system_prompt_file, PLANNER_SYSTEM)
    user = load_template(repo_root, config.planner.user_prompt_file, PLANNER_USER)
    templates = ", ".join(t.id for t in config.verification.templates) or "none"
    values = {
        "VERIFY_TEMPLATES": templates,
        "MILESTONE_ID": context.milestone_id or "none",
        "LAST_VERDICT": context.last_verdict or "none",
        "LAST_CODE": context.last_code or "none",
        "LAST_REPORT_MD": context.last_report_md or "(no previous report)",
    }
    return render(system, values), render(user, values)


def _retry_suffix(diagnostics: dict[str, Any]) -> str:
    problems = diagnostics.get("schema_errors") or [diagnostics.get("error", "invalid output")]
    return (
        "\n\n=== RETRY ===\nYour previous output was invalid: "
        + "; ".join(str(p) for p in problems)
        + "\nReply with a single JSON object that satisfies the task format."
    )


async def request_task(
    config: TickgovConfig,
    invoker: AgentInvoker,
    repo_root: Path,
    context: PlannerContext,
    cancel: threading.Event | None = None,
) -> PlannerOutcome:
    """Ask the planning agent for the next task.

    Args:
        config: tickgov configuration
        invoker: Agent invoker
        repo_root: Repository root (for prompt files)
        context: What the planner should know about previous ticks
        cancel: Cooperative cancellation signal

    Returns:
        PlannerOutcome with a task, or with BLOCKED_TRANSPORT_STALLED /
        BLOCKED_ORCHESTRATOR_OUTPUT_INVALID

    Raises:
        TickInterrupted: If cancelled during the agent call
    """
    system_prompt, base_prompt = build_prompt(config, repo_root, context)
    prompt = base_prompt
    usage = TokenUsage()
    calls = 0
    attempts = 1 + max(0, config.planner.max_parse_retries_per_tick)
    last_output = ""
    last_stderr = ""
    diagnostics: dict[str, Any] = {}

    for attempt in range(1, attempts + 1):
        calls += 1
        try:
            response = await invoker.invoke(
                prompt,
                max_turns=config.planner.max_turns,
                permission_mode=config.planner.permission_mode,
                timeout=min(config.planner.timeout_seconds, config.runner.max_tick_seconds),
                model=config.planner.model,
                allowed_tools=config.planner.allowed_tools,
                system_prompt=system_prompt,
                cancel=cancel,
            )
        except AgentError as e:
            stall = classify_agent_error(str(e), e.stderr, e.exit_code)
            if stall.stalled:
                raw = str(e) + (f"\n{e.stderr}" if e.stderr else "")
                logger.warning("Planner transport stalled (%s)", stall.matched_pattern)
                return PlannerOutcome(
                    task=None,
                    calls=calls,
                    usage=usage,
                    blocked_code=codes.BLOCKED_TRANSPORT_STALLED,
                    reason=f"Planner transport stalled ({stall.matched_pattern})"
                    + (f", request id {stall.request_id}" if stall.request_id else ""),
                    diagnostics=stall_diagnostics("ORCHESTRATE", stall, raw),
                )
            logger.warning("Planner attempt %d/%d failed: %s", attempt, attempts, e)
            last_output, last_stderr = e.stdout, e.stderr
            diagnostics = {"extract_method": None, "error": str(e)}
            prompt = base_prompt + _retry_suffix(diagnostics)
            continue

        usage = usage.add(response.usage)
        task, diagnostics = parse_task_output(response.result)
        if task is not None:
            logger.info(
                "Planner proposed %s/%s (%s) via %s extraction",
                task.milestone_id,
                task.task_id,
                task.task_kind,
                diagnostics["extract_method"],
            )
            return PlannerOutcome(task=task, calls=calls, usage=usage)

        logger.warning("Planner attempt %d/%d returned invalid output", attempt, attempts)
        last_output, last_stderr = response.result, ""
        prompt = base_prompt + _retry_suffix(diagnostics)

    return PlannerOutcome(
        task=None,
        calls=calls,
        usage=usage,
        blocked_code=codes.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID,
        reason=f"Planner output invalid after {attempts} attempt(s)",
        diagnostics={
            **diagnostics,
            "attempts": attempts,
            "stdout_excerpt": last_output[:EXCERPT_CHARS],
            "stderr_excerpt": last_stderr[:EXCERPT_CHARS],
        },
    )
