"""Reviewer gate: a second agent that vets risky steps before the build.

Any failure to get a usable decision (invocation error, unparseable or
invalid output, unreadable prompt file) degrades to a forced patch: the
builder does not run and the error is recorded in the report.
"""

import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tickgov import codes
from tickgov.config import TickgovConfig
from tickgov.errors import AgentError
from tickgov.invoker import AgentInvoker
from tickgov.json_extract import extract_json
from tickgov.models import Question, Task
from tickgov.prompts import REVIEWER_SYSTEM, REVIEWER_USER, load_template, render
from tickgov.schemas import REVIEWER_RESULT_SCHEMA, validate_against
from tickgov.state import TokenUsage

logger = logging.getLogger(__name__)


@dataclass
class ReviewerOutcome:
    """Reviewer gate result.

    ``stop_code`` is None when the tick may proceed to BUILD.
    """

    stop_code: str | None = None
    question: Question | None = None
    reviewer_error: str | None = None
    reason: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    calls: int = 0


def handle_reviewer_decision(decision: dict[str, Any]) -> ReviewerOutcome:
    """Map a reviewer decision to a gate outcome.

    Unknown decisions, and ask_question without a question, are treated as
    a forced patch.
    """
    reason = str(decision.get("reason", ""))
    kind = decision.get("decision")
    if kind == "proceed":
        return ReviewerOutcome(reason=reason)
    if kind == "ask_question":
        raw = decision.get("question")
        if isinstance(raw, dict) and raw.get("prompt"):
            return ReviewerOutcome(
                stop_code=codes.STOP_REVIEWER_ASK_QUESTION,
                question=Question(prompt=raw["prompt"], choices=raw.get("choices")),
                reason=reason,
            )
    return ReviewerOutcome(stop_code=codes.STOP_REVIEWER_FORCED_PATCH, reason=reason)


def parse_reviewer_output(text: str) -> dict[str, Any]:
    """Extract the decision object from reviewer output.

    A wrapper object whose ``result`` is itself a JSON string is unwrapped.

    Raises:
        ValueError: If no valid decision can be extracted
    """
    extracted = extract_json(text)
    if not extracted.ok:
        raise ValueError(f"Reviewer output is not JSON: {extracted.error}")
    value = extracted.value
    if isinstance(value, dict) and "decision" not in value and isinstance(value.get("result"), str):
        inner = extract_json(value["result"])
        if not inner.ok:
            raise ValueError(f"Reviewer result is not JSON: {inner.error}")
        value = inner.value
    errors = validate_against(REVIEWER_RESULT_SCHEMA, value)
    if errors:
        raise ValueError("Reviewer output failed schema: " + "; ".join(errors))
    return value


def _forced(error: str, calls: int = 0, usage: TokenUsage | None = None) -> ReviewerOutcome:
    logger.warning("Reviewer unavailable, forcing patch: %s", error)
    return ReviewerOutcome(
        stop_code=codes.STOP_REVIEWER_FORCED_PATCH,
        reviewer_error=error,
        reason="Reviewer could not decide",
        usage=usage or TokenUsage(),
        calls=calls,
    )


async def run_reviewer_if_needed(
    config: TickgovConfig,
    invoker: AgentInvoker,
    repo_root: Path,
    task: Task,
    risk_flags: list[str],
    last_report_md: str = "",
    touched_paths: list[str] | None = None,
    cancel: threading.Event | None = None,
) -> ReviewerOutcome:
    """Ask the reviewer agent about a risky task.

    Does nothing (proceed) when the reviewer is disabled or there are no
    risk flags.

    Raises:
        TickInterrupted: If cancelled during the reviewer call
    """
    reviewer = config.reviewer
    if not reviewer.enabled or not risk_flags:
        return ReviewerOutcome()

    try:
        system = load_template(repo_root, reviewer.system_prompt_file, REVIEWER_SYSTEM)
        user = load_template(repo_root, reviewer.user_prompt_file, REVIEWER_USER)
    except OSError as e:
        return _forced(f"Failed to read reviewer prompt files: {e}")

    values = {
        "RISK_FLAGS": ", ".join(risk_flags),
        "TASK_JSON": json.dumps(task.to_dict(), indent=2),
        "LAST_REPORT_MD": last_report_md,
        "TOUCHED_PATHS": "\n".join(touched_paths or []) or "none",
    }
    logger.info("Reviewer triggered by %s", ", ".join(risk_flags))

    try:
        response = await invoker.invoke(
            render(user, values),
            max_turns=reviewer.max_turns,
            permission_mode="plan",
            timeout=min(reviewer.timeout_seconds, config.runner.max_tick_seconds),
            model=reviewer.model,
            system_prompt=render(system, values),
            cancel=cancel,
        )
    except AgentError as e:
        return _forced(str(e), calls=1)

    try:
        decision = parse_reviewer_output(response.result)
    except ValueError as e:
        return _forced(str(e), calls=1, usage=response.usage)

    outcome = handle_reviewer_decision(decision)
    outcome.usage = response.usage
    outcome.calls = 1
    logger.info("Reviewer decision: %s", decision.get("decision"))
    return outcome
