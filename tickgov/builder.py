"""Builder dispatcher.

Runs one of three build strategies for a task and normalizes every outcome
into a ``BuilderInvocationResult``:

- agent: the coding agent edits the tree and reports a BuilderResult
- patch: a planner-supplied unified diff is validated and applied
- external: an out-of-process driver gets TASK.json and writes its result

Unusable builder output is graded by one policy: fail closed for question
tasks or in strict mode, otherwise fail open so the tick can still judge
whatever the builder changed.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from tickgov import codes
from tickgov.config import TickgovConfig
from tickgov.driver import run_external_driver
from tickgov.errors import AgentError
from tickgov.invoker import AgentInvoker
from tickgov.json_extract import extract_json
from tickgov.judge import resolve_limits, resolve_scope
from tickgov.models import AgentBuild, BuilderResult, ExternalDriverBuild, PatchBuild, Task
from tickgov.patch import run_patch
from tickgov.prompts import BUILDER_SYSTEM, BUILDER_USER, load_template, render
from tickgov.schemas import BUILDER_RESULT_SCHEMA, validate_against
from tickgov.state import TickState, TokenUsage
from tickgov.transport import classify_agent_error, stall_diagnostics

logger = logging.getLogger(__name__)

ParseErrorKind = Literal["json_parse", "schema", "shape"]


class FailurePolicy(str, Enum):
    FAIL_CLOSED = "fail_closed"
    FAIL_OPEN = "fail_open"


def resolve_failure_policy(task_kind: str, strict: bool) -> FailurePolicy:
    """Decide how unusable builder output is treated.

    Question tasks and strict mode fail closed; everything else fails open.
    """
    if task_kind == "question" or strict:
        return FailurePolicy.FAIL_CLOSED
    return FailurePolicy.FAIL_OPEN


@dataclass
class BuilderInvocationResult:
    """Mode-agnostic outcome of a build.

    Attributes:
        success: Whether the tick may proceed to JUDGE
        result: Parsed BuilderResult, when the output was valid
        raw_response: Raw builder output text
        builder_output_valid: Whether the output parsed and validated
        validation_errors: Schema or shape errors
        parse_error_kind: Why the output was unusable, if it was
        stop_code: Explicit report code chosen by the mode, if any
        error: Human-readable failure description
        usage: Token usage of agent calls
        calls: Number of builder invocations made
        diagnostics: Extra data for BLOCKED.json
    """

    success: bool
    result: BuilderResult | None = None
    raw_response: str = ""
    builder_output_valid: bool = False
    validation_errors: list[str] = field(default_factory=list)
    parse_error_kind: ParseErrorKind | None = None
    stop_code: str | None = None
    error: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    calls: int = 0
    diagnostics: dict[str, Any] | None = None


@dataclass
class ParsedOutput:
    result: BuilderResult | None
    kind: ParseErrorKind | None = None
    errors: list[str] = field(default_factory=list)


def parse_builder_output(text: str) -> ParsedOutput:
    """Extract and validate a BuilderResult from builder output text."""
    extracted = extract_json(text)
    if not extracted.ok:
        return ParsedOutput(None, "json_parse", [extracted.error or "no JSON found"])
    if not isinstance(extracted.value, dict):
        return ParsedOutput(None, "shape", [f"expected an object, got {type(extracted.value).__name__}"])
    errors = validate_against(BUILDER_RESULT_SCHEMA, extracted.value)
    if errors:
        return ParsedOutput(None, "schema", errors)
    return ParsedOutput(BuilderResult.from_dict(extracted.value))


def grade_output(text: str, policy: FailurePolicy) -> BuilderInvocationResult:
    """Parse builder output and apply the failure policy."""
    parsed = parse_builder_output(text)
    if parsed.result is not None:
        return BuilderInvocationResult(
            success=True, result=parsed.result, raw_response=text, builder_output_valid=True
        )

    logger.warning(
        "Builder output invalid (%s, %s): %s", parsed.kind, policy.value, "; ".join(parsed.errors)
    )
    return BuilderInvocationResult(
        success=policy is FailurePolicy.FAIL_OPEN,
        raw_response=text,
        builder_output_valid=False,
        validation_errors=parsed.errors,
        parse_error_kind=parsed.kind,
        error=f"Builder output invalid ({parsed.kind})",
    )


def map_builder_failure(result: BuilderInvocationResult) -> str:
    """Most specific report code for a failed build.

    An explicit stop code wins; otherwise the parse error kind decides;
    anything else is a CLI error.
    """
    if result.stop_code:
        return result.stop_code
    match result.parse_error_kind:
        case "json_parse":
            return codes.STOP_BUILDER_JSON_PARSE
        case "schema":
            return codes.STOP_BUILDER_SCHEMA_INVALID
        case "shape":
            return codes.STOP_BUILDER_SHAPE_INVALID
    return codes.STOP_BUILDER_CLI_ERROR


def build_prompt(task: Task, directive: AgentBuild, config: TickgovConfig, repo_root: Path) -> tuple[str, str]:
    """Render the builder's (system, user) prompts from task scope and limits."""
    scope = resolve_scope(task, config.scope)
    limits = resolve_limits(task, config.diff_limits)
    agent = config.builder.agent
    system = load_template(repo_root, agent.system_prompt_file, BUILDER_SYSTEM)
    user = load_template(repo_root, agent.user_prompt_file, BUILDER_USER)
    values = {
        "TASK_ID": task.task_id,
        "MILESTONE_ID": task.milestone_id,
        "INTENT": task.intent,
        "INSTRUCTIONS": directive.instructions or task.intent,
        "ALLOWED_GLOBS": ", ".join(scope.allowed_globs) or "(any path not forbidden)",
        "FORBIDDEN_GLOBS": ", ".join(scope.forbidden_globs) or "(none)",
        "ALLOW_NEW_FILES": "yes" if scope.allow_new_files else "no",
        "ALLOW_LOCKFILE_CHANGES": "yes" if scope.allow_lockfile_changes else "no",
        "MAX_FILES_TOUCHED": str(limits.max_files_touched),
        "MAX_LINES_CHANGED": str(limits.max_lines_changed),
    }
    return render(system, values), render(user, values)


async def _run_agent(
    task: Task,
    directive: AgentBuild,
    config: TickgovConfig,
    invoker: AgentInvoker,
    repo_root: Path,
    cancel: threading.Event | None,
) -> BuilderInvocationResult:
    agent = config.builder.agent
    max_turns = min(directive.max_turns or agent.max_turns, agent.max_turns)
    policy = resolve_failure_policy(task.task_kind, agent.strict_builder_json)
    system_prompt, prompt = build_prompt(task, directive, config, repo_root)

    try:
        response = await invoker.invoke(
            prompt,
            max_turns=max_turns,
            permission_mode=agent.permission_mode,
            timeout=min(agent.timeout_seconds, config.runner.max_tick_seconds),
            model=agent.model,
            allowed_tools=agent.allowed_tools,
            system_prompt=system_prompt,
            cancel=cancel,
        )
    except AgentError as e:
        stall = classify_agent_error(str(e), e.stderr, e.exit_code)
        if stall.stalled:
            logger.warning("Builder transport stalled (%s)", stall.matched_pattern)
            raw = str(e) + (f"\n{e.stderr}" if e.stderr else "")
            return BuilderInvocationResult(
                success=False,
                raw_response=e.stdout,
                stop_code=codes.BLOCKED_TRANSPORT_STALLED,
                error=f"Builder transport stalled ({stall.matched_pattern})",
                calls=1,
                diagnostics=stall_diagnostics("BUILD", stall, raw),
            )
        logger.warning("Builder invocation failed: %s", e)
        return BuilderInvocationResult(success=False, raw_response=e.stdout, error=str(e), calls=1)

    result = grade_output(response.result, policy)
    result.usage = response.usage
    result.calls = 1
    return result


async def _run_external(
    task: Task,
    config: TickgovConfig,
    repo_root: Path,
    workspace: Path,
    cancel: threading.Event | None,
) -> BuilderInvocationResult:
    external = config.builder.external
    if not external.command:
        return BuilderInvocationResult(
            success=False,
            stop_code=codes.BLOCKED_MISSING_CONFIG,
            error="builder.external.command is not configured",
        )
    outcome = await run_external_driver(
        task,
        external,
        workspace,
        repo_root,
        cancel=cancel,
        kill_grace_seconds=config.verification.kill_grace_seconds,
    )
    if not outcome.ok:
        return BuilderInvocationResult(
            success=False, stop_code=outcome.code, error=outcome.error, calls=1
        )
    policy = resolve_failure_policy(task.task_kind, config.builder.agent.strict_builder_json)
    result = grade_output(outcome.output_text, policy)
    result.calls = 1
    return result


async def run_builder(
    state: TickState,
    task: Task,
    config: TickgovConfig,
    invoker: AgentInvoker,
    repo_root: Path,
    workspace: Path,
    cancel: threading.Event | None = None,
) -> BuilderInvocationResult:
    """Run the task's builder directive.

    Args:
        state: Current tick state
        task: Task to build
        config: tickgov configuration
        invoker: Agent invoker for agent mode
        repo_root: Repository root the builder works in
        workspace: Workspace directory for driver files
        cancel: Cooperative cancellation signal

    Returns:
        BuilderInvocationResult; ``success`` False means the tick must not
        proceed to JUDGE and ``map_builder_failure`` gives the report code

    Raises:
        TickInterrupted: If cancelled during an agent call
    """
    directive = task.builder or AgentBuild(instructions=task.intent)
    logger.info("Run %s: building %s in %s mode", state.run_id, task.task_id, directive.mode)

    match directive:
        case AgentBuild():
            return await _run_agent(task, directive, config, invoker, repo_root, cancel)
        case PatchBuild(patch=diff):
            if not config.builder.allow_patch_mode:
                return BuilderInvocationResult(
                    success=False,
                    stop_code=codes.BLOCKED_BUILDER_MODE_NOT_ALLOWED,
                    error="Patch mode is disabled (builder.allow_patch_mode)",
                )
            check = run_patch(
                diff, repo_root, resolve_scope(task, config.scope), config.runner.runner_owned_globs
            )
            if not check.ok:
                return BuilderInvocationResult(
                    success=False, raw_response=diff, stop_code=check.stop_code, error=check.reason
                )
            return BuilderInvocationResult(
                success=True,
                result=BuilderResult(summary=f"Applied patch for {task.task_id}"),
                raw_response=diff,
                builder_output_valid=True,
            )
        case ExternalDriverBuild():
            return await _run_external(task, config, repo_root, workspace, cancel)
    raise TypeError(f"Unknown builder directive: {directive!r}")
