"""Verification runner: declarative check commands without a shell.

Templates are argv arrays with ``{{param}}`` placeholders. Parameters come
from the (untrusted) task and are validated against injection rules before
anything runs. Fast templates run before slow ones and the first failure
stops the sequence.
"""

import logging
import re
import threading
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

from tickgov import codes
from tickgov.config import VerificationConfig, VerificationTemplate
from tickgov.errors import TemplateParamError, TickInterrupted
from tickgov.models import ParamValue, Task
from tickgov.process import run_argv

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

Phase = Literal["fast", "slow"]


@dataclass
class ParamCheck:
    ok: bool
    param: str | None = None
    reason: str | None = None


@dataclass
class VerificationRun:
    """One executed template, as recorded in the report."""

    template_id: str
    phase: Phase
    cmd: str
    args: list[str]
    exit_code: int
    duration_ms: int
    timed_out: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class VerificationOutcome:
    ok: bool
    runs: list[VerificationRun] = field(default_factory=list)
    stop_code: str | None = None
    reason: str = ""
    log: str = ""


def validate_param(value: str, config: VerificationConfig) -> str | None:
    """Check one parameter value against the injection rules.

    Returns:
        None if the value is safe, otherwise the rejection reason
    """
    if len(value) > config.max_param_len:
        return f"length {len(value)} exceeds maximum {config.max_param_len}"
    if config.reject_whitespace_in_params and re.search(r"\s", value):
        return "contains whitespace"
    if config.reject_dotdot and ".." in value:
        return "contains '..' path traversal"
    if config.reject_metachars_regex:
        try:
            pattern = re.compile(config.reject_metachars_regex)
        except re.error as e:
            return f"invalid metacharacter regex in config: {e}"
        if pattern.search(value):
            return f"matches metacharacter regex {config.reject_metachars_regex}"
    return None


def _stringify(value: ParamValue) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def interpolate(template: VerificationTemplate, params: dict[str, ParamValue]) -> list[str]:
    """Fill ``{{name}}`` placeholders in the template args.

    Raises:
        TemplateParamError: If a placeholder has no (non-null) value
    """

    def substitute(match: re.Match) -> str:
        name = match.group(1)
        if params.get(name) is None:
            raise TemplateParamError(template.id, name)
        return _stringify(params[name])

    return [PLACEHOLDER_RE.sub(substitute, arg) for arg in template.args]


def check_params(task: Task, config: VerificationConfig) -> ParamCheck:
    """Validate every parameter the task supplies for its templates.

    Returns:
        ParamCheck with ok=False and the offending ``template.param`` name
        on the first unsafe value
    """
    for template_id, params in task.verification.params.items():
        for name, value in params.items():
            if value is None:
                continue
            reason = validate_param(_stringify(value), config)
            if reason:
                return ParamCheck(ok=False, param=f"{template_id}.{name}", reason=reason)
    return ParamCheck(ok=True)


def _planned(task: Task) -> list[tuple[Phase, str]]:
    return [("fast", t) for t in task.verification.fast] + [
        ("slow", t) for t in task.verification.slow
    ]


def resolve_commands(
    task: Task, config: VerificationConfig
) -> list[tuple[Phase, VerificationTemplate, list[str]]]:
    """Resolve template ids and interpolate args for every planned run.

    Raises:
        KeyError: If a template id is not configured
        TemplateParamError: If a placeholder has no value
    """
    resolved = []
    for phase, template_id in _planned(task):
        template = config.get_template(template_id)
        if template is None:
            raise KeyError(template_id)
        args = interpolate(template, task.verification.params.get(template_id, {}))
        resolved.append((phase, template, args))
    return resolved


def run_verifications(
    task: Task,
    config: VerificationConfig,
    cwd: Path,
    cancel: threading.Event | None = None,
) -> VerificationOutcome:
    """Run the task's fast then slow verification templates.

    Parameter safety is checked for the whole plan before the first command
    runs. Execution stops at the first failing or timed-out command.

    Raises:
        TickInterrupted: If cancellation is requested mid-run
    """
    check = check_params(task, config)
    if not check.ok:
        return VerificationOutcome(
            ok=False,
            stop_code=codes.STOP_VERIFY_TAINTED,
            reason=f"Unsafe verification parameter {check.param}: {check.reason}",
        )
    try:
        commands = resolve_commands(task, config)
    except KeyError as e:
        return VerificationOutcome(
            ok=False,
            stop_code=codes.STOP_VERIFY_TAINTED,
            reason=f"Unknown verification template: {e.args[0]}",
        )
    except TemplateParamError as e:
        return VerificationOutcome(ok=False, stop_code=codes.STOP_VERIFY_TAINTED, reason=str(e))

    runs: list[VerificationRun] = []
    log_parts: list[str] = []
    for phase, template, args in commands:
        timeout = (
            config.timeout_fast_seconds if phase == "fast" else config.timeout_slow_seconds
        )
        logger.info("Verify [%s] %s: %s %s", phase, template.id, template.cmd, " ".join(args))
        try:
            result = run_argv(
                [template.cmd, *args],
                cwd=cwd,
                timeout=timeout,
                cancel=cancel,
                kill_grace_seconds=config.kill_grace_seconds,
                max_output_bytes=config.max_output_bytes,
            )
        except OSError as e:
            runs.append(
                VerificationRun(template.id, phase, template.cmd, args, exit_code=127, duration_ms=0)
            )
            log_parts.append(f"=== {template.id} ({phase}) ===\nfailed to start: {e}\n")
            return VerificationOutcome(
                ok=False,
                runs=runs,
                stop_code=_failure_code(phase),
                reason=f"{template.id}: failed to start {template.cmd}: {e}",
                log="\n".join(log_parts),
            )

        if result.cancelled:
            raise TickInterrupted(f"Verification {template.id} cancelled")

        runs.append(
            VerificationRun(
                template_id=template.id,
                phase=phase,
                cmd=template.cmd,
                args=args,
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
                timed_out=result.timed_out,
            )
        )
        log_parts.append(
            f"=== {template.id} ({phase}) exit={result.exit_code}"
            f"{' TIMEOUT' if result.timed_out else ''} ===\n"
            f"--- stdout ---\n{result.stdout}\n--- stderr ---\n{result.stderr}\n"
        )

        if result.timed_out:
            return VerificationOutcome(
                ok=False,
                runs=runs,
                stop_code=codes.STOP_VERIFY_FLAKY_OR_TIMEOUT,
                reason=f"{template.id} timed out after {timeout}s",
                log="\n".join(log_parts),
            )
        if result.exit_code != 0:
            return VerificationOutcome(
                ok=False,
                runs=runs,
                stop_code=_failure_code(phase),
                reason=f"{template.id} exited with code {result.exit_code}",
                log="\n".join(log_parts),
            )

    return VerificationOutcome(ok=True, runs=runs, log="\n".join(log_parts))


def _failure_code(phase: Phase) -> str:
    return codes.STOP_VERIFY_FAILED_FAST if phase == "fast" else codes.STOP_VERIFY_FAILED_SLOW
