"""External-driver builder: hand the task to an out-of-process driver.

Protocol (version 1): the runner writes TASK.json and the BuilderResult
schema into the workspace, then spawns the configured command with these
environment variables:

    TICKGOV_DRIVER_PROTOCOL_VERSION  protocol version ("1")
    TICKGOV_DRIVER_KIND              configured driver kind
    TICKGOV_TASK_PATH                absolute path of TASK.json
    TICKGOV_OUTPUT_PATH              absolute path the driver must write
    TICKGOV_SCHEMA_PATH              absolute path of the result schema

The driver must write exactly one JSON object to the output path and exit.
"""

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from tickgov import codes
from tickgov.atomic_io import atomic_write_json
from tickgov.config import ExternalDriverConfig
from tickgov.errors import TickInterrupted
from tickgov.models import Task
from tickgov.process import run_argv
from tickgov.schemas import BUILDER_RESULT_SCHEMA

logger = logging.getLogger(__name__)

DRIVER_PROTOCOL_VERSION = "1"
TASK_FILENAME = "TASK.json"
SCHEMA_FILENAME = "builder_result.schema.json"


@dataclass
class DriverOutcome:
    """Raw outcome of a driver run, before output parsing.

    ``code`` is set when the run failed before producing usable output.
    """

    ok: bool
    output_text: str = ""
    code: str | None = None
    error: str = ""


def unsafe_output_path(output_file: str) -> str | None:
    """Return why output_file is unsafe, or None if it is a safe relative path."""
    if not output_file or not output_file.strip():
        return "output_file is empty"
    if "\0" in output_file:
        return "output_file contains a null byte"
    if output_file.startswith(("/", "\\")) or (len(output_file) > 1 and output_file[1] == ":"):
        return "output_file must be relative"
    if ".." in PurePosixPath(output_file.replace("\\", "/")).parts:
        return "output_file must not contain '..'"
    return None


def resolve_command(command: str, search_path: str | None = None, cwd: Path | None = None) -> str | None:
    """Find an executable without invoking a shell.

    Commands containing a path separator are checked directly (relative to
    cwd); bare names are searched along PATH.
    """
    if not command:
        return None
    if "/" in command:
        candidate = Path(command)
        if not candidate.is_absolute() and cwd is not None:
            candidate = cwd / candidate
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
        return None

    search_path = os.environ.get("PATH", "") if search_path is None else search_path
    for directory in search_path.split(os.pathsep):
        if not directory:
            continue
        candidate = Path(directory) / command
        if candidate.is_file() and os.access(candidate, os.X_OK):
            return str(candidate)
    return None


def driver_env(config: ExternalDriverConfig, task_path: Path, output_path: Path, schema_path: Path) -> dict[str, str]:
    env = dict(os.environ)
    env.update(
        {
            "TICKGOV_DRIVER_PROTOCOL_VERSION": DRIVER_PROTOCOL_VERSION,
            "TICKGOV_DRIVER_KIND": config.driver_kind,
            "TICKGOV_TASK_PATH": str(task_path.resolve()),
            "TICKGOV_OUTPUT_PATH": str(output_path.resolve()),
            "TICKGOV_SCHEMA_PATH": str(schema_path.resolve()),
        }
    )
    return env


async def run_external_driver(
    task: Task,
    config: ExternalDriverConfig,
    workspace: Path,
    repo_root: Path,
    cancel: threading.Event | None = None,
    kill_grace_seconds: float = 1.0,
) -> DriverOutcome:
    """Run the external driver for one task.

    Returns:
        DriverOutcome with the output file text on success, or a code:
        BLOCKED_MISSING_CONFIG (unsafe output path),
        BLOCKED_BUILDER_COMMAND_NOT_FOUND, STOP_BUILDER_TIMEOUT or
        STOP_BUILDER_CLI_ERROR

    Raises:
        TickInterrupted: If cancelled while the driver ran
    """
    problem = unsafe_output_path(config.output_file)
    if problem:
        return DriverOutcome(ok=False, code=codes.BLOCKED_MISSING_CONFIG, error=problem)

    executable = resolve_command(config.command, cwd=repo_root)
    if executable is None:
        return DriverOutcome(
            ok=False,
            code=codes.BLOCKED_BUILDER_COMMAND_NOT_FOUND,
            error=f"Driver command not found or not executable: {config.command!r}",
        )

    task_path = workspace / TASK_FILENAME
    schema_path = workspace / SCHEMA_FILENAME
    output_path = workspace / config.output_file
    atomic_write_json(task_path, task.to_dict())
    atomic_write_json(schema_path, BUILDER_RESULT_SCHEMA)
    try:
        output_path.unlink()
    except FileNotFoundError:
        pass

    logger.info("Running external driver %s (timeout %ss)", executable, config.timeout_seconds)
    result = await asyncio.to_thread(
        run_argv,
        [executable, *config.args],
        cwd=repo_root,
        timeout=config.timeout_seconds,
        env=driver_env(config, task_path, output_path, schema_path),
        cancel=cancel,
        kill_grace_seconds=kill_grace_seconds,
    )

    if result.cancelled:
        raise TickInterrupted("External driver cancelled")
    if result.timed_out:
        return DriverOutcome(
            ok=False,
            code=codes.STOP_BUILDER_TIMEOUT,
            error=f"Driver timed out after {config.timeout_seconds}s",
        )
    if result.exit_code != 0:
        detail = (result.stderr or result.stdout).strip()[-1000:]
        return DriverOutcome(
            ok=False,
            code=codes.STOP_BUILDER_CLI_ERROR,
            error=f"Driver exited with code {result.exit_code}: {detail}",
        )

    try:
        text = output_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        text = ""
    except OSError as e:
        return DriverOutcome(ok=False, code=codes.STOP_BUILDER_CLI_ERROR, error=f"Cannot read driver output: {e}")
    return DriverOutcome(ok=True, output_text=text)
