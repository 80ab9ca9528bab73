"""Tests for the builder dispatcher and the external driver protocol."""

import json
import stat
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from tickgov import codes
from tickgov.builder import (
    BuilderInvocationResult,
    FailurePolicy,
    build_prompt,
    grade_output,
    map_builder_failure,
    parse_builder_output,
    resolve_failure_policy,
    run_builder,
)
from tickgov.config import TickgovConfig
from tickgov.driver import TASK_FILENAME, resolve_command, unsafe_output_path
from tickgov.errors import AgentError
from tickgov.invoker import AgentResponse
from tickgov.models import AgentBuild, Task
from tickgov.state import TokenUsage, create_initial_state

VALID_RESULT = json.dumps(
    {"summary": "did it", "files_intended": ["src/app.py"], "commands_ran": [], "notes": []}
)

APP_PATCH = """\
diff --git a/src/app.py b/src/app.py
--- a/src/app.py
+++ b/src/app.py
@@ -1,2 +1,2 @@
 def main():
-    return 1
+    return 2
"""


def make_task(kind: str = "execute", builder: dict | None = None, **extra) -> Task:
    data = {
        "task_id": "T-1",
        "milestone_id": "M1",
        "task_kind": kind,
        "intent": "change app",
        "builder": builder or {"mode": "agent", "instructions": "edit src/app.py"},
        **extra,
    }
    if kind == "question":
        data["question"] = {"prompt": "which?"}
    return Task.from_dict(data)


def make_invoker(result=None, error=None) -> MagicMock:
    invoker = MagicMock()
    if error is not None:
        invoker.invoke = AsyncMock(side_effect=error)
    else:
        invoker.invoke = AsyncMock(
            return_value=AgentResponse(result=result, usage=TokenUsage(output_tokens=7, calls=1))
        )
    return invoker


def write_driver(tmp_path: Path, body: str) -> str:
    script = tmp_path / "driver.py"
    script.write_text(f"#!{sys.executable}\nimport json, os, sys, time\n{body}\n")
    script.chmod(script.stat().st_mode | stat.S_IXUSR)
    return str(script)


class TestOutputGrading:
    """Tests for parsing builder output and the failure policy."""

    def test_policy(self):
        assert resolve_failure_policy("question", strict=False) is FailurePolicy.FAIL_CLOSED
        assert resolve_failure_policy("execute", strict=True) is FailurePolicy.FAIL_CLOSED
        assert resolve_failure_policy("execute", strict=False) is FailurePolicy.FAIL_OPEN

    def test_valid_output(self):
        parsed = parse_builder_output(f"Done.\n```json\n{VALID_RESULT}\n```")
        assert parsed.result.summary == "did it"

    @pytest.mark.parametrize(
        "text,kind",
        [
            ("no json", "json_parse"),
            ("[1, 2]", "shape"),
            ('{"summary": "x"}', "schema"),
        ],
    )
    def test_error_kinds(self, text: str, kind: str):
        assert parse_builder_output(text).kind == kind

    def test_fail_open_proceeds(self):
        result = grade_output("garbage", FailurePolicy.FAIL_OPEN)

        assert result.success
        assert not result.builder_output_valid
        assert result.parse_error_kind == "json_parse"

    def test_fail_closed_stops(self):
        result = grade_output("garbage", FailurePolicy.FAIL_CLOSED)

        assert not result.success
        assert map_builder_failure(result) == codes.STOP_BUILDER_JSON_PARSE

    def test_failure_mapping(self):
        assert map_builder_failure(BuilderInvocationResult(False, stop_code="X")) == "X"
        assert (
            map_builder_failure(BuilderInvocationResult(False, parse_error_kind="schema"))
            == codes.STOP_BUILDER_SCHEMA_INVALID
        )
        assert (
            map_builder_failure(BuilderInvocationResult(False, parse_error_kind="shape"))
            == codes.STOP_BUILDER_SHAPE_INVALID
        )
        assert map_builder_failure(BuilderInvocationResult(False)) == codes.STOP_BUILDER_CLI_ERROR


class TestBuildPrompt:
    """Tests for the builder prompt."""

    def test_scope_and_limits_are_rendered(self, tmp_path: Path):
        task = make_task(scope={"allowed_globs": ["src/**"]}, diff_limits={"max_files_touched": 2, "max_lines_changed": 9})

        _, user = build_prompt(task, task.builder, TickgovConfig(), tmp_path)

        assert "Allowed paths: src/**" in user
        assert "at most 2 files and 9 changed lines" in user
        assert "edit src/app.py" in user


class TestAgentMode:
    """Tests for agent-mode builds."""

    @pytest.mark.asyncio
    async def test_success(self, tmp_path: Path):
        invoker = make_invoker(result=VALID_RESULT)

        result = await run_builder(
            create_initial_state(), make_task(), TickgovConfig(), invoker, tmp_path, tmp_path
        )

        assert result.success
        assert result.builder_output_valid
        assert result.calls == 1
        assert result.usage.output_tokens == 7
        assert invoker.invoke.call_args.kwargs["permission_mode"] == "acceptEdits"

    @pytest.mark.asyncio
    async def test_directive_max_turns_is_capped(self, tmp_path: Path):
        invoker = make_invoker(result=VALID_RESULT)
        task = make_task(builder={"mode": "agent", "max_turns": 500})

        await run_builder(create_initial_state(), task, TickgovConfig(), invoker, tmp_path, tmp_path)

        assert invoker.invoke.call_args.kwargs["max_turns"] == 50

    @pytest.mark.asyncio
    async def test_question_task_fails_closed(self, tmp_path: Path):
        invoker = make_invoker(result="not json")

        result = await run_builder(
            create_initial_state(), make_task("question"), TickgovConfig(), invoker, tmp_path, tmp_path
        )

        assert not result.success
        assert map_builder_failure(result) == codes.STOP_BUILDER_JSON_PARSE

    @pytest.mark.asyncio
    async def test_transport_stall(self, tmp_path: Path):
        invoker = make_invoker(error=AgentError("exit 1", exit_code=1, stderr="socket hang up"))

        result = await run_builder(
            create_initial_state(), make_task(), TickgovConfig(), invoker, tmp_path, tmp_path
        )

        assert result.stop_code == codes.BLOCKED_TRANSPORT_STALLED
        assert result.diagnostics["stage"] == "BUILD"

    @pytest.mark.asyncio
    async def test_cli_error(self, tmp_path: Path):
        invoker = make_invoker(error=AgentError("Agent exited with code 1: bad flag", exit_code=1))

        result = await run_builder(
            create_initial_state(), make_task(), TickgovConfig(), invoker, tmp_path, tmp_path
        )

        assert not result.success
        assert map_builder_failure(result) == codes.STOP_BUILDER_CLI_ERROR

    @pytest.mark.asyncio
    async def test_missing_directive_defaults_to_agent(self, tmp_path: Path):
        invoker = make_invoker(result=VALID_RESULT)
        task = Task(task_id="T", milestone_id="M", task_kind="verify_only", intent="look")

        result = await run_builder(create_initial_state(), task, TickgovConfig(), invoker, tmp_path, tmp_path)

        assert result.success
        assert "look" in invoker.invoke.call_args.args[0]


class TestPatchMode:
    """Tests for patch-mode builds."""

    @pytest.mark.asyncio
    async def test_applies_patch(self, git_repo: Path, tmp_path: Path):
        task = make_task(builder={"mode": "patch", "patch": APP_PATCH})

        result = await run_builder(create_initial_state(), task, TickgovConfig(), MagicMock(), git_repo, tmp_path)

        assert result.success
        assert result.calls == 0
        assert "return 2" in (git_repo / "src" / "app.py").read_text()

    @pytest.mark.asyncio
    async def test_disabled(self, git_repo: Path, tmp_path: Path):
        config = TickgovConfig()
        config.builder.allow_patch_mode = False
        task = make_task(builder={"mode": "patch", "patch": APP_PATCH})

        result = await run_builder(create_initial_state(), task, config, MagicMock(), git_repo, tmp_path)

        assert result.stop_code == codes.BLOCKED_BUILDER_MODE_NOT_ALLOWED

    @pytest.mark.asyncio
    async def test_out_of_scope_patch(self, git_repo: Path, tmp_path: Path):
        task = make_task(builder={"mode": "patch", "patch": APP_PATCH}, scope={"allowed_globs": ["docs/**"]})

        result = await run_builder(create_initial_state(), task, TickgovConfig(), MagicMock(), git_repo, tmp_path)

        assert result.stop_code == codes.STOP_PATCH_SCOPE_VIOLATION


class TestExternalMode:
    """Tests for external-driver builds."""

    def test_unsafe_output_paths(self):
        assert unsafe_output_path("") is not None
        assert unsafe_output_path("/tmp/out.json") is not None
        assert unsafe_output_path("../out.json") is not None
        assert unsafe_output_path("out/result.json") is None

    def test_resolve_command(self, tmp_path: Path):
        script = Path(write_driver(tmp_path, "pass"))

        assert resolve_command("driver.py", search_path=str(tmp_path)) == str(script)
        assert resolve_command("./driver.py", cwd=tmp_path) == str(tmp_path / "driver.py")
        assert resolve_command("missing", search_path=str(tmp_path)) is None

    @pytest.mark.asyncio
    async def test_driver_protocol(self, tmp_path: Path):
        workspace = tmp_path / "ws"
        workspace.mkdir()
        config = TickgovConfig()
        config.builder.external.command = write_driver(
            tmp_path,
            "task = json.load(open(os.environ['TICKGOV_TASK_PATH']))\n"
            "assert os.environ['TICKGOV_DRIVER_PROTOCOL_VERSION'] == '1'\n"
            "result = {'summary': task['task_id'], 'files_intended': [], 'commands_ran': [], 'notes': []}\n"
            "json.dump(result, open(os.environ['TICKGOV_OUTPUT_PATH'], 'w'))",
        )
        task = make_task(builder={"mode": "external"})

        result = await run_builder(create_initial_state(), task, config, MagicMock(), tmp_path, workspace)

        assert result.success
        assert result.result.summary == "T-1"
        assert (workspace / TASK_FILENAME).exists()

    @pytest.mark.asyncio
    async def test_not_configured(self, tmp_path: Path):
        task = make_task(builder={"mode": "external"})

        result = await run_builder(create_initial_state(), task, TickgovConfig(), MagicMock(), tmp_path, tmp_path)

        assert result.stop_code == codes.BLOCKED_MISSING_CONFIG

    @pytest.mark.asyncio
    async def test_command_not_found(self, tmp_path: Path):
        config = TickgovConfig()
        config.builder.external.command = str(tmp_path / "nope")

        result = await run_builder(
            create_initial_state(), make_task(builder={"mode": "external"}), config, MagicMock(), tmp_path, tmp_path
        )

        assert result.stop_code == codes.BLOCKED_BUILDER_COMMAND_NOT_FOUND

    @pytest.mark.asyncio
    async def test_driver_failure_and_timeout(self, tmp_path: Path):
        config = TickgovConfig()
        config.builder.external.command = write_driver(tmp_path, "sys.exit(4)")
        task = make_task(builder={"mode": "external"})

        failed = await run_builder(create_initial_state(), task, config, MagicMock(), tmp_path, tmp_path)
        assert failed.stop_code == codes.STOP_BUILDER_CLI_ERROR

        config.builder.external.command = write_driver(tmp_path, "time.sleep(30)")
        config.builder.external.timeout_seconds = 1
        config.verification.kill_grace_seconds = 0.2

        timed_out = await run_builder(create_initial_state(), task, config, MagicMock(), tmp_path, tmp_path)
        assert timed_out.stop_code == codes.STOP_BUILDER_TIMEOUT

    @pytest.mark.asyncio
    async def test_missing_output_fails_open(self, tmp_path: Path):
        config = TickgovConfig()
        config.builder.external.command = write_driver(tmp_path, "pass")

        result = await run_builder(
            create_initial_state(), make_task(builder={"mode": "external"}), config, MagicMock(), tmp_path, tmp_path
        )

        assert result.success
        assert not result.builder_output_valid
