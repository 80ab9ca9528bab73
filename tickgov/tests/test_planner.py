"""Tests for the planner and prompt rendering."""

import json
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import pytest

from tickgov import codes
from tickgov.config import TickgovConfig, VerificationTemplate
from tickgov.errors import AgentError
from tickgov.invoker import AgentResponse
from tickgov.planner import PlannerContext, build_prompt, parse_task_output, request_task
from tickgov.prompts import load_template, render
from tickgov.state import TokenUsage

TASK = {
    "task_id": "T-1",
    "milestone_id": "M1",
    "task_kind": "execute",
    "intent": "Add a function",
    "builder": {"mode": "agent", "instructions": "add it"},
}


def response(result: str, cost: float = 0.1) -> AgentResponse:
    return AgentResponse(result=result, usage=TokenUsage(input_tokens=10, cost_usd=cost, calls=1))


def make_invoker(*results) -> MagicMock:
    invoker = MagicMock()
    invoker.invoke = AsyncMock(side_effect=list(results))
    return invoker


class TestPrompts:
    """Tests for prompt templates."""

    def test_render_leaves_unknown_placeholders(self):
        assert render("{{A}} and {{B}}", {"A": "x"}) == "x and {{B}}"

    def test_load_template_default_and_file(self, tmp_path: Path):
        (tmp_path / "p.md").write_text("custom {{X}}")

        assert load_template(tmp_path, None, "default") == "default"
        assert load_template(tmp_path, "p.md", "default") == "custom {{X}}"

    def test_planner_prompt_includes_context(self, tmp_path: Path):
        config = TickgovConfig()
        config.verification.templates = [VerificationTemplate(id="unit", cmd="pytest")]
        context = PlannerContext(milestone_id="M1", last_verdict="stop", last_code="STOP_X")

        _, user = build_prompt(config, tmp_path, context)

        assert "Available verification templates: unit" in user
        assert "Last verdict: stop (STOP_X)" in user
        assert "(no previous report)" in user


class TestParseTaskOutput:
    """Tests for parse_task_output()."""

    def test_fenced_task(self):
        task, diagnostics = parse_task_output(f"Plan:\n```json\n{json.dumps(TASK)}\n```")

        assert task.task_id == "T-1"
        assert diagnostics["extract_method"] == "fenced"

    def test_schema_errors_are_reported(self):
        task, diagnostics = parse_task_output(json.dumps({"task_id": "T"}))

        assert task is None
        assert diagnostics["schema_errors"]

    def test_no_json(self):
        task, diagnostics = parse_task_output("I could not decide")

        assert task is None
        assert diagnostics["extract_method"] is None


class TestRequestTask:
    """Tests for request_task() with a mocked agent."""

    @pytest.mark.asyncio
    async def test_first_attempt(self, tmp_path: Path):
        invoker = make_invoker(response(json.dumps(TASK)))

        outcome = await request_task(TickgovConfig(), invoker, tmp_path, PlannerContext())

        assert outcome.task.intent == "Add a function"
        assert outcome.calls == 1
        assert outcome.usage.cost_usd == 0.1
        kwargs = invoker.invoke.call_args.kwargs
        assert kwargs["permission_mode"] == "plan"
        assert kwargs["allowed_tools"] == "Read,Glob,Grep"

    @pytest.mark.asyncio
    async def test_retry_feeds_back_errors(self, tmp_path: Path):
        invoker = make_invoker(response("nonsense"), response(json.dumps(TASK)))

        outcome = await request_task(TickgovConfig(), invoker, tmp_path, PlannerContext())

        assert outcome.task is not None
        assert outcome.calls == 2
        assert outcome.usage.cost_usd == pytest.approx(0.2)
        retry_prompt = invoker.invoke.call_args_list[1].args[0]
        assert "=== RETRY ===" in retry_prompt

    @pytest.mark.asyncio
    async def test_exhausted_retries_block(self, tmp_path: Path):
        invoker = make_invoker(response("nope"), response("still nope"))

        outcome = await request_task(TickgovConfig(), invoker, tmp_path, PlannerContext())

        assert outcome.task is None
        assert outcome.blocked_code == codes.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID
        assert outcome.diagnostics["attempts"] == 2
        assert outcome.diagnostics["stdout_excerpt"] == "still nope"

    @pytest.mark.asyncio
    async def test_zero_retries(self, tmp_path: Path):
        config = TickgovConfig()
        config.planner.max_parse_retries_per_tick = 0
        invoker = make_invoker(response("nope"))

        outcome = await request_task(config, invoker, tmp_path, PlannerContext())

        assert outcome.blocked_code == codes.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID
        assert invoker.invoke.call_count == 1

    @pytest.mark.asyncio
    async def test_transport_stall_is_not_retried(self, tmp_path: Path):
        invoker = make_invoker(AgentError("exit 1", exit_code=1, stderr="ECONNRESET request_id: req_1"))

        outcome = await request_task(TickgovConfig(), invoker, tmp_path, PlannerContext())

        assert outcome.blocked_code == codes.BLOCKED_TRANSPORT_STALLED
        assert "req_1" in outcome.reason
        assert outcome.diagnostics["stage"] == "ORCHESTRATE"
        assert invoker.invoke.call_count == 1

    @pytest.mark.asyncio
    async def test_plain_agent_error_is_retried(self, tmp_path: Path):
        invoker = make_invoker(AgentError("Invalid API key", exit_code=1), response(json.dumps(TASK)))

        outcome = await request_task(TickgovConfig(), invoker, tmp_path, PlannerContext())

        assert outcome.task is not None
        assert outcome.calls == 2
