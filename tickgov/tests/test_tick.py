"""End-to-end tick tests against a real git repository with a scripted agent."""

import json
import os
import sys
import threading
from pathlib import Path
from unittest.mock import patch

import pytest

from tickgov import codes
from tickgov.atomic_io import atomic_write_json
from tickgov.config import TickgovConfig, VerificationTemplate
from tickgov.fingerprint import fingerprint
from tickgov.git import run_git
from tickgov.lock import TickLock
from tickgov.models import Task
from tickgov.report import BLOCKED_JSON, REPORT_JSON, REPORT_MD
from tickgov.rollback import RollbackResult
from tickgov.state import STATE_FILENAME, WorkspaceState
from tickgov.tick import run_tick

BUILDER_OK = json.dumps(
    {"summary": "done", "files_intended": ["src/app.py"], "commands_ran": [], "notes": []}
)


def task_json(**overrides) -> str:
    data = {
        "task_id": "T-1",
        "milestone_id": "M1",
        "task_kind": "execute",
        "intent": "Return two from main",
        "builder": {"mode": "agent", "instructions": "edit src/app.py"},
    }
    data.update(overrides)
    return json.dumps({k: v for k, v in data.items() if v is not None})


def edit(path: str, content: str, reply: str = BUILDER_OK):
    """Builder reply that writes a file before answering."""

    def apply(repo: Path) -> str:
        target = repo / path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
        return reply

    return apply


def workspace(repo: Path) -> Path:
    return repo / ".tickgov"


def read_workspace_json(repo: Path, name: str) -> dict:
    return json.loads((workspace(repo) / name).read_text())


def git(repo: Path, *args: str) -> str:
    return run_git(list(args), repo).stdout


def status(repo: Path) -> str:
    return git(repo, "status", "--porcelain")


class TestSuccess:
    """Ticks that end in SUCCESS."""

    @pytest.mark.asyncio
    async def test_execute_task_is_committed(self, git_repo: Path, head: str, agent):
        invoker = agent(task_json(), edit("src/app.py", "def main():\n    return 2\n"))

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.verdict == "success"
        assert outcome.report.code == codes.SUCCESS
        assert outcome.report.head_commit != head
        assert "tickgov: T-1: Return two from main" in git(git_repo, "log", "-1", "--format=%s")
        assert status(git_repo) == ""
        assert outcome.usage.calls == 2
        assert outcome.usage.cost_usd == pytest.approx(0.02)

        report = read_workspace_json(git_repo, REPORT_JSON)
        assert report["blast_radius"]["files_touched"] == 1
        assert report["scope"]["touched_paths"] == ["src/app.py"]
        assert (workspace(git_repo) / REPORT_MD).exists()
        assert not (workspace(git_repo) / BLOCKED_JSON).exists()
        assert not (workspace(git_repo) / "lock.json").exists()

        state = read_workspace_json(git_repo, STATE_FILENAME)
        assert state["milestone_id"] == "M1"
        assert state["total_ticks"] == 1
        assert state["budgets"]["orchestrator_calls"] == 1
        assert state["budgets"]["builder_calls"] == 1
        assert state["last_verdict"] == "success"

        history = workspace(git_repo) / "history" / outcome.report.run_id
        assert (history / REPORT_JSON).exists()
        assert (history / "diff.patch").exists()

    @pytest.mark.asyncio
    async def test_commit_disabled_leaves_changes(self, git_repo: Path, head: str, agent):
        config = TickgovConfig()
        config.runner.commit_on_success = False
        invoker = agent(task_json(), edit("src/app.py", "def main():\n    return 2\n"))

        outcome = await run_tick(config, repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.SUCCESS
        assert outcome.report.head_commit == head
        assert "src/app.py" in status(git_repo)

    @pytest.mark.asyncio
    async def test_patch_mode(self, git_repo: Path, head: str, agent):
        diff = (
            "--- a/README.md\n+++ b/README.md\n@@ -1 +1,2 @@\n # demo\n+more\n"
        )
        invoker = agent(task_json(builder={"mode": "patch", "patch": diff}))

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.SUCCESS
        assert (git_repo / "README.md").read_text() == "# demo\nmore\n"
        assert len(invoker.calls) == 1

    @pytest.mark.asyncio
    async def test_planner_stop_signal(self, git_repo: Path, agent):
        invoker = agent(task_json(task_kind="verify_only", builder=None, control={"signal": "stop", "reason": "done"}))

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.SUCCESS
        assert outcome.orchestrator_stop
        assert "done" in outcome.report.reason

    @pytest.mark.asyncio
    async def test_verify_only_runs_checks(self, git_repo: Path, agent):
        config = TickgovConfig()
        config.verification.templates = [VerificationTemplate(id="ok", cmd=sys.executable, args=["-c", "pass"])]
        invoker = agent(task_json(task_kind="verify_only", builder=None, verification={"fast": ["ok"]}))

        outcome = await run_tick(config, repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.SUCCESS
        assert [run.template_id for run in outcome.report.verification.runs] == ["ok"]
        assert outcome.workspace_state.budgets.verify_runs == 1


class TestStops:
    """Ticks that stop and roll back."""

    @pytest.mark.asyncio
    async def test_scope_violation_rolls_back(self, git_repo: Path, head: str, agent):
        invoker = agent(
            task_json(scope={"allowed_globs": ["src/**"]}),
            edit("docs/notes.md", "scratch\n"),
        )

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED
        assert outcome.report.scope.violations == ["docs/notes.md"]
        assert not (git_repo / "docs" / "notes.md").exists()
        assert status(git_repo) == ""
        assert git(git_repo, "rev-parse", "HEAD").strip() == head

        state = outcome.workspace_state
        assert state.failure_streak == 1
        expected = Task.from_dict(json.loads(task_json(scope={"allowed_globs": ["src/**"]})))
        assert state.last_failed_fingerprint == fingerprint(expected)
        assert [(e.tick, e.verdict) for e in state.stop_history] == [(1, "stop")]

    @pytest.mark.asyncio
    async def test_diff_too_large(self, git_repo: Path, agent):
        invoker = agent(
            task_json(diff_limits={"max_files_touched": 5, "max_lines_changed": 2}),
            edit("src/app.py", "a = 1\nb = 2\nc = 3\n"),
        )

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_DIFF_TOO_LARGE
        assert (git_repo / "src" / "app.py").read_text() == "def main():\n    return 1\n"

    @pytest.mark.asyncio
    async def test_verification_failure_rolls_back(self, git_repo: Path, agent):
        config = TickgovConfig()
        config.verification.templates = [
            VerificationTemplate(id="unit", cmd=sys.executable, args=["-c", "import sys; sys.exit(1)"])
        ]
        invoker = agent(
            task_json(verification={"fast": ["unit"]}),
            edit("src/app.py", "def main():\n    return 2\n"),
        )

        outcome = await run_tick(config, repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_VERIFY_FAILED_FAST
        assert outcome.report.verification.runs[0].exit_code == 1
        assert status(git_repo) == ""

    @pytest.mark.asyncio
    async def test_builder_invalid_output_fails_open(self, git_repo: Path, agent):
        invoker = agent(task_json(), edit("src/app.py", "def main():\n    return 2\n", reply="all done!"))

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.SUCCESS
        assert any("Builder output invalid" in e for e in outcome.report.errors)

    @pytest.mark.asyncio
    async def test_strict_builder_output_stops(self, git_repo: Path, agent):
        config = TickgovConfig()
        config.builder.agent.strict_builder_json = True
        invoker = agent(task_json(), edit("src/app.py", "changed\n", reply="all done!"))

        outcome = await run_tick(config, repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_BUILDER_JSON_PARSE
        assert status(git_repo) == ""

    @pytest.mark.asyncio
    async def test_head_moved_keeps_commit(self, git_repo: Path, head: str, agent):
        def commit_behind_our_back(repo: Path) -> str:
            (repo / "src" / "app.py").write_text("def main():\n    return 3\n")
            git(repo, "commit", "-q", "-a", "-m", "sneaky")
            (repo / "stray.txt").write_text("x\n")
            return BUILDER_OK

        invoker = agent(task_json(), commit_behind_our_back)

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_HEAD_MOVED
        assert git(git_repo, "rev-parse", "HEAD").strip() != head
        assert not (git_repo / "stray.txt").exists()
        assert status(git_repo) == ""

    @pytest.mark.asyncio
    async def test_redispatch_of_failed_task(self, git_repo: Path, agent):
        proposal = task_json()
        atomic_write_json(
            workspace(git_repo) / STATE_FILENAME,
            {
                "last_failed_fingerprint": fingerprint(Task.from_dict(json.loads(proposal))),
                "failure_streak": 1,
            },
        )
        invoker = agent(proposal)

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_REDISPATCH_IDENTICAL_TASK
        assert len(invoker.calls) == 1
        assert outcome.workspace_state.failure_streak == 2

    @pytest.mark.asyncio
    async def test_verify_only_side_effects(self, git_repo: Path, agent):
        invoker = agent(edit("src/app.py", "oops\n", reply=task_json(task_kind="verify_only", builder=None)))

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_VERIFY_ONLY_SIDE_EFFECTS
        assert status(git_repo) == ""


class TestQuestions:
    """Question tasks."""

    @pytest.mark.asyncio
    async def test_question_task(self, git_repo: Path, agent):
        invoker = agent(
            task_json(task_kind="question", builder=None, question={"prompt": "Which DB?", "choices": ["pg"]})
        )

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_ORCHESTRATOR_ASK_QUESTION
        assert outcome.report.question.prompt == "Which DB?"
        assert read_workspace_json(git_repo, REPORT_JSON)["question"]["choices"] == ["pg"]
        assert outcome.workspace_state.failure_streak == 0
        assert len(invoker.calls) == 1

    @pytest.mark.asyncio
    async def test_question_builder_must_not_edit(self, git_repo: Path, agent):
        invoker = agent(
            task_json(task_kind="question", question={"prompt": "Look first?"}),
            edit("src/app.py", "edited\n"),
        )

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_QUESTION_SIDE_EFFECTS
        assert status(git_repo) == ""

    @pytest.mark.asyncio
    async def test_reviewer_asks_question(self, git_repo: Path, agent):
        config = TickgovConfig()
        config.reviewer.enabled = True
        review = json.dumps({"decision": "ask_question", "question": {"prompt": "Touch auth?"}})
        invoker = agent(task_json(scope={"allowed_globs": ["src/auth/**"]}), review)

        outcome = await run_tick(config, repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_REVIEWER_ASK_QUESTION
        assert outcome.report.escalation == "reviewer"
        assert outcome.report.risk_flags == ["high_risk_path"]
        assert outcome.report.question.prompt == "Touch auth?"
        assert outcome.workspace_state.budgets.orchestrator_calls == 2
        assert outcome.workspace_state.budgets.builder_calls == 0

    @pytest.mark.asyncio
    async def test_reviewer_failure_forces_patch(self, git_repo: Path, agent):
        config = TickgovConfig()
        config.reviewer.enabled = True
        invoker = agent(task_json(scope={"allowed_globs": ["src/auth/**"]}), "no idea")

        outcome = await run_tick(config, repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_REVIEWER_FORCED_PATCH
        assert outcome.report.reviewer_error
        assert "reviewer_error" in read_workspace_json(git_repo, REPORT_JSON)


class TestBlocked:
    """Ticks that end blocked."""

    @pytest.mark.asyncio
    async def test_dirty_worktree(self, git_repo: Path, agent):
        (git_repo / "README.md").write_text("local edit\n")
        invoker = agent()

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.BLOCKED_DIRTY_WORKTREE
        blocked = read_workspace_json(git_repo, BLOCKED_JSON)
        assert blocked["code"] == codes.BLOCKED_DIRTY_WORKTREE
        assert "stash" in blocked["remediation"]
        assert (git_repo / "README.md").read_text() == "local edit\n"

    @pytest.mark.asyncio
    async def test_rollback_leaving_residue_blocks(self, git_repo: Path, agent):
        invoker = agent(
            task_json(task_kind="question", question={"prompt": "Look first?"}),
            edit("src/app.py", "edited\n"),
        )

        with patch("tickgov.rollback.verify_clean_worktree", return_value=(False, ["src/app.py"])):
            outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.BLOCKED_ROLLBACK_DIRTY
        assert "src/app.py" in outcome.report.reason
        blocked = read_workspace_json(git_repo, BLOCKED_JSON)
        assert blocked["code"] == codes.BLOCKED_ROLLBACK_DIRTY
        assert blocked["diagnostics"]["original_code"] == codes.STOP_QUESTION_SIDE_EFFECTS
        assert read_workspace_json(git_repo, REPORT_JSON)["verdict"] == "blocked"

    @pytest.mark.asyncio
    async def test_failed_rollback_blocks(self, git_repo: Path, agent):
        invoker = agent(
            task_json(scope={"allowed_globs": ["src/**"]}),
            edit("docs/notes.md", "scratch\n"),
        )

        with patch(
            "tickgov.rollback.rollback_to_commit",
            return_value=RollbackResult(ok=False, error="disk full"),
        ):
            outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.BLOCKED_ROLLBACK_FAILED
        assert "disk full" in outcome.report.reason
        blocked = read_workspace_json(git_repo, BLOCKED_JSON)
        assert blocked["code"] == codes.BLOCKED_ROLLBACK_FAILED
        assert blocked["diagnostics"]["original_code"] == codes.STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED

    @pytest.mark.asyncio
    async def test_planner_output_invalid(self, git_repo: Path, agent):
        invoker = agent("hmm", "still hmm")

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID
        assert read_workspace_json(git_repo, BLOCKED_JSON)["diagnostics"]["attempts"] == 2
        assert outcome.workspace_state.budgets.orchestrator_calls == 2

    @pytest.mark.asyncio
    async def test_budget_cap(self, git_repo: Path, agent):
        config = TickgovConfig()
        config.budgets.per_milestone.max_ticks = 1
        atomic_write_json(
            workspace(git_repo) / STATE_FILENAME, {"milestone_id": "M1", "budgets": {"ticks": 1}}
        )

        outcome = await run_tick(config, repo_root=git_repo, invoker=agent())

        assert outcome.report.code == codes.BLOCKED_BUDGET_CAP

    @pytest.mark.asyncio
    async def test_blocked_cleared_by_next_success(self, git_repo: Path, agent):
        (git_repo / "README.md").write_text("local edit\n")
        await run_tick(TickgovConfig(), repo_root=git_repo, invoker=agent())
        git(git_repo, "checkout", "--", "README.md")

        outcome = await run_tick(
            TickgovConfig(),
            repo_root=git_repo,
            invoker=agent(task_json(), edit("src/app.py", "def main():\n    return 2\n")),
        )

        assert outcome.report.code == codes.SUCCESS
        assert not (workspace(git_repo) / BLOCKED_JSON).exists()

    @pytest.mark.asyncio
    async def test_lock_held_writes_nothing(self, git_repo: Path, agent):
        lock = TickLock(workspace(git_repo) / "lock.json")
        lock.acquire()

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=agent())

        assert outcome.report.code == codes.BLOCKED_LOCK_HELD
        assert outcome.report.to_dict()["reason"]
        assert not (workspace(git_repo) / REPORT_JSON).exists()
        assert (workspace(git_repo) / "lock.json").exists()

    @pytest.mark.asyncio
    async def test_corrupt_lock_needs_recovery(self, git_repo: Path, agent):
        workspace(git_repo).mkdir()
        (workspace(git_repo) / "lock.json").write_text("{not json")

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=agent())

        assert outcome.report.code == codes.BLOCKED_CRASH_RECOVERY_REQUIRED
        assert read_workspace_json(git_repo, BLOCKED_JSON)["code"] == codes.BLOCKED_CRASH_RECOVERY_REQUIRED
        assert not (workspace(git_repo) / STATE_FILENAME).exists()
        assert (workspace(git_repo) / "lock.json").read_text() == "{not json"

    @pytest.mark.asyncio
    async def test_commit_failure(self, git_repo: Path, agent):
        hook = git_repo / ".git" / "hooks" / "pre-commit"
        hook.write_text("#!/bin/sh\nexit 1\n")
        os.chmod(hook, 0o755)
        invoker = agent(task_json(), edit("src/app.py", "def main():\n    return 2\n"))

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.BLOCKED_COMMIT_FAILED
        assert status(git_repo) == ""


class TestInterruption:
    """Cancellation and unexpected failures."""

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, git_repo: Path, agent):
        cancel = threading.Event()
        cancel.set()
        invoker = agent()

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker, cancel=cancel)

        assert outcome.report.code == codes.STOP_INTERRUPTED
        assert invoker.calls == []
        assert not (workspace(git_repo) / "lock.json").exists()

    @pytest.mark.asyncio
    async def test_cancel_during_build_rolls_back(self, git_repo: Path, agent):
        cancel = threading.Event()

        def edit_then_cancel(repo: Path) -> str:
            (repo / "src" / "app.py").write_text("half done\n")
            cancel.set()
            return BUILDER_OK

        invoker = agent(task_json(), edit_then_cancel)

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker, cancel=cancel)

        assert outcome.report.code == codes.STOP_INTERRUPTED
        assert status(git_repo) == ""
        assert outcome.workspace_state.failure_streak == 0

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reraised_after_report(self, git_repo: Path, agent):
        invoker = agent(RuntimeError("kaboom"))

        with pytest.raises(RuntimeError, match="kaboom"):
            await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        report = read_workspace_json(git_repo, REPORT_JSON)
        assert report["code"] == codes.STOP_INTERRUPTED
        assert "kaboom" in report["reason"]
        assert not (workspace(git_repo) / "lock.json").exists()

    @pytest.mark.asyncio
    async def test_markdown_failure_does_not_change_outcome(self, git_repo: Path, agent):
        invoker = agent(task_json(), edit("src/app.py", "def main():\n    return 2\n"))

        with patch("tickgov.report.render_markdown", side_effect=ValueError("bad template")):
            outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.SUCCESS
        assert (workspace(git_repo) / REPORT_JSON).exists()
        assert not (workspace(git_repo) / REPORT_MD).exists()

    @pytest.mark.asyncio
    async def test_markdown_failure_on_blocked_tick(self, git_repo: Path, agent):
        (git_repo / "README.md").write_text("local edit\n")

        with patch("tickgov.report.render_markdown", side_effect=ValueError("bad template")):
            outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=agent())

        assert outcome.report.code == codes.BLOCKED_DIRTY_WORKTREE
        assert read_workspace_json(git_repo, REPORT_JSON)["code"] == codes.BLOCKED_DIRTY_WORKTREE
        assert read_workspace_json(git_repo, BLOCKED_JSON)["code"] == codes.BLOCKED_DIRTY_WORKTREE
        assert not (workspace(git_repo) / REPORT_MD).exists()

    @pytest.mark.asyncio
    async def test_state_survives_between_ticks(self, git_repo: Path, agent):
        await run_tick(TickgovConfig(), repo_root=git_repo, invoker=agent("garbage", "garbage"))

        state = WorkspaceState.load(workspace(git_repo))

        assert state.total_ticks == 1
        assert state.last_verdict == "blocked"
        assert state.last_code == codes.BLOCKED_ORCHESTRATOR_OUTPUT_INVALID


class TestRunnerOwnedFiles:
    """Runner-owned files that are dirty before the tick starts."""

    CONFIG_TEXT = '{"scope": {"default_forbidden_globs": [".env"]}}\n'

    @pytest.mark.asyncio
    async def test_untouched_config_does_not_block(self, git_repo: Path, agent):
        (git_repo / "tickgov.json").write_text(self.CONFIG_TEXT)
        invoker = agent(task_json(), edit("src/app.py", "def main():\n    return 2\n"))

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.SUCCESS
        assert outcome.report.scope.touched_paths == ["src/app.py"]
        assert status(git_repo) == "?? tickgov.json\n"

    @pytest.mark.asyncio
    async def test_builder_rewriting_untracked_config_stops(self, git_repo: Path, head: str, agent):
        (git_repo / "tickgov.json").write_text(self.CONFIG_TEXT)

        def rewrite(repo: Path) -> str:
            (repo / "tickgov.json").write_text('{"scope": {"default_forbidden_globs": []}}\n')
            (repo / "src" / "app.py").write_text("def main():\n    return 2\n")
            return BUILDER_OK

        invoker = agent(task_json(), rewrite)

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_RUNNER_OWNED_MUTATION
        assert outcome.report.scope.violations == ["tickgov.json"]
        assert (git_repo / "tickgov.json").read_text() == self.CONFIG_TEXT
        assert (git_repo / "src" / "app.py").read_text() == "def main():\n    return 1\n"
        assert git(git_repo, "rev-parse", "HEAD").strip() == head

    @pytest.mark.asyncio
    async def test_builder_deleting_untracked_config_stops(self, git_repo: Path, agent):
        (git_repo / "tickgov.json").write_text(self.CONFIG_TEXT)

        def delete(repo: Path) -> str:
            (repo / "tickgov.json").unlink()
            return BUILDER_OK

        invoker = agent(task_json(), delete)

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_RUNNER_OWNED_MUTATION
        assert (git_repo / "tickgov.json").read_text() == self.CONFIG_TEXT

    @pytest.mark.asyncio
    async def test_rollback_keeps_operator_edits_to_tracked_config(self, git_repo: Path, agent):
        (git_repo / "tickgov.json").write_text("{}\n")
        git(git_repo, "add", "tickgov.json")
        git(git_repo, "commit", "-q", "-m", "config")
        base = git(git_repo, "rev-parse", "HEAD").strip()
        (git_repo / "tickgov.json").write_text(self.CONFIG_TEXT)
        invoker = agent(
            task_json(scope={"allowed_globs": ["src/**"]}),
            edit("docs/notes.md", "scratch\n"),
        )

        outcome = await run_tick(TickgovConfig(), repo_root=git_repo, invoker=invoker)

        assert outcome.report.code == codes.STOP_SCOPE_VIOLATION_OUTSIDE_ALLOWED
        assert not (git_repo / "docs" / "notes.md").exists()
        assert (git_repo / "tickgov.json").read_text() == self.CONFIG_TEXT
        assert status(git_repo) == " M tickgov.json\n"
        assert git(git_repo, "rev-parse", "HEAD").strip() == base
