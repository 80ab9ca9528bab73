"""Tests for preflight checks."""

from pathlib import Path

from tickgov import codes
from tickgov.config import TickgovConfig
from tickgov.preflight import run_preflight, split_dirty
from tickgov.state import BudgetCounts, WorkspaceState


def workspace(repo: Path) -> Path:
    path = repo / ".tickgov"
    path.mkdir(exist_ok=True)
    return path


class TestPreflight:
    """Tests for run_preflight()."""

    def test_clean_repo(self, git_repo: Path, head: str):
        result = run_preflight(TickgovConfig(), git_repo, workspace(git_repo), WorkspaceState())

        assert result.ok
        assert result.base_commit == head

    def test_not_a_repo(self, tmp_path: Path):
        result = run_preflight(TickgovConfig(), tmp_path, workspace(tmp_path), WorkspaceState())

        assert result.blocked_code == codes.BLOCKED_MISSING_CONFIG

    def test_dirty_worktree(self, git_repo: Path):
        (git_repo / "README.md").write_text("edited\n")
        (git_repo / "scratch.txt").write_text("x\n")

        result = run_preflight(TickgovConfig(), git_repo, workspace(git_repo), WorkspaceState())

        assert result.blocked_code == codes.BLOCKED_DIRTY_WORKTREE
        assert "README.md" in result.blocked_reason
        assert "scratch.txt" in result.blocked_reason

    def test_runner_owned_dirt_is_tolerated(self, git_repo: Path):
        (git_repo / "tickgov.json").write_text("{}\n")

        result = run_preflight(TickgovConfig(), git_repo, workspace(git_repo), WorkspaceState())

        assert result.ok
        assert result.runner_owned_dirty == ["tickgov.json"]
        assert result.runner_owned_snapshot == {"tickgov.json": b"{}\n"}

    def test_crash_artifacts_are_cleaned(self, git_repo: Path):
        ws = workspace(git_repo)
        (ws / "STATE.json.tmp").write_text("{")

        result = run_preflight(TickgovConfig(), git_repo, ws, WorkspaceState())

        assert result.ok
        assert result.warnings
        assert not (ws / "STATE.json.tmp").exists()

    def test_budget_cap(self, git_repo: Path):
        config = TickgovConfig()
        config.budgets.per_milestone.max_ticks = 3
        state = WorkspaceState(milestone_id="M1", budgets=BudgetCounts(ticks=3))

        result = run_preflight(config, git_repo, workspace(git_repo), state)

        assert result.blocked_code == codes.BLOCKED_BUDGET_CAP
        assert "ticks 3/3" in result.blocked_reason

    def test_split_dirty(self, git_repo: Path):
        (git_repo / "a.txt").write_text("a\n")
        (git_repo / "tickgov.json").write_text("{}\n")

        dirty, owned = split_dirty(git_repo, ["tickgov.json"])

        assert dirty == ["a.txt"]
        assert owned == ["tickgov.json"]
