"""Shared fixtures for tickgov tests."""

import subprocess
from pathlib import Path

import pytest

from tickgov.invoker import AgentResponse
from tickgov.state import TokenUsage


def git(repo: Path, *args: str) -> str:
    """Run git in repo and return stdout."""
    result = subprocess.run(
        ["git", *args], cwd=repo, capture_output=True, text=True, check=True
    )
    return result.stdout


@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A throwaway repository with one commit and the workspace gitignored."""
    repo = tmp_path / "repo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "config", "user.name", "Test User")
    git(repo, "config", "user.email", "test@example.com")
    git(repo, "config", "commit.gpgsign", "false")
    (repo / ".gitignore").write_text(".tickgov/\n")
    (repo / "README.md").write_text("# demo\n")
    (repo / "src").mkdir()
    (repo / "src" / "app.py").write_text("def main():\n    return 1\n")
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", "initial")
    return repo


@pytest.fixture
def head(git_repo: Path) -> str:
    return git(git_repo, "rev-parse", "HEAD").strip()


class ScriptedAgent:
    """Stands in for AgentInvoker, replaying scripted replies in order.

    A reply is either text, an exception to raise, or a callable that gets
    the repository root (and may edit files there) and returns the text.
    """

    def __init__(self, repo: Path, replies) -> None:
        self.repo = repo
        self.replies = list(replies)
        self.calls: list[tuple[str, dict]] = []

    async def invoke(self, prompt: str, **kwargs) -> AgentResponse:
        self.calls.append((prompt, kwargs))
        if not self.replies:
            raise AssertionError("unexpected agent call")
        reply = self.replies.pop(0)
        if isinstance(reply, BaseException):
            raise reply
        if callable(reply):
            reply = reply(self.repo)
        return AgentResponse(
            result=reply,
            usage=TokenUsage(input_tokens=100, output_tokens=10, cost_usd=0.01, calls=1),
        )


@pytest.fixture
def agent(git_repo: Path):
    """Factory for a ScriptedAgent working in git_repo."""

    def make(*replies) -> ScriptedAgent:
        return ScriptedAgent(git_repo, replies)

    return make
