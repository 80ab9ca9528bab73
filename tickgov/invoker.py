"""Agent invoker: run the agent CLI in print mode with JSON output.

Shared by the planner, the agent-mode builder and the reviewer. The CLI is
spawned without a shell in the repository root; its JSON envelope is parsed
into an AgentResponse carrying the result text and token usage.
"""

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path

from tickgov.config import AgentCliConfig
from tickgov.errors import AgentError, TickInterrupted
from tickgov.process import TIMEOUT_EXIT_CODE, run_argv
from tickgov.state import TokenUsage

logger = logging.getLogger(__name__)

# Agent JSON envelopes can be large; keep a generous tail
AGENT_OUTPUT_MAX_BYTES = 8 * 1024 * 1024


@dataclass
class AgentResponse:
    """Parsed output of one agent invocation."""

    result: str
    is_error: bool = False
    num_turns: int = 0
    duration_ms: int = 0
    session_id: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class AgentInvoker:
    """Invokes the agent CLI.

    Attributes:
        cli: How to spawn the CLI (command and global flags)
        cwd: Repository root the agent works in
    """

    cli: AgentCliConfig
    cwd: Path

    def build_argv(
        self,
        prompt: str,
        *,
        max_turns: int,
        permission_mode: str,
        model: str | None = None,
        allowed_tools: str | None = None,
        system_prompt: str | None = None,
    ) -> list[str]:
        argv = [
            self.cli.command,
            "-p",
            "--output-format",
            self.cli.output_format,
            "--max-turns",
            str(max_turns),
            "--permission-mode",
            permission_mode,
        ]
        if self.cli.no_session_persistence:
            argv.append("--no-session-persistence")
        if model:
            argv += ["--model", model]
        if allowed_tools:
            argv += ["--allowedTools", allowed_tools]
        if system_prompt:
            argv += ["--system-prompt", system_prompt]
        argv.append(prompt)
        return argv

    async def invoke(
        self,
        prompt: str,
        *,
        max_turns: int,
        permission_mode: str,
        timeout: float,
        model: str | None = None,
        allowed_tools: str | None = None,
        system_prompt: str | None = None,
        cancel: threading.Event | None = None,
    ) -> AgentResponse:
        """Invoke the agent and parse its JSON envelope.

        Args:
            prompt: User prompt
            max_turns: Turn budget passed to the CLI
            permission_mode: CLI permission mode
            timeout: Wall-clock limit in seconds
            model: Model override
            allowed_tools: Comma-separated tool allow list
            system_prompt: System prompt text
            cancel: Cooperative cancellation signal

        Returns:
            AgentResponse with result text and usage

        Raises:
            AgentError: On spawn failure, timeout (exit code 124), non-zero
                exit, unparseable output, or an error envelope
            TickInterrupted: If cancel was set while the agent ran
        """
        argv = self.build_argv(
            prompt,
            max_turns=max_turns,
            permission_mode=permission_mode,
            model=model,
            allowed_tools=allowed_tools,
            system_prompt=system_prompt,
        )
        logger.debug("Invoking agent: %s (max_turns=%d)", self.cli.command, max_turns)

        try:
            proc = await asyncio.to_thread(
                run_argv,
                argv,
                cwd=self.cwd,
                timeout=timeout,
                cancel=cancel,
                max_output_bytes=AGENT_OUTPUT_MAX_BYTES,
            )
        except FileNotFoundError as e:
            raise AgentError(f"Agent command not found: {self.cli.command}", exit_code=127) from e
        except OSError as e:
            raise AgentError(f"Failed to start agent: {e}", exit_code=126) from e

        if proc.cancelled:
            raise TickInterrupted("Agent invocation cancelled")
        if proc.timed_out:
            raise AgentError(
                f"Agent timed out after {timeout}s",
                exit_code=TIMEOUT_EXIT_CODE,
                stderr=proc.stderr,
                stdout=proc.stdout,
            )
        if proc.exit_code != 0:
            detail = (proc.stderr or proc.stdout).strip()[-2000:]
            raise AgentError(
                f"Agent exited with code {proc.exit_code}: {detail}",
                exit_code=proc.exit_code,
                stderr=proc.stderr,
                stdout=proc.stdout,
            )

        try:
            envelope = json.loads(proc.stdout)
        except json.JSONDecodeError as e:
            raise AgentError(
                f"Failed to parse agent JSON output: {e}",
                exit_code=proc.exit_code,
                stderr=proc.stderr,
                stdout=proc.stdout,
            ) from e
        if not isinstance(envelope, dict):
            raise AgentError("Agent JSON output is not an object", stdout=proc.stdout)

        response = AgentResponse(
            result=str(envelope.get("result", "")),
            is_error=bool(envelope.get("is_error", False)),
            num_turns=int(envelope.get("num_turns", 0) or 0),
            duration_ms=int(envelope.get("duration_ms", proc.duration_ms) or 0),
            session_id=str(envelope.get("session_id", "")),
            usage=TokenUsage.from_cli_usage(
                envelope.get("usage"), envelope.get("total_cost_usd", 0.0)
            ),
        )
        if response.is_error:
            raise AgentError(
                f"Agent reported an error: {response.result[:2000]}",
                exit_code=proc.exit_code,
                stderr=proc.stderr,
                stdout=proc.stdout,
            )
        return response
