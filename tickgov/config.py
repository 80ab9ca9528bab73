"""Configuration for tickgov.

Provides centralized configuration with sensible defaults, loading from a
``tickgov.json`` file in the repository root, and environment variable
overrides for the settings most often changed per run.
"""

import json
import os
from dataclasses import MISSING, dataclass, field, fields, is_dataclass, replace
from pathlib import Path
from typing import Any

from tickgov.errors import ConfigError

CONFIG_FILENAME = "tickgov.json"
DEFAULT_WORKSPACE_DIR = ".tickgov"


@dataclass
class RenderReportMdConfig:
    enabled: bool = True
    max_chars: int = 20000


@dataclass
class CrashCleanupConfig:
    delete_tmp_suffix: str = ".tmp"


@dataclass
class RunnerConfig:
    """Tick runner settings.

    Attributes:
        require_git: Block the tick when not inside a git repository
        commit_on_success: Commit the judged paths when a tick succeeds
        max_tick_seconds: Upper bound used for agent invocation timeouts
        lockfile: Lock file name inside the workspace directory
        runner_owned_globs: Paths only the runner may write; any builder
            change under them is a violation
    """

    require_git: bool = True
    commit_on_success: bool = True
    max_tick_seconds: int = 1800
    lockfile: str = "lock.json"
    runner_owned_globs: list[str] = field(
        default_factory=lambda: [f"{DEFAULT_WORKSPACE_DIR}/**", "tickgov.json"]
    )
    render_report_md: RenderReportMdConfig = field(default_factory=RenderReportMdConfig)
    crash_cleanup: CrashCleanupConfig = field(default_factory=CrashCleanupConfig)


@dataclass
class AgentCliConfig:
    """How to spawn the agent CLI shared by planner, builder and reviewer."""

    command: str = "claude"
    output_format: str = "json"
    no_session_persistence: bool = True


@dataclass
class PlannerConfig:
    model: str | None = None
    max_turns: int = 10
    permission_mode: str = "plan"
    allowed_tools: str = "Read,Glob,Grep"
    timeout_seconds: int = 600
    max_parse_retries_per_tick: int = 1
    system_prompt_file: str | None = None
    user_prompt_file: str | None = None


@dataclass
class AgentBuilderConfig:
    model: str | None = None
    max_turns: int = 50
    permission_mode: str = "acceptEdits"
    allowed_tools: str = "Bash,Read,Write,Edit,Glob,Grep"
    timeout_seconds: int = 1200
    strict_builder_json: bool = False
    system_prompt_file: str | None = None
    user_prompt_file: str | None = None


@dataclass
class ExternalDriverConfig:
    """Out-of-process builder driver.

    The driver receives the task path and output path through environment
    variables and must write one JSON object to ``output_file``.
    """

    driver_kind: str = "external"
    command: str = ""
    args: list[str] = field(default_factory=list)
    timeout_seconds: int = 1200
    output_file: str = "BUILDER_RESULT.json"


@dataclass
class BuilderConfig:
    default_mode: str = "agent"
    allow_patch_mode: bool = True
    agent: AgentBuilderConfig = field(default_factory=AgentBuilderConfig)
    external: ExternalDriverConfig = field(default_factory=ExternalDriverConfig)


@dataclass
class ScopeConfig:
    default_allowed_globs: list[str] = field(default_factory=list)
    default_forbidden_globs: list[str] = field(
        default_factory=lambda: [".git/**", ".env", ".env.*", "**/*.pem", "**/*.key"]
    )
    default_allow_new_files: bool = True
    default_allow_lockfile_changes: bool = False
    lockfiles: list[str] = field(
        default_factory=lambda: [
            "package-lock.json",
            "pnpm-lock.yaml",
            "yarn.lock",
            "poetry.lock",
            "uv.lock",
            "Cargo.lock",
            "go.sum",
        ]
    )


@dataclass
class DiffLimitsConfig:
    default_max_files_touched: int = 20
    default_max_lines_changed: int = 800


@dataclass
class VerificationTemplate:
    """A declarative check command.

    ``args`` may contain ``{{name}}`` placeholders filled from the task's
    verification params. The command is executed without a shell.
    """

    id: str
    cmd: str
    args: list[str] = field(default_factory=list)
    params: dict[str, Any] = field(default_factory=dict)


@dataclass
class VerificationConfig:
    execution_mode: str = "argv_no_shell"
    max_param_len: int = 128
    reject_whitespace_in_params: bool = True
    reject_dotdot: bool = True
    reject_metachars_regex: str = r"[;&|`$<>(){}\[\]!*?~\\\"']"
    timeout_fast_seconds: int = 120
    timeout_slow_seconds: int = 900
    kill_grace_seconds: float = 1.0
    max_output_bytes: int = 64 * 1024
    templates: list[VerificationTemplate] = field(default_factory=list)

    def __post_init__(self) -> None:
        templates = []
        for item in self.templates:
            if isinstance(item, VerificationTemplate):
                templates.append(item)
            elif isinstance(item, dict):
                try:
                    templates.append(VerificationTemplate(**item))
                except TypeError as e:
                    raise ConfigError(f"Invalid verification template {item!r}: {e}") from e
            else:
                raise ConfigError(f"Invalid verification template {item!r}")
        self.templates = templates

    def get_template(self, template_id: str) -> VerificationTemplate | None:
        return next((t for t in self.templates if t.id == template_id), None)


@dataclass
class PerMilestoneBudgets:
    max_ticks: int = 50
    max_orchestrator_calls: int = 100
    max_builder_calls: int = 50
    max_verify_runs: int = 200
    max_estimated_cost_usd: float = 25.0


@dataclass
class BudgetsConfig:
    per_milestone: PerMilestoneBudgets = field(default_factory=PerMilestoneBudgets)
    warn_at_fraction: float = 0.8


@dataclass
class HistoryConfig:
    enabled: bool = True
    dir: str = "history"
    include_diff_patch: bool = True
    include_verify_log: bool = True


@dataclass
class ReviewerTriggerConfig:
    on_verify_fail: bool = True
    on_repeated_stop: bool = True
    stop_window_ticks: int = 10
    max_stops_in_window: int = 2
    on_high_risk_paths: bool = True
    high_risk_globs: list[str] = field(
        default_factory=lambda: [
            "**/auth/**",
            "**/security/**",
            "**/migrations/**",
            ".github/**",
            "Dockerfile",
        ]
    )
    diff_fraction_threshold: float = 0.8


@dataclass
class ReviewerConfig:
    enabled: bool = False
    model: str | None = None
    max_turns: int = 5
    timeout_seconds: int = 300
    system_prompt_file: str | None = None
    user_prompt_file: str | None = None
    trigger: ReviewerTriggerConfig = field(default_factory=ReviewerTriggerConfig)


@dataclass
class EscalationConfig:
    failure_streak_threshold: int = 2


BRANCHING_MODES = ("off", "per_tick", "per_n_tasks", "per_milestone")


@dataclass
class BranchingConfig:
    """Runner-owned work branches.

    Attributes:
        mode: off, per_tick, per_n_tasks or per_milestone
        n_tasks: Ticks that share a branch in per_n_tasks mode
        base_ref: Ref a new branch starts from
        name_template: Branch name with {{task_id}}, {{milestone_id}},
            {{run_id}}, {{tick_count}}, {{seq}} and {{YYYYMMDD}} placeholders.
            None picks a per-mode default.
    """

    mode: str = "off"
    n_tasks: int = 5
    base_ref: str = "HEAD"
    name_template: str | None = None

    def __post_init__(self) -> None:
        if self.mode not in BRANCHING_MODES:
            raise ConfigError(
                f"git.branching.mode must be one of {', '.join(BRANCHING_MODES)}, got {self.mode!r}"
            )
        if self.mode == "per_n_tasks" and self.n_tasks < 1:
            raise ConfigError(f"git.branching.n_tasks must be >= 1, got {self.n_tasks}")


@dataclass
class GitConfig:
    branching: BranchingConfig = field(default_factory=BranchingConfig)


@dataclass
class TelemetryConfig:
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "tickgov"


@dataclass
class TickgovConfig:
    """Top-level configuration.

    All settings have sensible defaults. ``load()`` reads ``tickgov.json``
    and ``from_env()`` layers environment variable overrides on top.
    """

    workspace_dir: str = DEFAULT_WORKSPACE_DIR
    runner: RunnerConfig = field(default_factory=RunnerConfig)
    agent: AgentCliConfig = field(default_factory=AgentCliConfig)
    planner: PlannerConfig = field(default_factory=PlannerConfig)
    builder: BuilderConfig = field(default_factory=BuilderConfig)
    scope: ScopeConfig = field(default_factory=ScopeConfig)
    diff_limits: DiffLimitsConfig = field(default_factory=DiffLimitsConfig)
    verification: VerificationConfig = field(default_factory=VerificationConfig)
    budgets: BudgetsConfig = field(default_factory=BudgetsConfig)
    history: HistoryConfig = field(default_factory=HistoryConfig)
    reviewer: ReviewerConfig = field(default_factory=ReviewerConfig)
    escalation: EscalationConfig = field(default_factory=EscalationConfig)
    git: GitConfig = field(default_factory=GitConfig)
    telemetry: TelemetryConfig = field(default_factory=TelemetryConfig)

    def workspace_path(self, repo_root: Path) -> Path:
        """Absolute workspace directory for a repository root."""
        return repo_root / self.workspace_dir

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TickgovConfig":
        """Build a config from parsed JSON.

        Missing keys keep their defaults.

        Raises:
            ConfigError: On unknown keys or values of the wrong type
        """
        return _build(cls, data, "config")

    @classmethod
    def load(cls, path: Path) -> "TickgovConfig":
        """Load config from a JSON file.

        Raises:
            ConfigError: If the file is missing, unreadable or invalid
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError as e:
            raise ConfigError(f"Config file not found: {path}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigError(f"Cannot read config {path}: {e}") from e
        return cls.from_dict(data)

    @classmethod
    def from_env(cls, path: Path | None = None) -> "TickgovConfig":
        """Load config (or defaults) with environment variable overrides.

        Environment variables:
            TICKGOV_WORKSPACE_DIR: Override workspace_dir
            TICKGOV_MAX_TICK_SECONDS: Override runner.max_tick_seconds
            TICKGOV_STRICT_BUILDER_JSON: "true" makes builder parse failures fatal
            TICKGOV_PLANNER_MODEL: Override planner.model
            TICKGOV_BUILDER_MODEL: Override builder.agent.model
            OTLP_ENDPOINT: Override telemetry.otlp_endpoint
        """
        config = cls.load(path) if path is not None else cls()

        if workspace := os.getenv("TICKGOV_WORKSPACE_DIR"):
            config.workspace_dir = workspace
        if max_seconds := os.getenv("TICKGOV_MAX_TICK_SECONDS"):
            config.runner.max_tick_seconds = int(max_seconds)
        if strict := os.getenv("TICKGOV_STRICT_BUILDER_JSON"):
            config.builder.agent.strict_builder_json = strict.lower() == "true"
        if planner_model := os.getenv("TICKGOV_PLANNER_MODEL"):
            config.planner.model = planner_model
        if builder_model := os.getenv("TICKGOV_BUILDER_MODEL"):
            config.builder.agent.model = builder_model
        if endpoint := os.getenv("OTLP_ENDPOINT"):
            config.telemetry = replace(config.telemetry, otlp_endpoint=endpoint)
        return config


def _build(cls: type, data: Any, section: str) -> Any:
    if not isinstance(data, dict):
        raise ConfigError(f"{section}: expected an object, got {type(data).__name__}")

    known = {f.name: f for f in fields(cls)}
    unknown = sorted(set(data) - set(known))
    if unknown:
        raise ConfigError(f"{section}: unknown keys {', '.join(unknown)}")

    kwargs: dict[str, Any] = {}
    for name, value in data.items():
        f = known[name]
        default = _default_of(f)
        where = f"{section}.{name}"
        if is_dataclass(default):
            kwargs[name] = _build(type(default), value, where)
        else:
            _check_type(default, value, where)
            kwargs[name] = value
    return cls(**kwargs)


def _default_of(f: Any) -> Any:
    if f.default is not MISSING:
        return f.default
    if f.default_factory is not MISSING:
        return f.default_factory()
    return MISSING


def _check_type(default: Any, value: Any, where: str) -> None:
    if default is None or default is MISSING:
        return
    if isinstance(default, bool):
        ok = isinstance(value, bool)
    elif isinstance(default, int):
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif isinstance(default, float):
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
    elif isinstance(default, str):
        ok = isinstance(value, str)
    elif isinstance(default, list):
        ok = isinstance(value, list)
    elif isinstance(default, dict):
        ok = isinstance(value, dict)
    else:
        ok = True
    if not ok:
        raise ConfigError(
            f"{where}: expected {type(default).__name__}, got {type(value).__name__}"
        )
