"""Data models for tickgov.

Defines the Task proposed by the planning agent, its builder directive
(a tagged union of the three build strategies), and the BuilderResult a
builder reports back. Tasks are read-only once parsed.
"""

from dataclasses import asdict, dataclass, field
from typing import Any, Literal

from tickgov.errors import TaskValidationError
from tickgov.schemas import TASK_SCHEMA, validate_against

TaskKind = Literal["execute", "verify_only", "question"]
ParamValue = str | int | bool | None


@dataclass(frozen=True)
class TaskScope:
    """Glob-based write scope for a task.

    An empty ``allowed_globs`` means "anything not forbidden".
    """

    allowed_globs: list[str] = field(default_factory=list)
    forbidden_globs: list[str] = field(default_factory=list)
    allow_new_files: bool = True
    allow_lockfile_changes: bool = False


@dataclass(frozen=True)
class DiffLimits:
    max_files_touched: int
    max_lines_changed: int


@dataclass(frozen=True)
class VerificationPlan:
    """Ordered check template ids plus interpolation params per template."""

    fast: list[str] = field(default_factory=list)
    slow: list[str] = field(default_factory=list)
    params: dict[str, dict[str, ParamValue]] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.fast and not self.slow


@dataclass(frozen=True)
class Question:
    prompt: str
    choices: list[str] | None = None


@dataclass(frozen=True)
class Control:
    signal: Literal["stop"]
    reason: str | None = None


@dataclass(frozen=True)
class AgentBuild:
    """Build by running the coding agent with the task's instructions."""

    instructions: str = ""
    max_turns: int | None = None
    mode: Literal["agent"] = "agent"


@dataclass(frozen=True)
class PatchBuild:
    """Build by applying a unified diff supplied directly by the planner."""

    patch: str
    mode: Literal["patch"] = "patch"


@dataclass(frozen=True)
class ExternalDriverBuild:
    """Build by handing TASK.json to an out-of-process driver."""

    instructions: str = ""
    mode: Literal["external"] = "external"


BuildDirective = AgentBuild | PatchBuild | ExternalDriverBuild


@dataclass(frozen=True)
class Task:
    """A unit of work proposed by the planning agent.

    Exactly one of ``builder``, ``control`` or ``question`` drives the rest
    of the tick, selected by ``task_kind`` (``control`` wins when present).
    ``scope`` and ``diff_limits`` fall back to configured defaults when the
    planner omits them.
    """

    task_id: str
    milestone_id: str
    task_kind: TaskKind
    intent: str
    scope: TaskScope | None = None
    diff_limits: DiffLimits | None = None
    verification: VerificationPlan = field(default_factory=VerificationPlan)
    builder: BuildDirective | None = None
    control: Control | None = None
    question: Question | None = None

    @property
    def is_stop_signal(self) -> bool:
        return self.control is not None and self.control.signal == "stop"

    @classmethod
    def from_dict(cls, data: Any) -> "Task":
        """Validate and convert planner JSON into a Task.

        Raises:
            TaskValidationError: If the document fails the schema or the
                kind/payload invariant
        """
        errors = validate_against(TASK_SCHEMA, data)
        if errors:
            raise TaskValidationError(errors)

        control = Control(**data["control"]) if "control" in data else None
        question = Question(**data["question"]) if "question" in data else None
        builder = _parse_directive(data["builder"]) if "builder" in data else None

        kind = data["task_kind"]
        if control is None:
            if kind == "question" and question is None:
                raise TaskValidationError(["question: required for task_kind 'question'"])
            if kind == "execute" and builder is None:
                raise TaskValidationError(["builder: required for task_kind 'execute'"])

        scope = TaskScope(**data["scope"]) if "scope" in data else None
        limits = None
        if "diff_limits" in data:
            raw_limits = data["diff_limits"]
            if set(raw_limits) != {"max_files_touched", "max_lines_changed"}:
                raise TaskValidationError(
                    ["diff_limits: both max_files_touched and max_lines_changed are required"]
                )
            limits = DiffLimits(**raw_limits)

        raw_verification = data.get("verification", {})
        verification = VerificationPlan(
            fast=list(raw_verification.get("fast", [])),
            slow=list(raw_verification.get("slow", [])),
            params=dict(raw_verification.get("params", {})),
        )

        return cls(
            task_id=data["task_id"],
            milestone_id=data["milestone_id"],
            task_kind=kind,
            intent=data["intent"],
            scope=scope,
            diff_limits=limits,
            verification=verification,
            builder=builder,
            control=control,
            question=question,
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the planner JSON shape, omitting unset sections."""
        data: dict[str, Any] = {
            "task_id": self.task_id,
            "milestone_id": self.milestone_id,
            "task_kind": self.task_kind,
            "intent": self.intent,
            "verification": asdict(self.verification),
        }
        if self.scope is not None:
            data["scope"] = asdict(self.scope)
        if self.diff_limits is not None:
            data["diff_limits"] = asdict(self.diff_limits)
        if self.builder is not None:
            data["builder"] = {k: v for k, v in asdict(self.builder).items() if v is not None}
        if self.control is not None:
            data["control"] = {k: v for k, v in asdict(self.control).items() if v is not None}
        if self.question is not None:
            data["question"] = {k: v for k, v in asdict(self.question).items() if v is not None}
        return data


def _parse_directive(raw: dict[str, Any]) -> BuildDirective:
    mode = raw["mode"]
    if mode == "patch":
        if not raw.get("patch"):
            raise TaskValidationError(["builder.patch: required for mode 'patch'"])
        return PatchBuild(patch=raw["patch"])
    if mode == "external":
        return ExternalDriverBuild(instructions=raw.get("instructions", ""))
    return AgentBuild(
        instructions=raw.get("instructions", ""),
        max_turns=raw.get("max_turns"),
    )


@dataclass
class BuilderResult:
    """Structured summary a builder reports after making its changes."""

    summary: str
    files_intended: list[str] = field(default_factory=list)
    commands_ran: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BuilderResult":
        return cls(
            summary=data["summary"],
            files_intended=list(data.get("files_intended", [])),
            commands_ran=list(data.get("commands_ran", [])),
            notes=list(data.get("notes", [])),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
