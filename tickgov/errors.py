"""Shared error types for the tickgov package.

Policy outcomes (scope violations, failed verification, and so on) are
reported as values carrying a report code. Exceptions here are reserved for
environment faults and for cooperative cancellation.
"""


class TickgovError(Exception):
    """Base exception for tickgov errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class ConfigError(TickgovError):
    """Configuration file is missing or malformed."""

    pass


class LockError(TickgovError):
    """Base class for workspace lock failures."""

    pass


class LockHeldError(LockError):
    """The workspace lock is held by another live process."""

    def __init__(self, path: str, holder: dict) -> None:
        self.path = path
        self.holder = holder
        super().__init__(
            f"Lock {path} is held by PID {holder.get('pid')} "
            f"(started {holder.get('started_at')})"
        )


class LockCorruptError(LockError):
    """The lock file exists but cannot be fully validated.

    The file is left untouched; an operator must remove it.
    """

    def __init__(self, path: str, detail: str) -> None:
        self.path = path
        self.detail = detail
        super().__init__(
            f"Lock file is corrupt ({detail}). "
            f"Delete the lock file at {path} and retry."
        )


class AtomicWriteError(TickgovError):
    """Raised when an atomic write fails."""

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(message)


class GitError(TickgovError):
    """A git command exited non-zero."""

    def __init__(self, args: list[str], returncode: int, stderr: str) -> None:
        self.args_list = args
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            f"git {' '.join(args)} failed ({returncode}): {stderr.strip()}"
        )


class AgentError(TickgovError):
    """An agent CLI invocation failed.

    Attributes:
        exit_code: Process exit code (124 for timeouts)
        stderr: Captured standard error, used for stall classification
        stdout: Captured standard output, if any
    """

    def __init__(
        self, message: str, exit_code: int | None = None, stderr: str = "", stdout: str = ""
    ) -> None:
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        super().__init__(message)

    @property
    def timed_out(self) -> bool:
        return self.exit_code == 124


class TemplateParamError(TickgovError):
    """A verification template references a parameter that was not supplied."""

    def __init__(self, template_id: str, param: str) -> None:
        self.template_id = template_id
        self.param = param
        super().__init__(
            f"Verification template '{template_id}' requires parameter '{param}'"
        )


class TaskValidationError(TickgovError):
    """Planner output did not describe a valid Task."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__("Invalid task: " + "; ".join(errors))


class TickInterrupted(InterruptedError):
    """Cooperative cancellation was requested while a tick was running."""

    pass
