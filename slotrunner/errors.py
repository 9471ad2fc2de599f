"""Exception hierarchy shared across slotrunner modules."""


class SlotRunnerError(Exception):
    """Base class for errors raised by slotrunner."""


class ConfigError(SlotRunnerError):
    """Configuration file is missing required values or holds invalid ones."""


class EngineCreationError(SlotRunnerError):
    """The requested engine name is not registered."""


class WorktreeError(SlotRunnerError):
    """A worktree could not be created for an issue."""


class InvalidTransitionError(SlotRunnerError):
    """A slot was asked to move between two states that are not connected."""

    def __init__(self, from_status, to_status):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Invalid slot transition: {from_status.value} -> {to_status.value}")


class InstanceConflictError(SlotRunnerError):
    """Another live instance is already working on the same label."""

    def __init__(self, label: str, other_pid: int):
        self.label = label
        self.other_pid = other_pid
        super().__init__(f"Another instance (PID {other_pid}) is already processing label '{label}'")


class PreflightError(SlotRunnerError):
    """Repository is not in a state the scheduler can work with."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Preflight checks failed:\n  - " + "\n  - ".join(errors))


class WorkspaceExhaustedError(SlotRunnerError):
    """Every attempted slot failed to get a worktree."""
