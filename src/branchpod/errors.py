"""Error taxonomy for the orchestration layer."""


class BranchpodError(Exception):
    """Base class for errors surfaced by branchpod managers."""


class NotFoundError(BranchpodError):
    """Raised when no worktree, server or session exists for a key."""

    def __init__(self, kind: str, key: str, message: str | None = None) -> None:
        self.kind = kind
        self.key = key
        super().__init__(message or f"No {kind} found for {key}")


class ConflictError(BranchpodError):
    """Raised when a server is already active for a branch."""

    def __init__(self, project: str, branch: str, status: str) -> None:
        self.project = project
        self.branch = branch
        self.status = status
        super().__init__(f"Preview server already running for branch: {branch} ({status})")


class SpawnFailureError(BranchpodError):
    """Raised when the OS refuses to create a child process."""

    def __init__(self, command: str, reason: str) -> None:
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn '{command}': {reason}")


class ExternalServiceError(BranchpodError):
    """Raised when the terminal multiplexer (tmux) or git fails."""

    def __init__(self, service: str, args: list[str], detail: str) -> None:
        self.service = service
        self.command_args = args
        self.detail = detail
        super().__init__(f"{service} {' '.join(args[:2])} failed: {detail}")


class PersistenceError(BranchpodError):
    """Raised by low-level registry writes; the store logs it and degrades."""
