"""Models for servers, consoles, log entries and stream events."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(UTC)


class ServerStatus(str, Enum):
    """Development server lifecycle status."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        return self in (ServerStatus.STARTING, ServerStatus.RUNNING)


class ServerProcess(BaseModel):
    """One development server bound to a (project, branch)."""

    project: str
    branch: str
    port: int
    pid: int | None = None
    status: ServerStatus = ServerStatus.STARTING
    started_at: datetime = Field(default_factory=utcnow)
    command: str
    exit_code: int | None = None

    @property
    def is_active(self) -> bool:
        return self.status.is_active


class LogType(str, Enum):
    """Type of a buffered output unit."""

    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"
    ERROR = "error"


class EventType(str, Enum):
    """Type of a record delivered to stream subscribers."""

    STDOUT = "stdout"
    STDERR = "stderr"
    SYSTEM = "system"
    ERROR = "error"
    # Polling-diff strategy
    OUTPUT = "output"
    REFRESH = "refresh"


class LogEntry(BaseModel):
    """One observable output unit held in a stream ring buffer."""

    timestamp: datetime = Field(default_factory=utcnow)
    type: LogType
    message: str
    exit_code: int | None = None

    def to_event(self) -> StreamEvent:
        return StreamEvent(
            type=EventType(self.type.value),
            message=self.message,
            timestamp=self.timestamp,
            exit_code=self.exit_code,
        )


class StreamEvent(BaseModel):
    """A record on a live output stream.

    Direct-event streams carry ``message``; polled console streams carry
    ``lines`` (appended output) or ``full_content`` (replacement view).
    """

    type: EventType
    message: str | None = None
    lines: list[str] | None = None
    full_content: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    exit_code: int | None = None

    def to_sse(self) -> str:
        return f"data: {self.model_dump_json(exclude_none=True)}\n\n"


@dataclass(frozen=True)
class StreamKey:
    """Composite identifier under which output is buffered and fanned out."""

    project: str
    branch: str
    channel: str = "preview"

    @classmethod
    def server(cls, project: str, branch: str) -> StreamKey:
        return cls(project, branch, "preview")

    @classmethod
    def console(cls, project: str, branch: str, console_id: str | None = None) -> StreamKey:
        return cls(project, branch, f"console:{console_id or 'default'}")

    @classmethod
    def command(cls, project: str, branch: str, command_id: str) -> StreamKey:
        return cls(project, branch, f"command:{command_id}")

    @property
    def is_console(self) -> bool:
        return self.channel.startswith("console:")

    def __str__(self) -> str:
        return f"{self.project}:{self.branch}:{self.channel}"


class KillResult(str, Enum):
    """Outcome of killing a console session."""

    KILLED = "killed"
    NOT_FOUND = "not_found"


class ConsoleSessionInfo(BaseModel):
    """A live tmux session owned by branchpod."""

    session_name: str
    project: str | None = None
    branch: str | None = None
    console_id: str | None = None
    created_at: datetime | None = None
    activity_at: datetime | None = None


class CommandStatus(str, Enum):
    """Ad-hoc command status."""

    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


class CommandRun(BaseModel):
    """An ad-hoc command spawned in a worktree (in memory only)."""

    id: str
    project: str
    branch: str
    command: str
    pid: int | None = None
    status: CommandStatus = CommandStatus.RUNNING
    started_at: datetime = Field(default_factory=utcnow)
    exit_code: int | None = None


class DetectedApp(BaseModel):
    """A runnable app found in a worktree (advisory)."""

    name: str
    type: str
    command: str
    cwd: str = "."
    port: int | None = None
    package_manager: str | None = None


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------


class StartServerRequest(BaseModel):
    project: str
    branch: str
    command: str | None = None
    port: int | None = Field(default=None, ge=1, le=65535)


class StartServerResponse(BaseModel):
    project: str
    branch: str
    port: int
    pid: int | None
    status: ServerStatus
    command: str


class ServerListResponse(BaseModel):
    servers: list[ServerProcess]


class RunConsoleCommandRequest(BaseModel):
    project: str
    branch: str
    command: str = Field(min_length=1)
    console_id: str | None = None


class RunConsoleCommandResponse(BaseModel):
    session_name: str
    message: str


class ConsoleListResponse(BaseModel):
    sessions: list[ConsoleSessionInfo]


class RunCommandRequest(BaseModel):
    project: str
    branch: str
    command: str = Field(min_length=1)


class CommandListResponse(BaseModel):
    commands: list[CommandRun]


class DetectResponse(BaseModel):
    worktree_path: str
    monorepo_type: str | None = None
    apps: list[DetectedApp]


class ActionResponse(BaseModel):
    success: bool
    message: str
