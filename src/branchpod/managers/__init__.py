"""Process and session managers."""

from branchpod.managers.command_runner import CommandRunner
from branchpod.managers.console_sessions import ConsoleSessionManager
from branchpod.managers.server_supervisor import ServerSupervisor
from branchpod.managers.tmux import TmuxClient

__all__ = [
    "CommandRunner",
    "ConsoleSessionManager",
    "ServerSupervisor",
    "TmuxClient",
]
