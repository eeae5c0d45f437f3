"""Async wrapper over the tmux command line."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import UTC, datetime

import structlog

from branchpod.errors import ExternalServiceError

logger = structlog.get_logger()

# stderr fragments tmux prints when the target (or the whole server) is gone
MISSING_SESSION_MARKERS = (
    "can't find session",
    "session not found",
    "no server running",
    "error connecting to",
    "no such file or directory",
)

LIST_FORMAT = "#{session_name}|#{session_created}|#{session_activity}"


def _is_missing(stderr: str) -> bool:
    lowered = stderr.lower()
    return any(marker in lowered for marker in MISSING_SESSION_MARKERS)


def _from_epoch(value: str) -> datetime | None:
    try:
        return datetime.fromtimestamp(int(value), UTC)
    except (TypeError, ValueError):
        return None


@dataclass(frozen=True)
class TmuxSession:
    name: str
    created_at: datetime | None = None
    activity_at: datetime | None = None


class TmuxClient:
    """Runs tmux subcommands with a timeout.

    Session targets are written as ``=name`` so tmux matches the exact name
    instead of the first session sharing the prefix.
    """

    def __init__(self, binary: str = "tmux", timeout: float = 5.0) -> None:
        self._binary = binary
        self._timeout = timeout

    async def _run(self, args: list[str]) -> tuple[int, str, str]:
        """Run ``tmux <args>`` and return (exit code, stdout, stderr).

        Raises:
            ExternalServiceError: If tmux is not installed or does not answer in time
        """
        try:
            process = await asyncio.create_subprocess_exec(
                self._binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise ExternalServiceError("tmux", args, str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout)
        except TimeoutError as e:
            process.kill()
            await process.wait()
            raise ExternalServiceError("tmux", args, f"timed out after {self._timeout}s") from e

        return (
            process.returncode or 0,
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace").strip(),
        )

    async def _check(self, args: list[str]) -> str:
        exit_code, stdout, stderr = await self._run(args)
        if exit_code != 0:
            raise ExternalServiceError("tmux", args, stderr or f"exit code {exit_code}")
        return stdout

    async def has_session(self, name: str) -> bool:
        exit_code, _, _ = await self._run(["has-session", "-t", f"={name}"])
        return exit_code == 0

    async def new_session(self, name: str, cwd: str) -> bool:
        """Create a detached session.

        Returns:
            True if created, False if a session with that name already existed
        """
        exit_code, _, stderr = await self._run(["new-session", "-d", "-s", name, "-c", cwd])
        if exit_code == 0:
            logger.info("Created tmux session", session_name=name, cwd=cwd)
            return True
        if "duplicate session" in stderr:
            logger.debug("tmux session already exists", session_name=name)
            return False
        raise ExternalServiceError("tmux", ["new-session", name], stderr or f"exit code {exit_code}")

    async def send_keys(self, name: str, text: str) -> None:
        """Type ``text`` literally into the session's active pane and press Enter."""
        target = f"={name}:"
        await self._check(["send-keys", "-t", target, "-l", text])
        await self._check(["send-keys", "-t", target, "Enter"])

    async def capture_pane(self, name: str, lines: int = 2000) -> str | None:
        """Visible pane plus ``lines`` of scrollback, or None if the session is gone."""
        args = ["capture-pane", "-p", "-J", "-t", f"={name}:", "-S", f"-{lines}"]
        exit_code, stdout, stderr = await self._run(args)
        if exit_code == 0:
            return stdout
        if _is_missing(stderr):
            return None
        raise ExternalServiceError("tmux", args, stderr or f"exit code {exit_code}")

    async def kill_session(self, name: str) -> bool:
        """Returns False when tmux refused (typically because the session is already gone)."""
        exit_code, _, stderr = await self._run(["kill-session", "-t", f"={name}"])
        if exit_code != 0:
            logger.warning("tmux kill-session failed", session_name=name, error=stderr)
            return False
        logger.info("Killed tmux session", session_name=name)
        return True

    async def list_sessions(self) -> list[TmuxSession]:
        exit_code, stdout, stderr = await self._run(["list-sessions", "-F", LIST_FORMAT])
        if exit_code != 0:
            if _is_missing(stderr):
                return []
            raise ExternalServiceError("tmux", ["list-sessions"], stderr or f"exit code {exit_code}")

        sessions = []
        for line in stdout.splitlines():
            if not line.strip():
                continue
            name, _, rest = line.partition("|")
            created, _, activity = rest.partition("|")
            sessions.append(
                TmuxSession(
                    name=name,
                    created_at=_from_epoch(created),
                    activity_at=_from_epoch(activity),
                )
            )
        return sessions
