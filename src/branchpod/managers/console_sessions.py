"""Named tmux console sessions per (project, branch, console).

Sessions live in tmux, not in this process: every operation asks tmux
whether the session exists instead of trusting a cached flag.
"""

from __future__ import annotations

import asyncio
import re
import shlex

import structlog

from branchpod.collaborators.worktrees import WorktreeResolver
from branchpod.config import Settings
from branchpod.managers.tmux import TmuxClient
from branchpod.models import ConsoleSessionInfo, KillResult, StreamKey
from branchpod.streaming.hub import CaptureFn, StreamHub, Subscription
from branchpod.validation import validate_branch, validate_console_id, validate_project_id

logger = structlog.get_logger()

DEFAULT_CONSOLE = "default"
KILLED_MESSAGE = "Session killed by user"

_ESCAPE = re.compile(r"_([0-9a-f]{2})")


def encode_component(value: str, limit: int) -> str:
    """Keep ASCII letters and digits, write every other UTF-8 byte as ``_xx``.

    Never emits ``-``, which separates components in a session name.
    """
    out: list[str] = []
    for char in value:
        if char.isascii() and char.isalnum():
            out.append(char)
        else:
            out.extend(f"_{byte:02x}" for byte in char.encode("utf-8"))
    return "".join(out)[:limit]


def decode_component(value: str) -> str | None:
    """Inverse of encode_component, or None for a truncated/foreign component."""
    raw = bytearray()
    pos = 0
    while pos < len(value):
        char = value[pos]
        if char == "_":
            match = _ESCAPE.match(value, pos)
            if not match:
                return None
            raw.append(int(match.group(1), 16))
            pos = match.end()
        elif char.isascii() and char.isalnum():
            raw.extend(char.encode("ascii"))
            pos += 1
        else:
            return None
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return None


class ConsoleSessionManager:
    """Creates, feeds, lists and kills console sessions and wires them into the hub."""

    def __init__(
        self,
        settings: Settings,
        tmux: TmuxClient,
        resolver: WorktreeResolver,
        hub: StreamHub,
    ) -> None:
        self._settings = settings
        self._tmux = tmux
        self._resolver = resolver
        self._hub = hub
        # Stream keys of live sessions whose truncated names no longer parse
        self._keys: dict[str, StreamKey] = {}

    @property
    def prefix(self) -> str:
        return self._settings.session_prefix

    def session_name(self, project: str, branch: str, console_id: str | None = None) -> str:
        limit = self._settings.session_component_limit
        parts = [
            self.prefix,
            encode_component(project, limit),
            encode_component(branch, limit),
            encode_component(console_id or DEFAULT_CONSOLE, limit),
        ]
        return "-".join(parts)

    def parse_session_name(self, name: str) -> tuple[str, str, str] | None:
        """(project, branch, console_id) for one of our names, else None."""
        parts = name.split("-")
        if len(parts) != 4 or parts[0] != self.prefix:
            return None
        decoded = [decode_component(part) for part in parts[1:]]
        if any(part is None for part in decoded):
            return None
        project, branch, console_id = decoded
        return project, branch, console_id  # type: ignore[return-value]

    def _key_for(self, name: str) -> StreamKey | None:
        if name in self._keys:
            return self._keys[name]
        parsed = self.parse_session_name(name)
        if parsed is None:
            return None
        return StreamKey.console(*parsed)

    def capture_fn(self, name: str) -> CaptureFn:
        lines = self._settings.capture_lines

        async def capture() -> str | None:
            return await self._tmux.capture_pane(name, lines)

        return capture

    async def ensure(self, project: str, branch: str, console_id: str | None = None) -> str:
        """Return the session name, creating the session in the worktree if absent.

        Raises:
            NotFoundError: If the worktree does not exist
            ExternalServiceError: If tmux fails
        """
        validate_project_id(project)
        validate_branch(branch)
        if console_id is not None:
            validate_console_id(console_id)

        cwd = await self._resolver.resolve_worktree_path(project, branch)
        name = self.session_name(project, branch, console_id)
        if self.parse_session_name(name) is None:
            self._keys[name] = StreamKey.console(project, branch, console_id)

        if await self._tmux.has_session(name):
            return name

        created = await self._tmux.new_session(name, cwd)
        if created:
            extra = ":".join(shlex.quote(p) for p in self._settings.expanded_path_dirs())
            await self._tmux.send_keys(name, f"export PATH={extra}:$PATH")
            await asyncio.sleep(self._settings.console_init_delay)
            logger.info(
                "Console session created",
                session_name=name,
                project=project,
                branch=branch,
                console_id=console_id or DEFAULT_CONSOLE,
            )
        return name

    async def inject(self, session_name: str, command_text: str) -> None:
        """Type the command into the session. Output arrives through polling only."""
        await self._tmux.send_keys(session_name, command_text)

    async def run(
        self,
        project: str,
        branch: str,
        command: str,
        console_id: str | None = None,
    ) -> str:
        name = await self.ensure(project, branch, console_id)
        await self.inject(name, command)
        self._hub.watch_console(StreamKey.console(project, branch, console_id), self.capture_fn(name))
        logger.info("Console command sent", session_name=name, command=command[:100])
        return name

    async def subscribe(
        self,
        project: str,
        branch: str,
        console_id: str | None = None,
    ) -> Subscription:
        validate_project_id(project)
        validate_branch(branch)
        if console_id is not None:
            validate_console_id(console_id)
        name = self.session_name(project, branch, console_id)
        key = StreamKey.console(project, branch, console_id)
        return await self._hub.subscribe_console(key, self.capture_fn(name))

    async def kill(self, session_name: str) -> KillResult:
        """Kill a session. Killing an absent session is reported, not raised."""
        key = self._key_for(session_name)
        self._keys.pop(session_name, None)
        if not await self._tmux.has_session(session_name):
            return KillResult.NOT_FOUND

        if key is not None:
            await self._hub.close_key(key, KILLED_MESSAGE)

        if not await self._tmux.kill_session(session_name):
            return KillResult.NOT_FOUND
        return KillResult.KILLED

    async def list(
        self,
        project: str | None = None,
        branch: str | None = None,
    ) -> list[ConsoleSessionInfo]:
        sessions = []
        for session in await self._tmux.list_sessions():
            if not session.name.startswith(f"{self.prefix}-"):
                continue
            parsed = self.parse_session_name(session.name)
            s_project, s_branch, s_console = parsed if parsed else (None, None, None)
            if project is not None and s_project != project:
                continue
            if branch is not None and s_branch != branch:
                continue
            sessions.append(
                ConsoleSessionInfo(
                    session_name=session.name,
                    project=s_project,
                    branch=s_branch,
                    console_id=s_console,
                    created_at=session.created_at,
                    activity_at=session.activity_at,
                )
            )
        return sessions
