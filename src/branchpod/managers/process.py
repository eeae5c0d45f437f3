"""Child process helpers: environment, detached spawn, liveness and signals."""

from __future__ import annotations

import asyncio
import os
import re
import signal
from collections.abc import Awaitable, Callable

import psutil
import structlog

from branchpod.config import Settings
from branchpod.errors import SpawnFailureError

logger = structlog.get_logger()

# StreamReader line limit; dev servers occasionally print very long lines
READ_LIMIT = 1024 * 1024

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;?]*[ -/]*[@-~]")


def strip_ansi(text: str) -> str:
    """Remove ANSI escape sequences."""
    return ANSI_ESCAPE.sub("", text)


def build_child_env(settings: Settings, port: int | None = None) -> dict[str, str]:
    """Inherited environment with the chosen port, wildcard bind and extra PATH dirs."""
    env = dict(os.environ)
    extra = ":".join(settings.expanded_path_dirs())
    current_path = env.get("PATH", "")
    env["PATH"] = f"{extra}:{current_path}" if current_path else extra
    env.setdefault("NODE_ENV", "development")
    if port is not None:
        env["PORT"] = str(port)
        env["HOST"] = "0.0.0.0"  # noqa: S104
    return env


async def spawn_detached(
    shell: str,
    command: str,
    cwd: str,
    env: dict[str, str],
) -> asyncio.subprocess.Process:
    """Start ``shell -c command`` in its own session so it leads a process group.

    Raises:
        SpawnFailureError: If the OS refuses to create the process
    """
    try:
        return await asyncio.create_subprocess_exec(
            shell,
            "-c",
            command,
            cwd=cwd,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
            limit=READ_LIMIT,
        )
    except OSError as e:
        raise SpawnFailureError(command, str(e)) from e


def is_process_alive(pid: int | None) -> bool:
    """Zero-effect liveness probe; zombies count as dead."""
    if not pid or pid <= 0:
        return False
    try:
        if not psutil.pid_exists(pid):
            return False
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but owned by someone else
        return True


def terminate_process_group(pid: int, sig: signal.Signals = signal.SIGTERM) -> bool:
    """Signal the process group led by ``pid``, falling back to the pid alone.

    Returns:
        True if a signal was delivered, False if the process was already gone
    """
    try:
        os.killpg(pid, sig)
        return True
    except OSError as e:
        logger.warning("Failed to signal process group", pid=pid, error=str(e))

    try:
        os.kill(pid, sig)
        return True
    except OSError as e:
        logger.warning("Failed to signal process", pid=pid, error=str(e))
        return False


async def pump_lines(
    stream: asyncio.StreamReader | None,
    on_line: Callable[[str], Awaitable[None] | None],
) -> None:
    """Read ``stream`` line by line until EOF and hand each decoded line to ``on_line``."""
    if stream is None:
        return
    while True:
        try:
            raw = await stream.readline()
        except ValueError:
            # Line longer than READ_LIMIT: take what is buffered
            raw = await stream.read(READ_LIMIT)
        if not raw:
            break
        line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
        result = on_line(line)
        if result is not None:
            await result


async def wait_for_exit(process: asyncio.subprocess.Process, interval: float = 0.1) -> int:
    """Exit code of ``process`` as soon as it exits.

    ``Process.wait()`` also waits for the pipes to close, which a backgrounded
    grandchild can hold open long after the shell itself has gone.
    """
    while process.returncode is None:
        await asyncio.sleep(interval)
    return process.returncode
