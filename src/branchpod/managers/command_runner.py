"""One-shot commands run in a worktree, streamed with the direct-event strategy."""

from __future__ import annotations

import asyncio
from uuid import uuid4

import structlog

from branchpod.collaborators.worktrees import WorktreeResolver
from branchpod.config import Settings
from branchpod.errors import NotFoundError
from branchpod.managers.process import (
    build_child_env,
    pump_lines,
    spawn_detached,
    terminate_process_group,
)
from branchpod.models import CommandRun, CommandStatus, LogEntry, LogType, StreamKey
from branchpod.streaming.hub import StreamHub, Subscription
from branchpod.validation import validate_branch, validate_id, validate_project_id

logger = structlog.get_logger()

# Finished runs beyond this count are forgotten, oldest first
MAX_COMMAND_HISTORY = 100


class CommandRunner:
    """Tracks ad-hoc commands in memory; nothing here survives a restart."""

    def __init__(self, settings: Settings, resolver: WorktreeResolver, hub: StreamHub) -> None:
        self._settings = settings
        self._resolver = resolver
        self._hub = hub
        self._runs: dict[str, CommandRun] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    @staticmethod
    def _key(run: CommandRun) -> StreamKey:
        return StreamKey.command(run.project, run.branch, run.id)

    async def run(self, project: str, branch: str, command: str) -> CommandRun:
        """Spawn ``command`` in the branch's worktree and stream its output.

        Raises:
            NotFoundError: If the branch has no worktree
            SpawnFailureError: If the OS refuses to create the process
        """
        validate_project_id(project)
        validate_branch(branch)
        cwd = await self._resolver.resolve_worktree_path(project, branch)

        env = build_child_env(self._settings)
        process = await spawn_detached(self._settings.shell, command, cwd, env)

        run = CommandRun(
            id=uuid4().hex[:12],
            project=project,
            branch=branch,
            command=command,
            pid=process.pid,
        )
        self._runs[run.id] = run
        self._hub.publish(self._key(run), LogEntry(type=LogType.SYSTEM, message=f"$ {command}"))
        logger.info("Command started", command_id=run.id, project=project, branch=branch, pid=run.pid)

        task = asyncio.create_task(self._monitor(run, process), name=f"command:{run.id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return run

    async def _monitor(self, run: CommandRun, process: asyncio.subprocess.Process) -> None:
        key = self._key(run)

        def on_stdout(line: str) -> None:
            self._hub.publish(key, LogEntry(type=LogType.STDOUT, message=line))

        def on_stderr(line: str) -> None:
            self._hub.publish(key, LogEntry(type=LogType.STDERR, message=line))

        await asyncio.gather(
            pump_lines(process.stdout, on_stdout),
            pump_lines(process.stderr, on_stderr),
        )
        exit_code = await process.wait()

        status = CommandStatus.COMPLETED if exit_code == 0 else CommandStatus.ERROR
        self._runs[run.id] = run.model_copy(update={"status": status, "exit_code": exit_code})
        self._hub.publish(
            key,
            LogEntry(
                type=LogType.SYSTEM if exit_code == 0 else LogType.ERROR,
                message=f"Process exited with code {exit_code}",
                exit_code=exit_code,
            ),
        )
        logger.info("Command finished", command_id=run.id, exit_code=exit_code)
        await self._prune()

    async def _prune(self) -> None:
        finished = [r for r in self._runs.values() if r.status != CommandStatus.RUNNING]
        excess = len(self._runs) - MAX_COMMAND_HISTORY
        for run in sorted(finished, key=lambda r: r.started_at)[: max(excess, 0)]:
            del self._runs[run.id]
            await self._hub.close_key(self._key(run))

    def get(self, command_id: str) -> CommandRun:
        run = self._runs.get(command_id)
        if run is None:
            raise NotFoundError("command", command_id, f"Command not found: {command_id}")
        return run

    def list(self, project: str | None = None, branch: str | None = None) -> list[CommandRun]:
        runs = [
            run
            for run in self._runs.values()
            if (project is None or run.project == project)
            and (branch is None or run.branch == branch)
        ]
        return sorted(runs, key=lambda r: r.started_at)

    def subscribe(self, command_id: str) -> Subscription:
        validate_id(command_id, "command_id")
        return self._hub.subscribe(self._key(self.get(command_id)))

    def cancel(self, command_id: str) -> CommandRun:
        """Signal a running command's process group; its monitor records the exit."""
        run = self.get(command_id)
        if run.status == CommandStatus.RUNNING and run.pid:
            terminate_process_group(run.pid)
            logger.info("Command cancelled", command_id=command_id, pid=run.pid)
        return run

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
