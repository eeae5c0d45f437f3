"""Development server lifecycle per (project, branch).

The registry file is the source of truth. Every read reconciles it against
the OS (is the pid still alive?) before answering, so entries left behind by
a crashed orchestrator or an externally killed server correct themselves.
"""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any

import structlog

from branchpod.collaborators.detector import AppDetector
from branchpod.collaborators.worktrees import WorktreeResolver
from branchpod.config import Settings
from branchpod.errors import ConflictError, NotFoundError, SpawnFailureError
from branchpod.managers.process import (
    build_child_env,
    is_process_alive,
    pump_lines,
    spawn_detached,
    strip_ansi,
    terminate_process_group,
    wait_for_exit,
)
from branchpod.models import (
    DetectedApp,
    LogEntry,
    LogType,
    ServerProcess,
    ServerStatus,
    StreamKey,
)
from branchpod.ports import PortAllocator
from branchpod.storage.registry_store import Registry, RegistryStore
from branchpod.streaming.hub import StreamHub, Subscription
from branchpod.validation import validate_branch, validate_project_id

logger = structlog.get_logger()

# Statuses a run can hold before any readiness marker has been seen
BOOTING = (ServerStatus.STARTING, ServerStatus.RUNNING)

# How long to wait for the pipes to close once the shell has exited
PIPE_DRAIN_SECONDS = 1.0


def find_entry(registry: Registry, project: str, branch: str) -> ServerProcess | None:
    for entry in registry.get(project, []):
        if entry.branch == branch:
            return entry
    return None


def put_entry(registry: Registry, entry: ServerProcess) -> None:
    """Insert ``entry``, superseding any previous entry for its branch."""
    entries = registry.setdefault(entry.project, [])
    for i, existing in enumerate(entries):
        if existing.branch == entry.branch:
            entries[i] = entry
            return
    entries.append(entry)


def reconcile_entries(entries: list[ServerProcess]) -> int:
    """Mark active entries whose process is gone as stopped. Returns how many changed."""
    changed = 0
    for i, entry in enumerate(entries):
        if entry.is_active and not is_process_alive(entry.pid):
            entries[i] = entry.model_copy(update={"status": ServerStatus.STOPPED})
            changed += 1
            logger.info(
                "Server process gone, marking stopped",
                project=entry.project,
                branch=entry.branch,
                pid=entry.pid,
            )
    return changed


class ServerSupervisor:
    """Starts, stops, lists and monitors development servers.

    A single lock serializes read-modify-write cycles on the registry file
    within this process; across processes the last writer wins.
    """

    def __init__(
        self,
        settings: Settings,
        store: RegistryStore,
        ports: PortAllocator,
        resolver: WorktreeResolver,
        hub: StreamHub,
        detector: AppDetector | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._ports = ports
        self._resolver = resolver
        self._hub = hub
        self._detector = detector
        self._lock = asyncio.Lock()
        self._monitors: set[asyncio.Future[Any]] = set()

    async def _detect(self, worktree_path: str) -> DetectedApp | None:
        if self._detector is None:
            return None
        apps = await self._detector.detect(worktree_path)
        return apps[0] if apps else None

    async def start(
        self,
        project: str,
        branch: str,
        command: str | None = None,
        port: int | None = None,
    ) -> ServerProcess:
        """Spawn a dev server for the branch.

        Returns once the child is spawned and the ``starting`` entry persisted;
        readiness is reported later through state transitions.

        Raises:
            NotFoundError: If the branch has no worktree
            ConflictError: If a server is already starting or running for the branch
            SpawnFailureError: If the OS refuses to create the process
        """
        validate_project_id(project)
        validate_branch(branch)
        worktree_path = await self._resolver.resolve_worktree_path(project, branch)

        app = None if command else await self._detect(worktree_path)
        run_command = command or (app.command if app else self._settings.default_server_command)
        cwd = worktree_path
        if app is not None and app.cwd != ".":
            cwd = str(Path(worktree_path) / app.cwd)

        key = StreamKey.server(project, branch)

        async with self._lock:
            registry = await self._store.load()
            changed = sum(reconcile_entries(entries) for entries in registry.values())

            existing = find_entry(registry, project, branch)
            if existing is not None and existing.is_active:
                if changed:
                    await self._store.save(registry)
                raise ConflictError(project, branch, existing.status.value)

            all_entries = [entry for entries in registry.values() for entry in entries]
            if port is None:
                if app is not None and app.port and await self._ports.is_free(app.port, all_entries):
                    port = app.port
                else:
                    port = await self._ports.next_free_port(self._settings.base_port, all_entries)

            env = build_child_env(self._settings, port)
            try:
                process = await spawn_detached(self._settings.shell, run_command, cwd, env)
            except SpawnFailureError as e:
                failed = ServerProcess(
                    project=project,
                    branch=branch,
                    port=port,
                    pid=None,
                    status=ServerStatus.ERROR,
                    command=run_command,
                )
                put_entry(registry, failed)
                await self._store.save(registry)
                self._hub.publish(key, LogEntry(type=LogType.ERROR, message=str(e)))
                logger.error(
                    "Failed to spawn dev server",
                    project=project,
                    branch=branch,
                    command=run_command,
                    error=e.reason,
                )
                raise

            entry = ServerProcess(
                project=project,
                branch=branch,
                port=port,
                pid=process.pid,
                status=ServerStatus.STARTING,
                command=run_command,
            )
            put_entry(registry, entry)
            await self._store.save(registry)

        self._hub.publish(
            key,
            LogEntry(type=LogType.SYSTEM, message=f"Starting: {run_command} (port {port})"),
        )
        logger.info(
            "Dev server starting",
            project=project,
            branch=branch,
            port=port,
            pid=process.pid,
            cwd=cwd,
        )

        # Keep a reference so the monitor is not garbage collected
        self._track(asyncio.create_task(self._monitor(entry, process), name=f"monitor:{key}"))

        return entry

    async def _monitor(self, entry: ServerProcess, process: asyncio.subprocess.Process) -> None:
        """Pump child output into the hub and apply readiness/exit transitions.

        Only a stdout readiness marker counts as a readiness match. The grace
        timer marks the server running optimistically, but a stderr error
        marker still moves it to error until a readiness marker has been seen.
        """
        key = StreamKey.server(entry.project, entry.branch)
        pid = process.pid
        ready_matched = False
        failed = False
        exited = False

        async def on_stdout(line: str) -> None:
            nonlocal ready_matched
            self._hub.publish(key, LogEntry(type=LogType.STDOUT, message=line))
            if exited or ready_matched or failed:
                return
            if any(m in strip_ansi(line) for m in self._settings.readiness_markers):
                ready_matched = True
                await self._transition(entry, pid, ServerStatus.RUNNING, from_statuses=BOOTING)

        async def on_stderr(line: str) -> None:
            nonlocal failed
            self._hub.publish(key, LogEntry(type=LogType.STDERR, message=line))
            if exited or ready_matched or failed:
                return
            if any(m in strip_ansi(line) for m in self._settings.error_markers):
                failed = True
                await self._transition(entry, pid, ServerStatus.ERROR, from_statuses=BOOTING)

        async def grace_timer() -> None:
            await asyncio.sleep(self._settings.readiness_grace_seconds)
            if not (ready_matched or failed):
                await self._transition(
                    entry, pid, ServerStatus.RUNNING, from_statuses=(ServerStatus.STARTING,)
                )

        timer = asyncio.create_task(grace_timer())
        pumps = asyncio.gather(
            pump_lines(process.stdout, on_stdout),
            pump_lines(process.stderr, on_stderr),
        )
        try:
            exit_code = await wait_for_exit(process)
            exited = True
            try:
                await asyncio.wait_for(asyncio.shield(pumps), timeout=PIPE_DRAIN_SECONDS)
            except TimeoutError:
                # A backgrounded grandchild still holds the pipes; keep streaming it
                self._track(pumps)
        except asyncio.CancelledError:
            pumps.cancel()
            raise
        finally:
            timer.cancel()

        await self._transition(entry, pid, ServerStatus.STOPPED, exit_code=exit_code)
        self._hub.publish(
            key,
            LogEntry(
                type=LogType.SYSTEM,
                message=f"Process exited with code {exit_code}",
                exit_code=exit_code,
            ),
        )
        logger.info(
            "Dev server exited",
            project=entry.project,
            branch=entry.branch,
            pid=pid,
            exit_code=exit_code,
        )

    def _track(self, task: asyncio.Future[Any]) -> None:
        self._monitors.add(task)
        task.add_done_callback(self._monitors.discard)

    async def _transition(
        self,
        entry: ServerProcess,
        pid: int,
        status: ServerStatus,
        exit_code: int | None = None,
        from_statuses: tuple[ServerStatus, ...] | None = None,
    ) -> None:
        """Persist a background status change if the stored entry is still this run.

        With ``from_statuses``, the change only applies while the stored status
        is one of them.
        """
        async with self._lock:
            registry = await self._store.load()
            current = find_entry(registry, entry.project, entry.branch)
            if current is None or current.pid != pid:
                return
            if from_statuses is not None and current.status not in from_statuses:
                return

            update: dict[str, object] = {"status": status}
            if exit_code is not None:
                update["exit_code"] = exit_code
            put_entry(registry, current.model_copy(update=update))
            await self._store.save(registry)

        logger.info(
            "Dev server status changed",
            project=entry.project,
            branch=entry.branch,
            pid=pid,
            status=status.value,
        )

    async def stop(self, project: str, branch: str) -> ServerProcess:
        """Signal the server's process group and mark it stopped.

        Raises:
            NotFoundError: If the branch has no server entry
        """
        validate_project_id(project)
        validate_branch(branch)

        async with self._lock:
            registry = await self._store.load()
            entry = find_entry(registry, project, branch)
            if entry is None:
                raise NotFoundError(
                    "server", f"{project}:{branch}", f"No preview server for branch: {branch}"
                )

            if entry.pid and entry.status != ServerStatus.STOPPED:
                terminate_process_group(entry.pid)

            stopped = entry.model_copy(update={"status": ServerStatus.STOPPED})
            put_entry(registry, stopped)
            await self._store.save(registry)

        self._hub.publish(
            StreamKey.server(project, branch),
            LogEntry(type=LogType.SYSTEM, message="Server stopped"),
        )
        logger.info("Dev server stopped", project=project, branch=branch, pid=entry.pid)
        return stopped

    async def list(self, project: str) -> list[ServerProcess]:
        """All entries of a project, reconciled against the OS first."""
        validate_project_id(project)
        async with self._lock:
            registry = await self._store.load()
            entries = registry.get(project, [])
            if reconcile_entries(entries):
                await self._store.save(registry)
            return list(entries)

    async def get(self, project: str, branch: str) -> ServerProcess | None:
        for entry in await self.list(project):
            if entry.branch == branch:
                return entry
        return None

    async def reconcile_all(self) -> int:
        """Reconcile every project's entries. Returns how many were corrected."""
        async with self._lock:
            registry = await self._store.load()
            changed = sum(reconcile_entries(entries) for entries in registry.values())
            if changed:
                await self._store.save(registry)
        if changed:
            logger.info("Reconciled server registry", corrected=changed)
        return changed

    def subscribe(self, project: str, branch: str) -> Subscription:
        validate_project_id(project)
        validate_branch(branch)
        return self._hub.subscribe(StreamKey.server(project, branch))

    async def shutdown(self) -> None:
        """Stop monitoring. Children are detached and keep running."""
        tasks = list(self._monitors)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Server supervisor shut down", monitors=len(tasks))
