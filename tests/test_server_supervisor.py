"""Tests for the server supervisor, using real child processes."""

from __future__ import annotations

import asyncio
import json
import os
import signal
from pathlib import Path

import pytest

from branchpod.config import Settings
from branchpod.deps import Orchestrator
from branchpod.errors import ConflictError, NotFoundError, SpawnFailureError
from branchpod.managers.process import is_process_alive, terminate_process_group
from branchpod.models import LogType, ServerProcess, ServerStatus, StreamKey

from .conftest import FakeResolver, FakeTmux, build_orchestrator

SERVER_KEY = StreamKey.server("acme", "feature-x")


async def wait_for_status(
    orchestrator: Orchestrator,
    branch: str,
    status: ServerStatus,
    timeout: float = 5.0,
) -> ServerProcess:
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        entry = await orchestrator.servers.get("acme", branch)
        if entry is not None and entry.status == status:
            return entry
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError(f"{branch} never reached {status}: {entry}")
        await asyncio.sleep(0.05)


async def wait_until(predicate, timeout: float = 5.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.05)


class TestStart:
    """Tests for starting dev servers."""

    @pytest.mark.asyncio
    async def test_start_ready_then_external_kill(self, orchestrator: Orchestrator) -> None:
        """Starting -> running on a readiness line -> stopped after an external kill."""
        entry = await orchestrator.servers.start(
            "acme",
            "feature-x",
            command='echo "Local: http://localhost:5173"; sleep 30',
        )

        assert entry.status == ServerStatus.STARTING
        assert entry.port == 43200
        assert entry.pid is not None

        running = await wait_for_status(orchestrator, "feature-x", ServerStatus.RUNNING)
        assert running.port == 43200
        assert running.pid == entry.pid

        os.killpg(entry.pid, signal.SIGKILL)
        stopped = await wait_for_status(orchestrator, "feature-x", ServerStatus.STOPPED)
        assert stopped.pid == entry.pid

    @pytest.mark.asyncio
    async def test_second_start_conflicts(self, orchestrator: Orchestrator) -> None:
        await orchestrator.servers.start("acme", "feature-x", command="sleep 30")

        with pytest.raises(ConflictError, match="already running"):
            await orchestrator.servers.start("acme", "feature-x", command="sleep 30")

    @pytest.mark.asyncio
    async def test_missing_worktree(self, orchestrator: Orchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.servers.start("acme", "no-such-branch", command="sleep 30")

    @pytest.mark.asyncio
    async def test_ports_are_allocated_per_branch(self, orchestrator: Orchestrator) -> None:
        first = await orchestrator.servers.start("acme", "feature-x", command="sleep 30")
        second = await orchestrator.servers.start("acme", "main", command="sleep 30")

        assert first.port == 43200
        assert second.port == 43201

    @pytest.mark.asyncio
    async def test_explicit_port(self, orchestrator: Orchestrator) -> None:
        entry = await orchestrator.servers.start(
            "acme", "feature-x", command="sleep 30", port=45000
        )
        assert entry.port == 45000

    @pytest.mark.asyncio
    async def test_child_environment(self, orchestrator: Orchestrator) -> None:
        subscription = orchestrator.hub.subscribe(SERVER_KEY)
        await orchestrator.servers.start(
            "acme", "feature-x", command='echo "PORT=$PORT HOST=$HOST NODE_ENV=$NODE_ENV"'
        )

        seen: list[str] = []
        async for event in subscription:
            seen.append(event.message or "")
            if event.exit_code is not None:
                break

        assert "PORT=43200 HOST=0.0.0.0 NODE_ENV=development" in seen

    @pytest.mark.asyncio
    async def test_default_command_when_nothing_detected(self, orchestrator: Orchestrator) -> None:
        entry = await orchestrator.servers.start("acme", "feature-x")
        assert entry.command == "sleep 30"

    @pytest.mark.asyncio
    async def test_detected_app_command(
        self, orchestrator: Orchestrator, resolver: FakeResolver
    ) -> None:
        worktree = Path(resolver.worktrees[("acme", "feature-x")])
        (worktree / "package.json").write_text(
            json.dumps({"name": "web", "scripts": {"dev": "vite"}, "devDependencies": {"vite": "5"}})
        )

        entry = await orchestrator.servers.start("acme", "feature-x")

        assert entry.command == "npm run dev -- --host 0.0.0.0"
        assert entry.port == 5173

    @pytest.mark.asyncio
    async def test_spawn_failure_records_error(
        self,
        settings: Settings,
        resolver: FakeResolver,
        fake_tmux: FakeTmux,
    ) -> None:
        broken = settings.model_copy(update={"shell": "/nonexistent/shell"})
        orchestrator = build_orchestrator(broken, resolver, fake_tmux)

        with pytest.raises(SpawnFailureError):
            await orchestrator.servers.start("acme", "feature-x", command="sleep 30")

        entry = await orchestrator.servers.get("acme", "feature-x")
        assert entry is not None
        assert entry.status == ServerStatus.ERROR
        assert entry.pid is None
        await orchestrator.shutdown()


class TestTransitions:
    """Tests for background status transitions."""

    @pytest.mark.asyncio
    async def test_grace_timeout_marks_running(
        self,
        settings: Settings,
        resolver: FakeResolver,
        fake_tmux: FakeTmux,
    ) -> None:
        fast = settings.model_copy(update={"readiness_grace_seconds": 0.2})
        orchestrator = build_orchestrator(fast, resolver, fake_tmux)

        entry = await orchestrator.servers.start("acme", "feature-x", command="sleep 30")
        await wait_for_status(orchestrator, "feature-x", ServerStatus.RUNNING, timeout=3)

        await orchestrator.servers.stop("acme", "feature-x")
        await orchestrator.shutdown()
        assert entry.pid is not None

    @pytest.mark.asyncio
    async def test_stderr_error_before_ready(self, orchestrator: Orchestrator) -> None:
        await orchestrator.servers.start(
            "acme", "feature-x", command='echo "Error: cannot find module" >&2; sleep 30'
        )
        await wait_for_status(orchestrator, "feature-x", ServerStatus.ERROR)

    @pytest.mark.asyncio
    async def test_stderr_after_ready_is_ignored(self, orchestrator: Orchestrator) -> None:
        await orchestrator.servers.start(
            "acme",
            "feature-x",
            command='echo "ready in 200ms"; sleep 0.3; echo "Error: transient" >&2; sleep 30',
        )
        await wait_for_status(orchestrator, "feature-x", ServerStatus.RUNNING)
        await asyncio.sleep(0.6)

        entry = await orchestrator.servers.get("acme", "feature-x")
        assert entry is not None
        assert entry.status == ServerStatus.RUNNING

    @pytest.mark.asyncio
    async def test_stderr_error_after_grace_timeout(
        self,
        settings: Settings,
        resolver: FakeResolver,
        fake_tmux: FakeTmux,
    ) -> None:
        """The grace timeout is not a readiness match: a later stderr error still counts."""
        fast = settings.model_copy(update={"readiness_grace_seconds": 0.2})
        orchestrator = build_orchestrator(fast, resolver, fake_tmux)

        entry = await orchestrator.servers.start(
            "acme", "feature-x", command='sleep 0.6; echo "Error: EADDRINUSE" >&2; sleep 30'
        )
        await wait_for_status(orchestrator, "feature-x", ServerStatus.RUNNING, timeout=3)
        await wait_for_status(orchestrator, "feature-x", ServerStatus.ERROR, timeout=3)

        assert entry.pid is not None
        terminate_process_group(entry.pid)
        await orchestrator.shutdown()

    @pytest.mark.asyncio
    async def test_exit_recorded_while_grandchild_holds_output(
        self, orchestrator: Orchestrator
    ) -> None:
        entry = await orchestrator.servers.start(
            "acme", "feature-x", command="sleep 30 & echo started; exit 4"
        )
        assert entry.pid is not None

        try:
            await wait_until(
                lambda: any(e.exit_code == 4 for e in orchestrator.hub.history(SERVER_KEY)),
                timeout=4,
            )
            stopped = await orchestrator.servers.get("acme", "feature-x")
            assert stopped is not None
            assert stopped.status == ServerStatus.STOPPED
            assert stopped.exit_code == 4
        finally:
            terminate_process_group(entry.pid)

    @pytest.mark.asyncio
    async def test_exit_records_code(self, orchestrator: Orchestrator) -> None:
        await orchestrator.servers.start("acme", "feature-x", command="echo started; exit 3")

        entry = await wait_for_status(orchestrator, "feature-x", ServerStatus.STOPPED)
        await wait_until(lambda: any(e.exit_code == 3 for e in orchestrator.hub.history(SERVER_KEY)))
        entry = await orchestrator.servers.get("acme", "feature-x")

        assert entry is not None
        assert entry.exit_code == 3
        history = orchestrator.hub.history(SERVER_KEY)
        assert history[0].type == LogType.SYSTEM
        assert any(e.type == LogType.STDOUT and e.message == "started" for e in history)
        assert history[-1].message == "Process exited with code 3"


class TestStopAndList:
    """Tests for stopping, listing and reconciliation."""

    @pytest.mark.asyncio
    async def test_stop_kills_process_group(self, orchestrator: Orchestrator) -> None:
        entry = await orchestrator.servers.start("acme", "feature-x", command="sleep 30 & wait")

        stopped = await orchestrator.servers.stop("acme", "feature-x")

        assert stopped.status == ServerStatus.STOPPED
        assert entry.pid is not None
        await wait_until(lambda: not is_process_alive(entry.pid))

    @pytest.mark.asyncio
    async def test_stop_unknown_branch(self, orchestrator: Orchestrator) -> None:
        with pytest.raises(NotFoundError):
            await orchestrator.servers.stop("acme", "feature-x")

    @pytest.mark.asyncio
    async def test_stop_already_stopped_is_forgiving(self, orchestrator: Orchestrator) -> None:
        await orchestrator.servers.start("acme", "feature-x", command="exit 0")
        await wait_for_status(orchestrator, "feature-x", ServerStatus.STOPPED)

        stopped = await orchestrator.servers.stop("acme", "feature-x")
        assert stopped.status == ServerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_restart_supersedes_entry(self, orchestrator: Orchestrator) -> None:
        first = await orchestrator.servers.start("acme", "feature-x", command="sleep 30")
        await orchestrator.servers.stop("acme", "feature-x")
        second = await orchestrator.servers.start("acme", "feature-x", command="sleep 30")

        entries = await orchestrator.servers.list("acme")

        assert len(entries) == 1
        assert entries[0].pid == second.pid
        assert second.pid != first.pid

    @pytest.mark.asyncio
    async def test_list_reconciles_stale_entries(self, orchestrator: Orchestrator) -> None:
        """Entries left by a previous orchestrator whose pid is gone read as stopped."""
        process = await asyncio.create_subprocess_exec("true")
        await process.wait()
        stale = ServerProcess(
            project="acme",
            branch="feature-x",
            port=43200,
            pid=process.pid,
            status=ServerStatus.RUNNING,
            command="pnpm dev",
        )
        await orchestrator.store.save({"acme": [stale]})

        entries = await orchestrator.servers.list("acme")

        assert entries[0].status == ServerStatus.STOPPED
        persisted = await orchestrator.store.project_entries("acme")
        assert persisted[0].status == ServerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_reconcile_all_frees_ports(self, orchestrator: Orchestrator) -> None:
        process = await asyncio.create_subprocess_exec("true")
        await process.wait()
        stale = ServerProcess(
            project="other",
            branch="main",
            port=43200,
            pid=process.pid,
            status=ServerStatus.STARTING,
            command="pnpm dev",
        )
        await orchestrator.store.save({"other": [stale]})

        assert await orchestrator.servers.reconcile_all() == 1
        entry = await orchestrator.servers.start("acme", "feature-x", command="sleep 30")
        assert entry.port == 43200
