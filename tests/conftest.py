"""Shared test fixtures for branchpod tests."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, Generator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient

from branchpod.config import Settings
from branchpod.deps import Orchestrator
from branchpod.errors import ExternalServiceError, NotFoundError
from branchpod.main import create_app
from branchpod.managers.process import terminate_process_group
from branchpod.managers.tmux import TmuxSession


# ============================================
# Fakes
# ============================================


class FakeResolver:
    """Worktree resolver backed by a dict of (project, branch) -> path."""

    def __init__(self, worktrees: dict[tuple[str, str], str] | None = None) -> None:
        self.worktrees = dict(worktrees or {})

    def add(self, project: str, branch: str, path: Path) -> None:
        path.mkdir(parents=True, exist_ok=True)
        self.worktrees[(project, branch)] = str(path)

    async def resolve_worktree_path(self, project: str, branch: str) -> str:
        try:
            return self.worktrees[(project, branch)]
        except KeyError:
            raise NotFoundError(
                "worktree", f"{project}:{branch}", f"Worktree not found for branch: {branch}"
            ) from None


@dataclass
class FakeSession:
    cwd: str
    content: str = ""
    sent: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))


class FakeTmux:
    """In-memory stand-in for TmuxClient.

    Tests drive the pane content directly through ``set_content``/``append``.
    """

    def __init__(self) -> None:
        self.sessions: dict[str, FakeSession] = {}
        self.capture_calls = 0
        self.fail_kill = False

    def set_content(self, name: str, content: str) -> None:
        self.sessions[name].content = content

    def append(self, name: str, line: str) -> None:
        session = self.sessions[name]
        session.content = f"{session.content}\n{line}" if session.content else line

    async def has_session(self, name: str) -> bool:
        return name in self.sessions

    async def new_session(self, name: str, cwd: str) -> bool:
        if name in self.sessions:
            return False
        self.sessions[name] = FakeSession(cwd=cwd)
        return True

    async def send_keys(self, name: str, text: str) -> None:
        if name not in self.sessions:
            raise ExternalServiceError("tmux", ["send-keys", name], "can't find session")
        self.sessions[name].sent.append(text)

    async def capture_pane(self, name: str, lines: int = 2000) -> str | None:
        self.capture_calls += 1
        session = self.sessions.get(name)
        return None if session is None else session.content

    async def kill_session(self, name: str) -> bool:
        if self.fail_kill or name not in self.sessions:
            return False
        del self.sessions[name]
        return True

    async def list_sessions(self) -> list[TmuxSession]:
        return [
            TmuxSession(name=name, created_at=s.created_at, activity_at=s.created_at)
            for name, s in self.sessions.items()
        ]


# ============================================
# Settings and collaborators
# ============================================


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated to a temp directory with fast timers."""
    return Settings(
        environment="development",
        data_dir=str(tmp_path / "data"),
        base_port=43200,
        default_server_command="sleep 30",
        readiness_grace_seconds=2.0,
        poll_interval_seconds=0.05,
        console_init_delay=0,
        stream_buffer_size=50,
        subscriber_queue_size=100,
        sse_keepalive_seconds=0.5,
    )


@pytest.fixture
def resolver(tmp_path: Path) -> FakeResolver:
    fake = FakeResolver()
    fake.add("acme", "feature-x", tmp_path / "worktrees" / "acme" / "feature-x")
    fake.add("acme", "main", tmp_path / "worktrees" / "acme" / "main")
    return fake


@pytest.fixture
def fake_tmux() -> FakeTmux:
    return FakeTmux()


def build_orchestrator(settings: Settings, resolver: FakeResolver, tmux: FakeTmux) -> Orchestrator:
    return Orchestrator.build(settings, resolver=resolver, tmux=tmux)  # type: ignore[arg-type]


@pytest_asyncio.fixture
async def orchestrator(
    settings: Settings,
    resolver: FakeResolver,
    fake_tmux: FakeTmux,
) -> AsyncGenerator[Orchestrator, None]:
    """Orchestrator wired with fakes; background work is stopped after the test."""
    orch = build_orchestrator(settings, resolver, fake_tmux)
    yield orch
    # Children started by tests are not supervised past the test
    for entries in (await orch.store.load()).values():
        for entry in entries:
            if entry.is_active and entry.pid:
                terminate_process_group(entry.pid)
    await orch.shutdown()


# ============================================
# FastAPI Fixtures
# ============================================


@pytest.fixture
def app_orchestrator(
    settings: Settings,
    resolver: FakeResolver,
    fake_tmux: FakeTmux,
) -> Orchestrator:
    return build_orchestrator(settings, resolver, fake_tmux)


@pytest.fixture
def fastapi_client(app_orchestrator: Orchestrator) -> Generator[TestClient, None, None]:
    """TestClient running the app lifespan around an orchestrator built with fakes."""
    app = create_app(orchestrator=app_orchestrator)
    with TestClient(app) as client:
        yield client

    for entries in asyncio.run(app_orchestrator.store.load()).values():
        for entry in entries:
            if entry.is_active and entry.pid:
                terminate_process_group(entry.pid)
