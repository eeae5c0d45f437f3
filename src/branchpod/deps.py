"""Dependency injection for the branchpod service."""

from __future__ import annotations

import secrets
from dataclasses import dataclass
from typing import Annotated

import structlog
from fastapi import Depends, Header, HTTPException, Request, status

from branchpod.collaborators.detector import AppDetector
from branchpod.collaborators.worktrees import GitWorktreeResolver, WorktreeResolver
from branchpod.config import Settings
from branchpod.managers.command_runner import CommandRunner
from branchpod.managers.console_sessions import ConsoleSessionManager
from branchpod.managers.server_supervisor import ServerSupervisor
from branchpod.managers.tmux import TmuxClient
from branchpod.ports import PortAllocator
from branchpod.storage.registry_store import RegistryStore
from branchpod.streaming.hub import StreamHub

logger = structlog.get_logger()


@dataclass
class Orchestrator:
    """Every manager of one app instance, wired together.

    Built once per app (and per test), never a module-level singleton.
    """

    settings: Settings
    store: RegistryStore
    ports: PortAllocator
    hub: StreamHub
    resolver: WorktreeResolver
    detector: AppDetector
    tmux: TmuxClient
    servers: ServerSupervisor
    consoles: ConsoleSessionManager
    commands: CommandRunner

    @classmethod
    def build(
        cls,
        settings: Settings,
        resolver: WorktreeResolver | None = None,
        tmux: TmuxClient | None = None,
        detector: AppDetector | None = None,
    ) -> Orchestrator:
        """Wire the default collaborators; tests pass fakes for tmux and the resolver."""
        store = RegistryStore(settings.registry_path)
        ports = PortAllocator(store)
        hub = StreamHub(
            buffer_size=settings.stream_buffer_size,
            subscriber_queue_size=settings.subscriber_queue_size,
            poll_interval=settings.poll_interval_seconds,
        )
        resolver = resolver or GitWorktreeResolver(
            projects=settings.projects,
            projects_root=settings.projects_root,
        )
        detector = detector or AppDetector()
        tmux = tmux or TmuxClient(settings.tmux_binary, settings.tmux_timeout_seconds)

        return cls(
            settings=settings,
            store=store,
            ports=ports,
            hub=hub,
            resolver=resolver,
            detector=detector,
            tmux=tmux,
            servers=ServerSupervisor(settings, store, ports, resolver, hub, detector),
            consoles=ConsoleSessionManager(settings, tmux, resolver, hub),
            commands=CommandRunner(settings, resolver, hub),
        )

    async def startup(self) -> None:
        corrected = await self.servers.reconcile_all()
        logger.info(
            "Orchestrator started",
            registry=str(self.store.path),
            corrected_entries=corrected,
        )

    async def shutdown(self) -> None:
        await self.servers.shutdown()
        await self.commands.shutdown()
        await self.hub.shutdown()


def get_orchestrator(request: Request) -> Orchestrator:
    orchestrator: Orchestrator = request.app.state.orchestrator
    return orchestrator


def get_settings(request: Request) -> Settings:
    return get_orchestrator(request).settings


def get_server_supervisor(request: Request) -> ServerSupervisor:
    return get_orchestrator(request).servers


def get_console_manager(request: Request) -> ConsoleSessionManager:
    return get_orchestrator(request).consoles


def get_command_runner(request: Request) -> CommandRunner:
    return get_orchestrator(request).commands


def validate_api_token(
    expected: str,
    x_branchpod_token: str | None = None,
    authorization: str | None = None,
) -> None:
    """Check the request token when one is configured.

    Accepts the token in X-Branchpod-Token or Authorization: Bearer.
    With no token configured the API is open (local tool).
    """
    if not expected:
        return

    token = None
    if x_branchpod_token:
        token = x_branchpod_token
    elif authorization and authorization.startswith("Bearer "):
        token = authorization[7:]

    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing API token",
        )

    # Constant-time comparison
    if not secrets.compare_digest(token, expected):
        logger.warning("Invalid API token received")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API token",
        )


def verify_api_token(
    request: Request,
    x_branchpod_token: Annotated[str | None, Header(alias="X-Branchpod-Token")] = None,
    authorization: Annotated[str | None, Header()] = None,
) -> None:
    validate_api_token(get_settings(request).api_token, x_branchpod_token, authorization)


ApiAuth = Annotated[None, Depends(verify_api_token)]
Supervisor = Annotated[ServerSupervisor, Depends(get_server_supervisor)]
Consoles = Annotated[ConsoleSessionManager, Depends(get_console_manager)]
Commands = Annotated[CommandRunner, Depends(get_command_runner)]
AppSettings = Annotated[Settings, Depends(get_settings)]
