"""branchpod HTTP routes."""

from branchpod.routes.commands import router as commands_router
from branchpod.routes.consoles import router as consoles_router
from branchpod.routes.health import router as health_router
from branchpod.routes.servers import router as servers_router
from branchpod.routes.worktrees import router as worktrees_router

__all__ = [
    "commands_router",
    "consoles_router",
    "health_router",
    "servers_router",
    "worktrees_router",
]
