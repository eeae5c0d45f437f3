"""Development server routes."""

from fastapi import APIRouter, Query, status
from fastapi.responses import StreamingResponse

from branchpod.deps import ApiAuth, AppSettings, Supervisor
from branchpod.models import (
    ActionResponse,
    ServerListResponse,
    StartServerRequest,
    StartServerResponse,
)
from branchpod.routes.sse import sse_response

router = APIRouter(prefix="/servers", tags=["servers"])


@router.get("")
async def list_servers(
    _auth: ApiAuth,
    supervisor: Supervisor,
    project: str = Query(...),
) -> ServerListResponse:
    """List a project's dev servers, reconciled against the OS."""
    return ServerListResponse(servers=await supervisor.list(project))


@router.post("", status_code=status.HTTP_201_CREATED)
async def start_server(
    body: StartServerRequest,
    _auth: ApiAuth,
    supervisor: Supervisor,
) -> StartServerResponse:
    """Start a dev server for a branch.

    Returns as soon as the process is spawned; watch the stream for readiness.
    """
    entry = await supervisor.start(body.project, body.branch, body.command, body.port)
    return StartServerResponse(
        project=entry.project,
        branch=entry.branch,
        port=entry.port,
        pid=entry.pid,
        status=entry.status,
        command=entry.command,
    )


@router.delete("")
async def stop_server(
    _auth: ApiAuth,
    supervisor: Supervisor,
    project: str = Query(...),
    branch: str = Query(...),
) -> ActionResponse:
    await supervisor.stop(project, branch)
    return ActionResponse(success=True, message=f"Preview server stopped for branch: {branch}")


@router.get("/stream")
async def stream_server_output(
    _auth: ApiAuth,
    supervisor: Supervisor,
    settings: AppSettings,
    project: str = Query(...),
    branch: str = Query(...),
) -> StreamingResponse:
    """Stream a server's output (buffered history first) as Server-Sent Events."""
    subscription = supervisor.subscribe(project, branch)
    return sse_response(subscription, settings.sse_keepalive_seconds)
