"""Console session routes."""

from fastapi import APIRouter, Query
from fastapi.responses import StreamingResponse

from branchpod.deps import ApiAuth, AppSettings, Consoles
from branchpod.errors import NotFoundError
from branchpod.models import (
    ActionResponse,
    ConsoleListResponse,
    KillResult,
    RunConsoleCommandRequest,
    RunConsoleCommandResponse,
)
from branchpod.routes.sse import sse_response
from branchpod.validation import validate_branch, validate_console_id, validate_project_id

router = APIRouter(prefix="/consoles", tags=["consoles"])


@router.post("/commands")
async def run_console_command(
    body: RunConsoleCommandRequest,
    _auth: ApiAuth,
    consoles: Consoles,
) -> RunConsoleCommandResponse:
    """Send a command to the branch's console, creating the session if needed."""
    session_name = await consoles.run(body.project, body.branch, body.command, body.console_id)
    return RunConsoleCommandResponse(session_name=session_name, message="Command sent")


@router.get("")
async def list_consoles(
    _auth: ApiAuth,
    consoles: Consoles,
    project: str | None = Query(default=None),
    branch: str | None = Query(default=None),
) -> ConsoleListResponse:
    return ConsoleListResponse(sessions=await consoles.list(project, branch))


@router.delete("")
async def kill_console(
    _auth: ApiAuth,
    consoles: Consoles,
    project: str = Query(...),
    branch: str = Query(...),
    console_id: str | None = Query(default=None),
) -> ActionResponse:
    validate_project_id(project)
    validate_branch(branch)
    if console_id is not None:
        validate_console_id(console_id)

    session_name = consoles.session_name(project, branch, console_id)
    result = await consoles.kill(session_name)
    if result == KillResult.NOT_FOUND:
        raise NotFoundError("console", session_name, f"Console session not found: {session_name}")
    return ActionResponse(success=True, message=f"Killed console session: {session_name}")


@router.get("/stream")
async def stream_console(
    _auth: ApiAuth,
    consoles: Consoles,
    settings: AppSettings,
    project: str = Query(...),
    branch: str = Query(...),
    console_id: str | None = Query(default=None),
) -> StreamingResponse:
    """Stream console output: a full refresh first, then appended lines or refreshes."""
    subscription = await consoles.subscribe(project, branch, console_id)
    return sse_response(subscription, settings.sse_keepalive_seconds)
