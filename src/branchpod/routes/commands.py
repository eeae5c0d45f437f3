"""Ad-hoc command routes."""

from fastapi import APIRouter, Query, status
from fastapi.responses import StreamingResponse

from branchpod.deps import ApiAuth, AppSettings, Commands
from branchpod.models import CommandListResponse, CommandRun, RunCommandRequest
from branchpod.routes.sse import sse_response

router = APIRouter(prefix="/commands", tags=["commands"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def run_command(
    body: RunCommandRequest,
    _auth: ApiAuth,
    commands: Commands,
) -> CommandRun:
    return await commands.run(body.project, body.branch, body.command)


@router.get("")
async def list_commands(
    _auth: ApiAuth,
    commands: Commands,
    project: str | None = Query(default=None),
    branch: str | None = Query(default=None),
) -> CommandListResponse:
    return CommandListResponse(commands=commands.list(project, branch))


@router.delete("/{command_id}")
async def cancel_command(
    command_id: str,
    _auth: ApiAuth,
    commands: Commands,
) -> CommandRun:
    return commands.cancel(command_id)


@router.get("/stream")
async def stream_command(
    _auth: ApiAuth,
    commands: Commands,
    settings: AppSettings,
    command_id: str = Query(...),
) -> StreamingResponse:
    subscription = commands.subscribe(command_id)
    return sse_response(subscription, settings.sse_keepalive_seconds)
