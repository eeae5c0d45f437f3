"""Worktree inspection routes."""

from typing import Annotated

from fastapi import APIRouter, Depends, Query

from branchpod.deps import ApiAuth, Orchestrator, get_orchestrator
from branchpod.models import DetectResponse
from branchpod.validation import validate_branch, validate_project_id

router = APIRouter(prefix="/worktrees", tags=["worktrees"])


@router.get("/detect")
async def detect_apps(
    _auth: ApiAuth,
    orchestrator: Annotated[Orchestrator, Depends(get_orchestrator)],
    project: str = Query(...),
    branch: str = Query(...),
) -> DetectResponse:
    """Detect runnable apps in a branch's worktree (advisory)."""
    validate_project_id(project)
    validate_branch(branch)
    path = await orchestrator.resolver.resolve_worktree_path(project, branch)
    return DetectResponse(
        worktree_path=path,
        monorepo_type=orchestrator.detector.monorepo_type(path),
        apps=await orchestrator.detector.detect(path),
    )
