"""Health check endpoints."""

from fastapi import APIRouter

from branchpod import __version__

router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy", "service": "branchpod", "version": __version__}
