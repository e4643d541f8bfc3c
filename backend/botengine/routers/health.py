"""Health check router."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Health check endpoint."""
    supervisor = getattr(request.app.state, "supervisor", None)
    return {
        "status": "ok",
        "service": "botengine",
        "version": "1.0.0",
        "active_bots": len(supervisor.registry) if supervisor is not None else 0,
        "running_bots": len(supervisor.registry.running()) if supervisor is not None else 0,
    }
