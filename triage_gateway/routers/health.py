"""Health check endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from .. import __version__
from ..app_state import GatewayState
from ..deps import get_gateway_state

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health_check(state: GatewayState = Depends(get_gateway_state)) -> dict:
    """Report gateway health, queue counts and scheduler status."""
    scheduler = state.scheduler
    return {
        "status": "ok" if scheduler.has_handler else "degraded",
        "version": __version__,
        "queue": state.store.get_stats().model_dump(),
        "scheduler": {
            "schedule": scheduler.schedule,
            "running": scheduler.is_running,
        },
    }
