"""Tool guard evaluation and audit tail endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from ..app_state import GatewayState
from ..auth import require_auth
from ..deps import get_gateway_state
from ..models.guard import EvaluateRequest

router = APIRouter(prefix="/api", tags=["guard"], dependencies=[Depends(require_auth)])


@router.post("/guard/evaluate")
async def evaluate_tool_use(body: EvaluateRequest, state: GatewayState = Depends(get_gateway_state)) -> dict:
    """Evaluate one tool call against the guard policy."""
    decision = state.guard.evaluate(body.tool_name, body.tool_input)
    return decision.model_dump()


@router.get("/audit")
async def audit_tail(
    limit: int = Query(100, ge=1, le=1000),
    state: GatewayState = Depends(get_gateway_state),
) -> dict:
    """Most recent audit entries, oldest first."""
    return {"entries": [e.model_dump(mode="json") for e in state.audit.read_recent(limit)]}
