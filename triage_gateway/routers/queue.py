"""Queue inspection, enqueue and trigger endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ..app_state import GatewayState
from ..auth import require_auth
from ..deps import get_gateway_state
from ..errors import DuplicateItem
from ..models.queue import EnqueueRequest, ImmediateStatus, ProcessRequest

router = APIRouter(prefix="/api", tags=["queue"], dependencies=[Depends(require_auth)])


@router.get("/queue")
async def list_queue(state: GatewayState = Depends(get_gateway_state)) -> dict:
    """List all queue items: pending in dequeue order, then the rest."""
    return {
        "items": [i.model_dump(mode="json") for i in state.store.get_all()],
        "stats": state.store.get_stats().model_dump(),
    }


@router.get("/queue/stats")
async def queue_stats(state: GatewayState = Depends(get_gateway_state)) -> dict:
    return state.store.get_stats().model_dump()


@router.get("/queue/{issue_number}")
async def get_item(issue_number: int, state: GatewayState = Depends(get_gateway_state)) -> dict:
    item = state.store.get(issue_number)
    if item is None:
        raise HTTPException(status_code=404, detail=f"Issue #{issue_number} is not queued")
    return {"item": item.model_dump(mode="json")}


@router.post("/queue", status_code=201)
async def enqueue(body: EnqueueRequest, state: GatewayState = Depends(get_gateway_state)) -> dict:
    """Queue an issue for the next drain run."""
    try:
        item = state.store.enqueue(body.issue_number, body.priority, repository=body.repository)
    except DuplicateItem as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return {"item": item.model_dump(mode="json")}


@router.delete("/queue/finished")
async def remove_finished(state: GatewayState = Depends(get_gateway_state)) -> dict:
    """Drop completed and failed items."""
    return {"removed": state.store.remove_finished()}


@router.post("/queue/run")
async def run_queue(wait: bool = False, state: GatewayState = Depends(get_gateway_state)) -> dict:
    """Trigger a drain run. With ?wait=true, respond with the run summary."""
    scheduler = state.scheduler
    if not scheduler.has_handler:
        raise HTTPException(status_code=503, detail="No process handler registered")
    if wait:
        summary = await scheduler.run_now()
        return {"status": "finished", "summary": summary.model_dump(mode="json")}
    started = scheduler.trigger()
    return {"status": "started" if started else "joined"}


@router.post("/queue/{issue_number}/process", status_code=202)
async def process_immediate(
    issue_number: int,
    body: ProcessRequest | None = None,
    state: GatewayState = Depends(get_gateway_state),
) -> dict:
    """Process one issue now, ahead of the queue. 409 while a run is active."""
    body = body or ProcessRequest()
    status = state.scheduler.process_immediate(issue_number, body.priority, repository=body.repository)
    if status == ImmediateStatus.NO_HANDLER:
        raise HTTPException(status_code=503, detail="No process handler registered")
    if status == ImmediateStatus.LOCKED:
        raise HTTPException(status_code=409, detail=f"A run is in progress; issue #{issue_number} stays queued")
    return {"status": status.value}


@router.get("/scheduler")
async def scheduler_status(state: GatewayState = Depends(get_gateway_state)) -> dict:
    scheduler = state.scheduler
    last_run = scheduler.last_run
    return {
        "schedule": scheduler.schedule,
        "next_run_at": scheduler.next_run_at.isoformat() if scheduler.next_run_at else None,
        "running": scheduler.is_running,
        "has_handler": scheduler.has_handler,
        "last_run": last_run.model_dump(mode="json") if last_run else None,
    }
