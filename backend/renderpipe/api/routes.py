"""API route handlers and Pydantic request/response schemas."""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from renderpipe.errors import PlanNotFoundError, RunNotFoundError, RunStateError
from renderpipe.orchestrator.runtime import RenderRuntime
from renderpipe.orchestrator.state import is_terminal
from renderpipe.schemas.plan import PlanSpec
from renderpipe.schemas.run import RunSnapshot

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ============================================================================
# Request/Response Models
# ============================================================================

class PlanCreated(BaseModel):
    plan_id: str
    scene_count: int
    render_url: str


class RetryRequest(BaseModel):
    """Body of POST /runs/{id}/retry; from_step accepts either step spelling."""
    from_step: Optional[str] = None


class RunListItem(BaseModel):
    id: str
    plan_id: str
    status: str
    progress: int
    current_step: Optional[str] = None
    attempt: int
    error_message: Optional[str] = None
    created_at: Optional[str] = None


class VerifyResponse(BaseModel):
    run_id: str
    ok: bool
    missing: list[str]


def _runtime(request: Request) -> RenderRuntime:
    return request.app.state.runtime


# ============================================================================
# Endpoint Handlers
# ============================================================================

@router.post("/plans", status_code=201, response_model=PlanCreated)
async def create_plan(plan: PlanSpec, request: Request):
    """Store an approved plan so it can be rendered."""
    plan_id = await _runtime(request).store.create_plan(plan)
    return PlanCreated(
        plan_id=str(plan_id),
        scene_count=len(plan.scenes),
        render_url=f"/api/plans/{plan_id}/render",
    )


@router.post("/plans/{plan_id}/render", status_code=202, response_model=RunSnapshot)
async def render_plan(plan_id: uuid.UUID, request: Request):
    """Queue a render of an approved plan. Returns 202 with the queued run."""
    try:
        return await _runtime(request).orchestrator.submit(plan_id)
    except PlanNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.get("/runs", response_model=list[RunListItem])
async def list_runs(request: Request, status: Optional[str] = None, limit: int = 50):
    runs = await _runtime(request).store.list_runs(status=status, limit=min(max(limit, 1), 500))
    return [
        RunListItem(
            id=str(r.id),
            plan_id=str(r.plan_id),
            status=r.status,
            progress=r.progress,
            current_step=r.current_step,
            attempt=r.attempt,
            error_message=r.error_message,
            created_at=r.created_at.isoformat() if r.created_at else None,
        )
        for r in runs
    ]


@router.get("/runs/{run_id}", response_model=RunSnapshot)
async def get_run(run_id: uuid.UUID, request: Request):
    try:
        return await _runtime(request).orchestrator.get_state(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")


@router.post("/runs/{run_id}/retry", status_code=202, response_model=RunSnapshot)
async def retry_run(run_id: uuid.UUID, request: Request, body: Optional[RetryRequest] = None):
    """Re-queue a failed, quality_failed or canceled run.

    Returns 409 if the run is not retryable and 422 for an unknown step name.
    """
    from_step = body.from_step if body else None
    try:
        return await _runtime(request).orchestrator.retry(run_id, from_step=from_step)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except RunStateError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))


@router.post("/runs/{run_id}/cancel", response_model=RunSnapshot)
async def cancel_run(run_id: uuid.UUID, request: Request):
    """Cancel a queued run immediately or a running run at its next step boundary.

    Returns 409 if the run is already terminal.
    """
    try:
        return await _runtime(request).orchestrator.cancel(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except RunStateError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get("/runs/{run_id}/stream")
async def stream_run(run_id: uuid.UUID, request: Request):
    """Server-Sent Events: a state snapshot, then live events and keep-alive pings.

    The stream ends after the run's terminal event. The subscription is
    always removed when the client disconnects.
    """
    broadcaster = _runtime(request).broadcaster
    try:
        subscription = await broadcaster.subscribe(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")

    async def event_source():
        try:
            async for event in subscription:
                yield event.to_sse()
                if event.type == "terminal":
                    break
                if event.type == "state" and event.status and is_terminal(event.status):
                    break
        finally:
            broadcaster.unsubscribe(subscription)

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/runs/{run_id}/verify", response_model=VerifyResponse)
async def verify_run(run_id: uuid.UUID, request: Request):
    """Re-check that every artifact of the run is present and non-empty."""
    try:
        result = await _runtime(request).orchestrator.verify(run_id)
    except (RunNotFoundError, PlanNotFoundError):
        raise HTTPException(status_code=404, detail="Run not found")
    return VerifyResponse(**result)
