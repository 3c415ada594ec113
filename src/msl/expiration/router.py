"""Expiration engine API for scheduler status, manual checks and app lifecycle."""

from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, status

from msl.dependencies import get_lifecycle, get_scheduler
from msl.expiration.scheduler import ExpirationScheduler
from msl.expiration.schemas import (
    CheckRequestResponse,
    LifecycleEventRequest,
    LifecycleEventResponse,
    SchedulerStatusResponse,
)
from msl.lifecycle import LifecycleSignal

router = APIRouter(prefix="/api/v1", tags=["Expiration"])


@router.get("/expiration/status", response_model=SchedulerStatusResponse)
async def expiration_status(
    scheduler: ExpirationScheduler = Depends(get_scheduler),  # noqa: B008
) -> SchedulerStatusResponse:
    """Whether the scheduler runs, its interval, and whether a pass is in flight."""
    return SchedulerStatusResponse(**asdict(scheduler.status()))


@router.post(
    "/expiration/check",
    response_model=CheckRequestResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def request_expiration_check(
    scheduler: ExpirationScheduler = Depends(get_scheduler),  # noqa: B008
) -> CheckRequestResponse:
    """Request an immediate pass. Dropped (accepted=false) if one is already running."""
    accepted = scheduler.request_pass("manual")
    return CheckRequestResponse(accepted=accepted, in_flight=scheduler.in_flight)


@router.post("/lifecycle", response_model=LifecycleEventResponse)
async def report_lifecycle(
    body: LifecycleEventRequest,
    signal: LifecycleSignal = Depends(get_lifecycle),  # noqa: B008
) -> LifecycleEventResponse:
    """Forward a client app-state change to the lifecycle signal."""
    signal.emit(body.state)
    return LifecycleEventResponse(state=body.state, listeners=signal.listener_count)
