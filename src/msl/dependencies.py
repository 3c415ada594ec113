"""Shared FastAPI dependencies."""

from fastapi import HTTPException, Request

from msl.expiration.scheduler import ExpirationScheduler
from msl.lifecycle import LifecycleSignal


def get_scheduler(request: Request) -> ExpirationScheduler:
    """The expiration scheduler owned by the application lifespan."""
    scheduler: ExpirationScheduler | None = getattr(request.app.state, "scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Expiration scheduler not available")
    return scheduler


def get_lifecycle(request: Request) -> LifecycleSignal:
    signal: LifecycleSignal | None = getattr(request.app.state, "lifecycle", None)
    if signal is None:
        raise HTTPException(status_code=503, detail="Lifecycle signal not available")
    return signal
