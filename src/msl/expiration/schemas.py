"""Pydantic schemas for the expiration API."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel

from msl.lifecycle import AppState


class SchedulerStatusResponse(BaseModel):
    running: bool
    interval_seconds: float
    in_flight: bool
    passes_completed: int
    passes_dropped: int
    last_pass_started_at: datetime | None = None
    last_error: str | None = None


class CheckRequestResponse(BaseModel):
    accepted: bool
    in_flight: bool


class LifecycleEventRequest(BaseModel):
    state: AppState


class LifecycleEventResponse(BaseModel):
    state: AppState
    listeners: int
