"""Periodic and foreground-triggered scheduling of expiration passes.

The timer task and the lifecycle subscription are acquired together in one
AsyncExitStack and released together by stop(), including when start-up
fails half way. Passes run in their own task: stopping the scheduler cancels
future ticks but lets an in-flight pass finish.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from contextlib import AsyncExitStack, suppress
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import structlog

from msl.lifecycle import AppState, LifecycleSignal

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SchedulerStatus:
    running: bool
    interval_seconds: float
    in_flight: bool
    passes_completed: int
    passes_dropped: int
    last_pass_started_at: datetime | None
    last_error: str | None


class ExpirationScheduler:
    """Runs ``run_pass`` on a fixed period and on app-foreground events.

    At most one pass is in flight per process; a pass requested while one is
    running is dropped, not queued.
    """

    def __init__(
        self,
        run_pass: Callable[[], Awaitable[Any]],
        *,
        interval_seconds: float = 30.0,
        initial_delay_seconds: float = 10.0,
        foreground_debounce_seconds: float = 5.0,
        lifecycle: LifecycleSignal | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._run = run_pass
        self.interval_seconds = interval_seconds
        self.initial_delay_seconds = initial_delay_seconds
        self.foreground_debounce_seconds = foreground_debounce_seconds
        self._lifecycle = lifecycle
        self._clock = clock

        self._resources: AsyncExitStack | None = None
        self._in_flight: asyncio.Task[None] | None = None
        self._last_foreground_check: float | None = None

        self.passes_completed = 0
        self.passes_dropped = 0
        self.last_pass_started_at: datetime | None = None
        self.last_error: str | None = None

    @property
    def running(self) -> bool:
        return self._resources is not None

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    async def start(self) -> None:
        """Start ticking. No-op if already running."""
        if self.running:
            logger.debug("expiration_scheduler_already_running")
            return

        stack = AsyncExitStack()
        try:
            timer = asyncio.create_task(self._tick_loop(), name="expiration-scheduler")
            stack.push_async_callback(self._cancel_timer, timer)
            if self._lifecycle is not None:
                subscription = self._lifecycle.subscribe(self._on_app_state)
                stack.callback(subscription.unsubscribe)
        except BaseException:
            await stack.aclose()
            raise

        self._resources = stack
        logger.info(
            "expiration_scheduler_started",
            interval_seconds=self.interval_seconds,
            initial_delay_seconds=self.initial_delay_seconds,
        )

    async def stop(self) -> None:
        """Cancel future ticks and release the lifecycle subscription. Safe when stopped."""
        if self._resources is None:
            return
        resources, self._resources = self._resources, None
        await resources.aclose()
        logger.info("expiration_scheduler_stopped", in_flight=self.in_flight)

    async def wait_idle(self) -> None:
        """Wait for the in-flight pass, if any, to finish."""
        if self._in_flight is not None:
            await self._in_flight

    async def __aenter__(self) -> ExpirationScheduler:
        await self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()

    def status(self) -> SchedulerStatus:
        return SchedulerStatus(
            running=self.running,
            interval_seconds=self.interval_seconds,
            in_flight=self.in_flight,
            passes_completed=self.passes_completed,
            passes_dropped=self.passes_dropped,
            last_pass_started_at=self.last_pass_started_at,
            last_error=self.last_error,
        )

    def request_pass(self, trigger: str = "manual") -> bool:
        """Start a pass now unless one is already in flight. Returns whether it started."""
        if self.in_flight:
            self.passes_dropped += 1
            logger.info("expiration_pass_dropped", trigger=trigger)
            return False
        self._in_flight = asyncio.create_task(self._run_pass(trigger), name=f"expiration-pass-{trigger}")
        return True

    async def _run_pass(self, trigger: str) -> None:
        self.last_pass_started_at = datetime.now(timezone.utc)
        logger.debug("expiration_pass_started", trigger=trigger)
        try:
            await self._run()
        except Exception as exc:
            self.last_error = repr(exc)
            logger.exception("expiration_pass_failed", trigger=trigger)
        else:
            self.last_error = None
        finally:
            self.passes_completed += 1

    async def _tick_loop(self) -> None:
        await asyncio.sleep(self.initial_delay_seconds)
        trigger = "initial"
        while True:
            self.request_pass(trigger)
            trigger = "interval"
            await asyncio.sleep(self.interval_seconds)

    @staticmethod
    async def _cancel_timer(timer: asyncio.Task[None]) -> None:
        timer.cancel()
        with suppress(asyncio.CancelledError):
            await timer

    def _on_app_state(self, state: AppState) -> None:
        if state is not AppState.ACTIVE or not self.running:
            return
        now = self._clock()
        if (
            self._last_foreground_check is not None
            and now - self._last_foreground_check <= self.foreground_debounce_seconds
        ):
            logger.debug("foreground_check_debounced")
            return
        self._last_foreground_check = now
        self.request_pass("foreground")
