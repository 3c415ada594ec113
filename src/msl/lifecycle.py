"""App foreground/background lifecycle signal.

Mobile clients report app-state changes (``POST /api/v1/lifecycle``) or
publish them on the Redis channel ``lifecycle:app_state``; listeners such as
the expiration scheduler subscribe to the in-process signal.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable
from enum import Enum

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()

LIFECYCLE_CHANNEL = "lifecycle:app_state"


class AppState(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    BACKGROUND = "background"


Listener = Callable[[AppState], None]


class Subscription:
    """Handle returned by LifecycleSignal.subscribe(); release with unsubscribe()."""

    def __init__(self, signal: LifecycleSignal, listener: Listener) -> None:
        self._signal = signal
        self._listener = listener
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._signal._remove(self._listener)
            self.active = False


class LifecycleSignal:
    """In-process fan-out of app-state changes to listeners."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []
        self.current: AppState | None = None

    def subscribe(self, listener: Listener) -> Subscription:
        self._listeners.append(listener)
        return Subscription(self, listener)

    def _remove(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def emit(self, state: AppState | str) -> None:
        """Deliver a state change to every listener. A failing listener is logged and skipped."""
        state = AppState(state)
        self.current = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("lifecycle_listener_failed", state=state.value)


class LifecycleBridge:
    """Subscribes to Redis pub/sub and re-emits app-state messages locally."""

    def __init__(self, redis_client: aioredis.Redis, signal: LifecycleSignal) -> None:
        self.redis = redis_client
        self.signal = signal
        self._running = False

    def handle_message(self, data: str | bytes) -> AppState | None:
        """Parse one ``{"state": "..."}`` message and emit it."""
        try:
            if isinstance(data, bytes):
                data = data.decode()
            state = AppState(json.loads(data)["state"])
        except (json.JSONDecodeError, UnicodeDecodeError, KeyError, TypeError, ValueError):
            logger.warning("lifecycle_invalid_message", data=repr(data))
            return None
        self.signal.emit(state)
        return state

    async def start(self) -> None:
        """Listen on the lifecycle channel until stop() is called."""
        self._running = True
        pubsub = self.redis.pubsub()
        await pubsub.subscribe(LIFECYCLE_CHANNEL)
        logger.info("lifecycle_bridge_started", channel=LIFECYCLE_CHANNEL)

        try:
            while self._running:
                message = await pubsub.get_message(
                    ignore_subscribe_messages=True,
                    timeout=1.0,
                )
                if message is None:
                    continue
                self.handle_message(message.get("data", b""))
        except asyncio.CancelledError:
            pass
        finally:
            await pubsub.unsubscribe()
            await pubsub.aclose()
            logger.info("lifecycle_bridge_stopped")

    async def stop(self) -> None:
        """Signal the bridge to stop."""
        self._running = False
