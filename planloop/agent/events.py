"""Lifecycle events delivered to an external observer without blocking the loop."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Protocol

logger = logging.getLogger(__name__)

EVENT_KINDS = frozenset({
    "plan_created",
    "step_started",
    "step_completed",
    "replanning",
    "completed",
    "failed",
})

_CLOSE = object()


class Callback(Protocol):
    def emit(self, event_kind: str, payload: dict[str, Any]) -> Awaitable[None] | None: ...


class FunctionCallback:
    """Adapt a plain ``fn(kind, payload)`` into a Callback."""

    def __init__(self, fn: Callable[[str, dict[str, Any]], Awaitable[None] | None]) -> None:
        self._fn = fn

    def emit(self, event_kind: str, payload: dict[str, Any]) -> Awaitable[None] | None:
        return self._fn(event_kind, payload)


class EventEmitter:
    """Queue events in emission order and hand them to the callback from a pump task.

    ``emit`` never awaits, so a slow observer cannot hold up the loop. Events
    reach the callback in the order they were emitted.
    """

    def __init__(self, callback: Callback | None, *, drain_timeout: float = 5.0) -> None:
        self._callback = callback
        self._drain_timeout = drain_timeout
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._pump: asyncio.Task | None = None
        self._closed = False

    def start(self) -> None:
        if self._callback is not None and self._pump is None:
            self._pump = asyncio.create_task(self._run())

    def emit(self, event_kind: str, payload: dict[str, Any]) -> None:
        if event_kind not in EVENT_KINDS:
            raise ValueError(f"unknown event kind: {event_kind}")
        if self._callback is None or self._closed:
            return
        self._queue.put_nowait((event_kind, payload))

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pump is None:
            return
        self._queue.put_nowait(_CLOSE)
        try:
            await asyncio.wait_for(asyncio.shield(self._pump), timeout=self._drain_timeout)
        except asyncio.TimeoutError:
            logger.warning("event callback did not drain within %.1fs", self._drain_timeout)
            self._pump.cancel()
            await asyncio.gather(self._pump, return_exceptions=True)

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            if item is _CLOSE:
                return
            event_kind, payload = item
            try:
                result = self._callback.emit(event_kind, payload)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                # observer failures never affect the run
                logger.exception("event callback failed for %s", event_kind)
