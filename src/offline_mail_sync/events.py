"""Minimal in-process event emitter.

Handlers may be plain callables or coroutine functions. Coroutine handlers are
scheduled on the running event loop; a failing handler is logged and never
breaks the emitter or the other handlers.
"""

from __future__ import annotations

import asyncio
import inspect
from collections import defaultdict
from typing import Any, Callable

import structlog

logger = structlog.get_logger()

Handler = Callable[..., Any]


class EventEmitter:
    """Register handlers by event name and notify them on ``emit``."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)
        self._tasks: set[asyncio.Task[Any]] = set()

    def on(self, event: str, handler: Handler) -> None:
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event)
        if handlers and handler in handlers:
            handlers.remove(handler)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, ()))

    def emit(self, event: str, *args: Any) -> None:
        """Call every handler registered for ``event`` with ``args``."""

        for handler in list(self._handlers.get(event, ())):
            try:
                result = handler(*args)
            except Exception as exc:  # noqa: BLE001
                logger.exception("event_handler_failed", event_name=event, error=str(exc))
                continue

            if inspect.isawaitable(result):
                self._schedule(event, result)

    async def drain(self) -> None:
        """Wait for coroutine handlers that are still running."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _schedule(self, event: str, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("event_handler_skipped_no_loop", event_name=event)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        task = loop.create_task(self._run(event, awaitable))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, event: str, awaitable: Any) -> None:
        try:
            await awaitable
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.exception("event_handler_failed", event_name=event, error=str(exc))
