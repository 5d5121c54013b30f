"""Named-event fan-out for the live client and orchestrator.

Handlers may be plain callables or coroutine functions. Plain handlers run
inline in registration order; awaitables they return are scheduled as tasks
so a slow subscriber never stalls the caller that emitted the event.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable, Iterable
from typing import Any

_LOGGER = logging.getLogger(__name__)

Handler = Callable[..., Any]


class EventEmitter:
    """Observer registry keyed by event name.

    Usage:
        emitter = EventEmitter(("open", "close"), label="live")
        emitter.on("close", on_close).on("open", on_open)
        emitter.emit("close", "bye")
        emitter.off("close", on_close)
    """

    def __init__(self, events: Iterable[str], *, label: str = "events") -> None:
        self._label = label
        self._handlers: dict[str, list[Handler]] = {name: [] for name in events}
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def events(self) -> tuple[str, ...]:
        """Names this emitter accepts."""
        return tuple(self._handlers)

    def on(self, event: str, handler: Handler) -> EventEmitter:
        """Subscribe ``handler`` to ``event``.

        Subscribing the same handler twice is a no-op.
        """
        handlers = self._handlers_for(event)
        if handler not in handlers:
            handlers.append(handler)
        return self

    def off(self, event: str, handler: Handler) -> EventEmitter:
        """Unsubscribe ``handler`` from ``event`` if it is subscribed."""
        handlers = self._handlers_for(event)
        if handler in handlers:
            handlers.remove(handler)
        return self

    def listener_count(self, event: str) -> int:
        return len(self._handlers_for(event))

    def emit(self, event: str, *args: Any) -> None:
        """Call every handler subscribed to ``event``.

        Handler exceptions are logged and do not reach the emitter.
        """
        for handler in list(self._handlers_for(event)):
            try:
                result = handler(*args)
            except Exception as err:
                _LOGGER.exception(
                    "[%s] Handler error on %s: %s", self._label, event, err
                )
                continue

            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(self._handler_done)

    async def wait_idle(self) -> None:
        """Wait until every scheduled handler task has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _handlers_for(self, event: str) -> list[Handler]:
        try:
            return self._handlers[event]
        except KeyError:
            raise ValueError(f"Unknown event: {event}") from None

    def _handler_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            _LOGGER.error(
                "[%s] Async handler failed: %s", self._label, err, exc_info=err
            )
