from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Union

from .types import EVENT_CLASSES, BaseEvent, EventType

logger = logging.getLogger(__name__)

Handler = Callable[[Any], Union[Awaitable[None], None]]


@dataclass(slots=True)
class _Registration:
    handler: Handler
    once: bool


class EventBus:
    """In-process publish/subscribe for graph mutations and lifecycle milestones.

    ``emit`` never runs handlers inline: each invocation is handed to the
    running event loop (``call_soon``), or to a single worker thread when
    called outside a loop, and ``emit`` returns immediately. Handler failures,
    synchronous or asynchronous, are logged and dropped.

    Handlers for one event type start in registration order. ``once``
    registrations are removed before their invocation is scheduled, so a
    burst of emits delivers them at most once.
    """

    def __init__(self) -> None:
        self._registry: dict[EventType, list[_Registration]] = {}
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Future] = set()
        self._scheduled = 0
        self._executor: ThreadPoolExecutor | None = None

    def on(self, event_type: EventType | str, handler: Handler) -> None:
        self._register(EventType(event_type), handler, once=False)

    def once(self, event_type: EventType | str, handler: Handler) -> None:
        self._register(EventType(event_type), handler, once=True)

    def off(self, event_type: EventType | str, handler: Handler) -> None:
        """Remove every registration of ``handler`` for ``event_type``."""
        et = EventType(event_type)
        with self._lock:
            regs = self._registry.get(et)
            if regs:
                self._registry[et] = [r for r in regs if r.handler != handler]

    def listener_count(self, event_type: EventType | str) -> int:
        with self._lock:
            return len(self._registry.get(EventType(event_type), ()))

    def clear(self) -> None:
        with self._lock:
            self._registry.clear()

    def _register(self, event_type: EventType, handler: Handler, *, once: bool) -> None:
        if not callable(handler):
            raise TypeError(f"Event handler for {event_type.value} must be callable")
        with self._lock:
            self._registry.setdefault(event_type, []).append(_Registration(handler, once))

    def emit(self, event: BaseEvent) -> None:
        expected = EVENT_CLASSES[event.type]
        if not isinstance(event, expected):
            raise TypeError(
                f"{event.type.value} events must be {expected.__name__}, got {type(event).__name__}"
            )

        with self._lock:
            regs = self._registry.get(event.type)
            if not regs:
                return
            targets = [r.handler for r in regs]
            if any(r.once for r in regs):
                self._registry[event.type] = [r for r in regs if not r.once]
            self._scheduled += len(targets)

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None

        for handler in targets:
            if loop is not None:
                loop.call_soon(self._invoke, handler, event)
            else:
                self._worker().submit(self._invoke_blocking, handler, event)

    async def drain(self) -> None:
        """Wait until every scheduled delivery (including async handlers) has finished."""
        while True:
            await asyncio.sleep(0)
            with self._lock:
                scheduled = self._scheduled
            pending = [t for t in self._tasks if not t.done()]
            if not scheduled and not pending:
                return
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            else:
                # Deliveries still queued on the worker thread.
                await asyncio.sleep(0.001)

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    # --- delivery ---

    def _worker(self) -> ThreadPoolExecutor:
        # One worker keeps per-type ordering for emits made outside an event loop.
        with self._lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mnemograph-events")
            return self._executor

    def _done_scheduling(self) -> None:
        with self._lock:
            self._scheduled -= 1

    def _invoke(self, handler: Handler, event: BaseEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                task = asyncio.ensure_future(result)
                self._tasks.add(task)
                task.add_done_callback(lambda t, e=event: self._task_done(t, e))
        except Exception:
            logger.exception("Error in event handler for %s", event.type.value)
        finally:
            self._done_scheduling()

    def _invoke_blocking(self, handler: Handler, event: BaseEvent) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                asyncio.run(_await(result))
        except Exception:
            logger.exception("Error in event handler for %s", event.type.value)
        finally:
            self._done_scheduling()

    def _task_done(self, task: asyncio.Future, event: BaseEvent) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Error in event handler for %s", event.type.value, exc_info=exc)


async def _await(awaitable: Awaitable[None]) -> None:
    await awaitable
