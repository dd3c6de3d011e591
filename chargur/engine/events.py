"""
Engine Events - typed lifecycle events and their subscribers.

Replaces a fixed set of UI callbacks with a bus any number of listeners can
subscribe to:

    STATE           EngineSnapshot after every state transition
    AUTO_FILL       {stage_id: fields} extracted from a complete event
    STAGE_COMPLETE  stage id whose step the assistant considers done
    NAVIGATE        stage id the assistant wants the user to move to
"""

import asyncio
import inspect
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

Listener = Callable[[Any], Any]


class EngineEventType(Enum):
    """Events emitted by the conversation engine."""

    STATE = "state"
    AUTO_FILL = "autoFill"
    STAGE_COMPLETE = "stageComplete"
    NAVIGATE = "navigate"


class EventBus:
    """
    Fan-out of engine events to subscribed listeners.

    Listeners may be plain functions or coroutine functions. A coroutine
    listener is scheduled as a task on the running loop and not awaited.
    Exceptions raised by a listener are logged and never reach the engine.
    """

    def __init__(self) -> None:
        self._listeners: dict[EngineEventType, list[Listener]] = {t: [] for t in EngineEventType}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: EngineEventType, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            Callable that removes the listener again
        """
        self._listeners[event_type].append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners[event_type]:
                self._listeners[event_type].remove(listener)

        return unsubscribe

    def listener_count(self, event_type: EngineEventType) -> int:
        return len(self._listeners[event_type])

    def emit(self, event_type: EngineEventType, payload: Any = None) -> None:
        """Deliver payload to every listener of event_type."""
        for listener in list(self._listeners[event_type]):
            try:
                result = listener(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception as e:
                logger.error(f"{event_type.value} listener {listener!r} raised: {e}", exc_info=True)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Async listener raised: {exc}", exc_info=exc)

    async def drain(self) -> None:
        """Wait for async listeners that are still running."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def clear(self) -> None:
        for listeners in self._listeners.values():
            listeners.clear()
