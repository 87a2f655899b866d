"""
Event bus for inter-component communication.

Server status changes and tool-set changes are published here so that
status consumers (CLI, UI refresh loops) do not have to poll.
"""

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

from loguru import logger


SERVER_STATE_CHANGED = "server.state_changed"
TOOLS_CHANGED = "tools.changed"
SETTINGS_CHANGED = "settings.changed"


@dataclass
class Event:
    """Represents an event in the system."""

    name: str
    data: Dict[str, Any]
    timestamp: datetime = field(default_factory=datetime.now)
    id: str = field(default_factory=lambda: str(uuid4()))
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
            "source": self.source,
        }


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """
    Asynchronous event bus.

    Handlers subscribe by name or with '*' for every event; higher priority
    handlers run first. A bounded history is kept for inspection.
    """

    def __init__(self, max_history: int = 1000):
        self._handlers: Dict[str, List[tuple[int, EventHandler]]] = defaultdict(list)
        self._wildcard_handlers: List[tuple[int, EventHandler]] = []
        self._history: List[Event] = []
        self._max_history = max_history
        self._pending: Set[asyncio.Task] = set()

    def subscribe(self, event_name: str, handler: EventHandler, priority: int = 0) -> None:
        """
        Subscribe to an event.

        Args:
            event_name: Event name or '*' for all events
            handler: Async function to handle the event
            priority: Higher priority handlers run first
        """
        if event_name == "*":
            self._wildcard_handlers.append((priority, handler))
            self._wildcard_handlers.sort(key=lambda x: -x[0])
        else:
            self._handlers[event_name].append((priority, handler))
            self._handlers[event_name].sort(key=lambda x: -x[0])
        logger.debug(f"Handler subscribed to '{event_name}'")

    def unsubscribe(self, event_name: str, handler: EventHandler) -> None:
        if event_name == "*":
            self._wildcard_handlers = [(p, h) for p, h in self._wildcard_handlers if h != handler]
        else:
            self._handlers[event_name] = [(p, h) for p, h in self._handlers[event_name] if h != handler]

    def _record(self, event: Event) -> List[EventHandler]:
        self._history.append(event)
        if len(self._history) > self._max_history:
            self._history = self._history[-self._max_history:]
        handlers = [h for _, h in self._handlers.get(event.name, [])]
        handlers.extend(h for _, h in self._wildcard_handlers)
        return handlers

    @staticmethod
    async def _run_handler(handler: EventHandler, event: Event) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error(f"Event handler error for '{event.name}': {e}")

    async def emit(
        self,
        event_name: str,
        data: Dict[str, Any],
        source: Optional[str] = None,
        wait: bool = False,
    ) -> Event:
        """
        Emit an event to all subscribers.

        Args:
            event_name: Name of the event
            data: Event data payload
            source: Source component name
            wait: If True, wait for all handlers to complete

        Returns:
            The emitted event
        """
        event = Event(name=event_name, data=data, source=source)
        handlers = self._record(event)
        if not handlers:
            return event

        if wait:
            await asyncio.gather(*[self._run_handler(h, event) for h in handlers])
        else:
            self._schedule(handlers, event)
        return event

    def publish(self, event_name: str, data: Dict[str, Any], source: Optional[str] = None) -> Event:
        """Synchronous emit for callers that are not coroutines; handlers run as tasks."""
        event = Event(name=event_name, data=data, source=source)
        handlers = self._record(event)
        if handlers:
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                logger.debug(f"No running loop, '{event_name}' recorded without dispatch")
                return event
            self._schedule(handlers, event)
        return event

    def _schedule(self, handlers: List[EventHandler], event: Event) -> None:
        for handler in handlers:
            task = asyncio.create_task(self._run_handler(handler, event))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

    async def drain(self) -> None:
        """Wait for handlers scheduled by non-waiting emits."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    def get_history(self, event_name: Optional[str] = None, limit: int = 100) -> List[Event]:
        events = self._history
        if event_name:
            events = [e for e in events if e.name == event_name]
        return events[-limit:]

    def clear_history(self) -> None:
        self._history.clear()
