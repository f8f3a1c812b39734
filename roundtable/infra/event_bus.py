"""
Event Bus — the live notification channel.

Fire-and-forget event emission with subscriber error isolation.  The engine
emits typed conversation events (``turn_start``, ``turn_end``,
``tool_call``, ``tool_result``, ``approval_required``, ``error``,
``conversation_paused``, ``conversation_resting``,
``conversation_complete``); the web interface subscribes and forwards them
to clients.  A slow or disconnected subscriber never affects the emitter.

Subscribing to ``"*"`` receives every event type.
"""

import asyncio
import logging
import threading
import time as _time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

WILDCARD = "*"

TERMINAL_EVENTS = ("conversation_paused", "conversation_resting", "conversation_complete")


@dataclass
class Event:
    event_type: str
    data: dict[str, Any]
    timestamp: float = field(default_factory=_time.time)

    def to_payload(self) -> dict[str, Any]:
        return {"type": self.event_type, "data": self.data}


class EventBus:
    """Async event bus with a bounded history."""

    def __init__(self, history_size: int = 1000) -> None:
        # event_type -> {sub_id: callback}
        self._subs: dict[str, dict[str, Callable]] = {}
        self._history: deque[Event] = deque(maxlen=history_size)
        self._lock = threading.Lock()
        self._tasks: set[asyncio.Task] = set()
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None

    def emit(self, event_type: str, **data: Any) -> None:
        """Fire-and-forget event emission. Never raises."""
        event = Event(event_type=event_type, data=data)
        self._history.append(event)
        with self._lock:
            subs = dict(self._subs.get(event_type, {}))
            subs.update(self._subs.get(WILDCARD, {}))
        for sub_id, callback in subs.items():
            self._fire(sub_id, callback, event)

    def _fire(self, sub_id: str, callback: Callable, event: Event) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Called from a worker thread; hand off to the captured loop.
            loop = self._loop
            if loop is not None and loop.is_running():
                loop.call_soon_threadsafe(self._schedule, loop, sub_id, callback, event)
            else:
                logger.warning("EventBus: event dropped for %s, no usable event loop", sub_id)
            return
        self._schedule(loop, sub_id, callback, event)

    def _schedule(self, loop: asyncio.AbstractEventLoop, sub_id: str,
                  callback: Callable, event: Event) -> None:
        task = loop.create_task(self._safe_call(sub_id, callback, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _safe_call(self, sub_id: str, callback: Callable, event: Event) -> None:
        try:
            result = callback(event)
            if asyncio.iscoroutine(result) or asyncio.isfuture(result):
                await result
        except Exception:
            logger.exception("EventBus: subscriber %s raised on %s", sub_id, event.event_type)

    def subscribe(self, event_type: str, callback: Callable) -> str:
        """Subscribe to an event type (or ``"*"``). Returns subscription ID."""
        sub_id = f"sub_{uuid.uuid4().hex[:8]}"
        with self._lock:
            self._subs.setdefault(event_type, {})[sub_id] = callback
        logger.debug("EventBus: %s subscribed to %s", sub_id, event_type)
        return sub_id

    def unsubscribe(self, sub_id: str) -> None:
        """Remove a subscription by ID."""
        with self._lock:
            for event_type, subs in self._subs.items():
                if sub_id in subs:
                    del subs[sub_id]
                    logger.debug("EventBus: %s unsubscribed from %s", sub_id, event_type)
                    return

    async def drain(self) -> None:
        """Wait until every scheduled subscriber call has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def history(self, event_type: Optional[str] = None,
                session_id: Optional[str] = None,
                limit: int = 100) -> list[Event]:
        """Query event history (newest first) with optional filters."""
        results = []
        for event in reversed(self._history):
            if event_type and event.event_type != event_type:
                continue
            if session_id and event.data.get("session_id") != session_id:
                continue
            results.append(event)
            if len(results) >= limit:
                break
        return results
