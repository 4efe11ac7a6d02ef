"""Event bus for pipeline activity, decoupling the orchestrator from the transport.

The orchestrator, the approval gate and the background monitors publish
structured events through an :class:`EventBus`.  The web server subscribes
to the same bus and forwards every event to the WebSocket room of the
session it belongs to.

Event categories (the names are the outbound channel event names):
  stateUpdate                — a stage finished and its result was recorded
  processingStep             — a stage started, is waiting for review, or finished
  stepApproved               — a human approved a stage (optionally with edits)
  orchestratorUpdate         — progress note or health-monitor alert
  repositoryChangesDetected  — the repository poll found new commits
  workflowTerminated         — a human rejected a stage; the run is over
  feedbackProcessed          — user feedback went through the learning stages
  error                      — the run failed unexpectedly
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable

from lodestar.core.logging import get_logger

logger = get_logger("core.events")


class EventCategory(str, Enum):
    STATE_UPDATE = "stateUpdate"
    PROCESSING_STEP = "processingStep"
    STEP_APPROVED = "stepApproved"
    ORCHESTRATOR_UPDATE = "orchestratorUpdate"
    REPOSITORY_CHANGES_DETECTED = "repositoryChangesDetected"
    WORKFLOW_TERMINATED = "workflowTerminated"
    FEEDBACK_PROCESSED = "feedbackProcessed"
    ERROR = "error"


@dataclass
class WorkflowEvent:
    """A single event emitted during a pipeline run."""
    category: EventCategory
    session_id: str | None          # None for process-wide notices
    data: dict = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict:
        return {
            "event": self.category.value,
            "sessionId": self.session_id,
            "data": self.data,
            "ts": self.timestamp,
        }


SyncListener = Callable[[WorkflowEvent], Any]
AsyncListener = Callable[[WorkflowEvent], Awaitable[Any]]


class EventBus:
    """Fan-out of :class:`WorkflowEvent` objects to sync and async listeners.

    One bus is created per process and passed explicitly to whoever needs
    it.  ``emit`` is synchronous and safe to call from any thread: async
    listeners are scheduled onto the loop registered with
    :meth:`set_event_loop` (or the running loop when called from async code).
    """

    def __init__(self, history_size: int = 1000) -> None:
        self._listeners: list[SyncListener] = []
        self._async_listeners: list[AsyncListener] = []
        self._history: deque[WorkflowEvent] = deque(maxlen=history_size)
        self._loop: asyncio.AbstractEventLoop | None = None

    def set_event_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Register the main asyncio event loop for cross-thread delivery."""
        self._loop = loop

    # ── Publishing ────────────────────────────────────────────────────

    def emit(self, category: EventCategory, session_id: str | None, **data: Any) -> WorkflowEvent:
        event = WorkflowEvent(category=category, session_id=session_id, data=data)
        self.publish(event)
        return event

    def publish(self, event: WorkflowEvent) -> None:
        self._history.append(event)
        logger.debug("EVENT | %s | %s", event.category.value, event.session_id)

        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.warning("Sync listener error: %s", e)

        if not self._async_listeners:
            return

        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None

        if running is not None and (self._loop is None or running is self._loop):
            for listener in self._async_listeners:
                running.create_task(listener(event))
        elif self._loop is not None and not self._loop.is_closed():
            for listener in self._async_listeners:
                try:
                    self._loop.call_soon_threadsafe(asyncio.ensure_future, listener(event))
                except RuntimeError:
                    logger.debug("Event loop closed, dropping %s", event.category.value)
        else:
            logger.debug("No event loop available for async listeners, dropping %s", event.category.value)

    # ── Subscription ──────────────────────────────────────────────────

    def subscribe_sync(self, listener: SyncListener) -> None:
        self._listeners.append(listener)

    def subscribe_async(self, listener: AsyncListener) -> None:
        """Register an async listener (e.g. WebSocket broadcast)."""
        self._async_listeners.append(listener)

    def unsubscribe(self, listener: Callable) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)
        if listener in self._async_listeners:
            self._async_listeners.remove(listener)

    def clear_listeners(self) -> None:
        """Remove all listeners (useful for testing)."""
        self._listeners.clear()
        self._async_listeners.clear()

    # ── History ───────────────────────────────────────────────────────

    def history(self, limit: int = 200, session_id: str | None = None) -> list[dict]:
        """Return recent events as dicts, optionally only those of one session."""
        items = list(self._history)
        if session_id is not None:
            items = [e for e in items if e.session_id == session_id]
        return [e.to_dict() for e in items[-limit:]]

    def events(self, category: EventCategory | None = None) -> list[WorkflowEvent]:
        items = list(self._history)
        if category is None:
            return items
        return [e for e in items if e.category == category]
