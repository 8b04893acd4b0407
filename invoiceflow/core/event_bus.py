"""
InvoiceFlow Event Bus

Committed workflow transitions are announced here. Subscribers (notifications,
dashboards) react after the fact; a failing subscriber never affects the
transition that triggered it.
"""

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional, Union

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 1000


class EventType(str, Enum):
    INVOICE_SUBMITTED = "invoice.submitted"
    INVOICE_TRANSITIONED = "invoice.transitioned"


@dataclass(frozen=True)
class WorkflowEvent:
    """A committed change to one invoice, as seen by subscribers."""
    type: EventType
    invoice_id: str
    data: Dict[str, Any]
    actor_id: Optional[str] = None
    event_id: str = field(default_factory=lambda: f"EVT-{uuid.uuid4().hex}")
    occurred_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())


Handler = Callable[[WorkflowEvent], Union[None, Awaitable[None]]]


class EventBus:
    """
    In-process pub/sub for workflow side effects.

    Handlers may be plain functions (run in a worker thread) or coroutines.
    """

    _instance: Optional["EventBus"] = None

    def __init__(self, history_limit: int = HISTORY_LIMIT):
        self._handlers: Dict[EventType, List[Handler]] = {}
        self._history: Deque[WorkflowEvent] = deque(maxlen=history_limit)

    @classmethod
    def get_instance(cls) -> "EventBus":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        cls._instance = None

    def subscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_type: EventType, handler: Handler) -> None:
        handlers = self._handlers.get(event_type)
        if handlers and handler in handlers:
            handlers.remove(handler)

    async def publish(self, event: WorkflowEvent) -> None:
        """Deliver `event` to every subscriber. Handler errors are logged, not raised."""
        self._history.append(event)
        handlers = list(self._handlers.get(event.type, ()))
        logger.info("Event %s for %s (%d handlers)", event.type.value, event.invoice_id, len(handlers))
        if handlers:
            await asyncio.gather(*(self._dispatch(handler, event) for handler in handlers))

    async def _dispatch(self, handler: Handler, event: WorkflowEvent) -> None:
        name = getattr(handler, "__qualname__", repr(handler))
        try:
            if asyncio.iscoroutinefunction(handler):
                await handler(event)
            else:
                await asyncio.to_thread(handler, event)
        except Exception as exc:
            logger.error("Subscriber %s failed on %s for %s: %s", name, event.type.value, event.invoice_id, exc)

    def get_history(
        self,
        invoice_id: Optional[str] = None,
        event_type: Optional[EventType] = None,
        limit: int = 100,
    ) -> List[WorkflowEvent]:
        events = [
            e for e in self._history
            if (invoice_id is None or e.invoice_id == invoice_id)
            and (event_type is None or e.type == event_type)
        ]
        return events[-limit:]


def get_event_bus() -> EventBus:
    return EventBus.get_instance()
