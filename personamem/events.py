"""In-process event hook for resume edits.

When an AI reply edits a resume, the conversation store publishes a
ResumeEditEvent. The engine does not interpret resumes; subscribers
(a websocket bridge, an audit log) decide what to do with it.
"""

import asyncio
import inspect
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import structlog
from pydantic import BaseModel, Field

logger = structlog.get_logger("personamem.conversation")


class ResumeEditEvent(BaseModel):
    """An AI message that changed a resume."""

    conversation_id: str
    resume_id: str
    message: str
    changes: List[Dict[str, Any]] = Field(default_factory=list)
    new_analysis: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=datetime.now)


Subscriber = Callable[[ResumeEditEvent], Union[None, Awaitable[None]]]


class EventBus:
    """Fan-out of ResumeEditEvents to registered callbacks.

    Subscriber errors are logged and never reach the publisher.
    """

    def __init__(self):
        self._subscribers: List[Subscriber] = []

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """Register ``callback``; returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    async def publish(self, event: ResumeEditEvent) -> int:
        """Deliver ``event`` to every subscriber; returns deliveries that succeeded."""
        delivered = 0
        for callback in list(self._subscribers):
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
                delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "event_subscriber_failed",
                    event_type="resume_edit",
                    conversation_id=event.conversation_id,
                    error=str(e),
                )
        logger.debug("resume_edit_published", conversation_id=event.conversation_id,
                     resume_id=event.resume_id, delivered=delivered)
        return delivered


# Global bus
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get or create the global event bus."""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
