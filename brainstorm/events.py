"""Typed event channel injected into the engine and its collaborators."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    CONVERSATION_CREATED = "conversation:created"
    CONVERSATION_UPDATED = "conversation:updated"
    CONVERSATION_STARTED = "conversation:started"
    CONVERSATION_PAUSED = "conversation:paused"
    CONVERSATION_RESUMED = "conversation:resumed"
    CONVERSATION_STOPPED = "conversation:stopped"
    CONVERSATION_FINISHING = "conversation:finishing"
    CONVERSATION_RESET = "conversation:reset"
    CONVERSATION_LOCK_DENIED = "conversation:lock-denied"
    CONVERSATION_ROUNDS_DECIDED = "conversation:rounds-decided"
    TURN_STARTED = "turn:started"
    TURN_COMPLETED = "turn:completed"
    TURN_FAILED = "turn:failed"
    TURN_QUEUE_UPDATED = "turn:queue-updated"
    AGENT_THINKING = "agent:thinking"
    AGENT_IDLE = "agent:idle"
    STREAM_CHUNK = "stream:chunk"
    STREAM_COMPLETE = "stream:complete"
    MESSAGE_CREATED = "message:created"
    USER_INTERJECTION = "user:interjection"
    ROUND_COMPLETE = "round:complete"
    DRAFT_UPDATED = "draft:updated"


@dataclass(frozen=True)
class Event:
    type: EventType
    conversation_id: str
    agent_id: str | None = None
    content: str | None = None
    round: int | None = None
    payload: Any = None            # Message, Turn, ResultDraft, ... depending on type


Listener = Callable[[Event], None]


class EventChannel:
    """Synchronous, in-order fan-out to subscribers.

    A listener that raises is logged and skipped; delivery to the remaining
    listeners continues.
    """

    def __init__(self) -> None:
        self._listeners: list[tuple[EventType | None, Listener]] = []

    def subscribe(self, listener: Listener, event_type: EventType | None = None) -> Callable[[], None]:
        """Subscribe to one event type, or to every event when ``event_type`` is None."""
        entry = (event_type, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def emit(self, event: Event) -> None:
        for event_type, listener in list(self._listeners):
            if event_type is not None and event_type is not event.type:
                continue
            try:
                listener(event)
            except Exception:
                logger.exception("Listener failed for %s", event.type.value)

    def listener_count(self, event_type: EventType | None = None) -> int:
        if event_type is None:
            return len(self._listeners)
        return sum(1 for t, _ in self._listeners if t is event_type)

    def clear(self) -> None:
        self._listeners.clear()
