"""User interjections: persisted, mirrored into the transcript, queued by delivery mode."""

import logging
from collections import deque
from enum import Enum

from brainstorm.events import Event, EventChannel, EventType
from brainstorm.models import Interjection, Message, MessageType
from brainstorm.storage import Storage

logger = logging.getLogger(__name__)

MAX_INTERJECTION_LENGTH = 2000


class InterjectionMode(str, Enum):
    IMMEDIATE = "immediate"
    NEXT_ROUND = "next_round"
    QUEUED = "queued"


def validate_interjection(content: str) -> tuple[bool, str | None]:
    """Boundary check applied before content reaches the queue.

    Returns:
        (valid, error) where error is None when valid.
    """
    if not content or not content.strip():
        return False, "Content cannot be empty"
    if len(content) > MAX_INTERJECTION_LENGTH:
        return False, f"Content too long (max {MAX_INTERJECTION_LENGTH} characters)"
    return True, None


class InterjectionQueue:
    def __init__(
        self,
        conversation_id: str,
        storage: Storage,
        events: EventChannel,
        current_round: int = 0,
    ) -> None:
        self._conversation_id = conversation_id
        self._storage = storage
        self._events = events
        self._current_round = current_round
        self._immediate: deque[Interjection] = deque()

    @property
    def current_round(self) -> int:
        return self._current_round

    def set_current_round(self, round_number: int) -> None:
        self._current_round = round_number

    def add_interjection(
        self,
        content: str,
        mode: InterjectionMode = InterjectionMode.NEXT_ROUND,
    ) -> Interjection:
        mode = InterjectionMode(mode)
        after_round = self._current_round if mode is InterjectionMode.IMMEDIATE else self._current_round + 1
        interjection = self._storage.add_interjection(
            Interjection(conversation_id=self._conversation_id, content=content, after_round=after_round)
        )

        # Also part of the visible transcript
        message = self._storage.add_message(
            Message(
                conversation_id=self._conversation_id,
                content=content,
                round=self._current_round,
                type=MessageType.INTERJECTION,
            )
        )

        self._events.emit(Event(EventType.USER_INTERJECTION, self._conversation_id, payload=interjection))
        self._events.emit(Event(EventType.MESSAGE_CREATED, self._conversation_id, payload=message))

        if mode is InterjectionMode.IMMEDIATE:
            self._immediate.append(interjection)

        logger.info("Interjection added (%s, after round %d)", mode.value, after_round)
        return interjection

    def has_immediate(self) -> bool:
        return bool(self._immediate)

    def drain_immediate(self) -> list[Interjection]:
        """Pop every immediate interjection, oldest first."""
        drained = list(self._immediate)
        self._immediate.clear()
        return drained

    def unprocessed(self) -> list[Interjection]:
        return self._storage.unprocessed_interjections(self._conversation_id)

    def count_unprocessed(self) -> int:
        return len(self.unprocessed())

    def mark_processed(self, interjection_id: str) -> None:
        self._storage.mark_interjection_processed(interjection_id)

    def mark_all_processed(self) -> None:
        for interjection in self.unprocessed():
            self.mark_processed(interjection.id)

    def all(self) -> list[Interjection]:
        return self._storage.interjections_for(self._conversation_id)

    def for_round(self, round_number: int) -> list[Interjection]:
        return [i for i in self.all() if i.after_round == round_number]

    def most_recent(self) -> Interjection | None:
        interjections = self.all()
        if not interjections:
            return None
        return max(interjections, key=lambda i: i.created_at)

    def clear(self) -> None:
        """Mark everything processed and drop the in-memory queue. Records are kept."""
        self.mark_all_processed()
        self._immediate.clear()
