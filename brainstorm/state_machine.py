"""Transition tables for conversation status and turn state. No I/O."""

import logging
from collections.abc import Callable

from brainstorm.models import ConversationStatus, TurnStatus

logger = logging.getLogger(__name__)

_CONVERSATION_TRANSITIONS: dict[ConversationStatus, frozenset[ConversationStatus]] = {
    ConversationStatus.IDLE: frozenset({ConversationStatus.RUNNING}),
    # idle is the reset target, finishing the wrap-up phase
    ConversationStatus.RUNNING: frozenset({
        ConversationStatus.PAUSED,
        ConversationStatus.COMPLETED,
        ConversationStatus.FINISHING,
        ConversationStatus.IDLE,
    }),
    ConversationStatus.PAUSED: frozenset({
        ConversationStatus.RUNNING,
        ConversationStatus.FINISHING,
        ConversationStatus.IDLE,
    }),
    ConversationStatus.FINISHING: frozenset({ConversationStatus.COMPLETED, ConversationStatus.IDLE}),
    # completed conversations may be reset or restarted
    ConversationStatus.COMPLETED: frozenset({ConversationStatus.IDLE, ConversationStatus.RUNNING}),
}

_TURN_TRANSITIONS: dict[TurnStatus, frozenset[TurnStatus]] = {
    TurnStatus.PLANNED: frozenset({TurnStatus.RUNNING, TurnStatus.CANCELLED}),
    TurnStatus.RUNNING: frozenset({TurnStatus.COMPLETED, TurnStatus.FAILED, TurnStatus.CANCELLED}),
    TurnStatus.COMPLETED: frozenset(),
    TurnStatus.FAILED: frozenset({TurnStatus.RUNNING, TurnStatus.CANCELLED}),
    TurnStatus.CANCELLED: frozenset(),
}

StatusListener = Callable[[ConversationStatus], None]


class ConversationStateMachine:
    """Validates conversation status changes and notifies listeners in order."""

    def __init__(self, initial: ConversationStatus = ConversationStatus.IDLE) -> None:
        self._status = ConversationStatus(initial)
        self._listeners: list[StatusListener] = []

    @property
    def status(self) -> ConversationStatus:
        return self._status

    def can_transition(self, to: ConversationStatus) -> bool:
        return to in _CONVERSATION_TRANSITIONS[self._status]

    def transition(self, to: ConversationStatus) -> bool:
        """Move to ``to`` if allowed. Returns False and keeps state otherwise."""
        to = ConversationStatus(to)
        if not self.can_transition(to):
            logger.warning("Invalid conversation transition: %s -> %s", self._status.value, to.value)
            return False

        previous = self._status
        self._status = to
        logger.debug("Conversation transition: %s -> %s", previous.value, to.value)
        self._notify(to)
        return True

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def reset(self) -> None:
        """Force the machine back to idle regardless of the current status."""
        self._status = ConversationStatus.IDLE
        self._notify(ConversationStatus.IDLE)

    def _notify(self, status: ConversationStatus) -> None:
        for listener in list(self._listeners):
            listener(status)

    def is_idle(self) -> bool:
        return self._status is ConversationStatus.IDLE

    def is_running(self) -> bool:
        return self._status is ConversationStatus.RUNNING

    def is_paused(self) -> bool:
        return self._status is ConversationStatus.PAUSED

    def is_finishing(self) -> bool:
        return self._status is ConversationStatus.FINISHING

    def is_completed(self) -> bool:
        return self._status is ConversationStatus.COMPLETED

    def is_active(self) -> bool:
        return self._status in (
            ConversationStatus.RUNNING,
            ConversationStatus.PAUSED,
            ConversationStatus.FINISHING,
        )


class TurnStateMachine:
    def __init__(self, initial: TurnStatus = TurnStatus.PLANNED) -> None:
        self._status = TurnStatus(initial)

    @property
    def status(self) -> TurnStatus:
        return self._status

    def can_transition(self, to: TurnStatus) -> bool:
        return to in _TURN_TRANSITIONS[self._status]

    def transition(self, to: TurnStatus) -> bool:
        to = TurnStatus(to)
        if not self.can_transition(to):
            logger.warning("Invalid turn transition: %s -> %s", self._status.value, to.value)
            return False
        self._status = to
        return True

    def is_terminal(self) -> bool:
        return self._status in (TurnStatus.COMPLETED, TurnStatus.CANCELLED)

    def can_retry(self) -> bool:
        return self._status is TurnStatus.FAILED
