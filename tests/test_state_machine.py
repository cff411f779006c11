"""Unit tests for brainstorm/state_machine.py."""

import logging

import pytest

from brainstorm.models import ConversationStatus, TurnStatus
from brainstorm.state_machine import ConversationStateMachine, TurnStateMachine


@pytest.mark.parametrize(
    "start,target",
    [
        (ConversationStatus.IDLE, ConversationStatus.RUNNING),
        (ConversationStatus.RUNNING, ConversationStatus.PAUSED),
        (ConversationStatus.RUNNING, ConversationStatus.FINISHING),
        (ConversationStatus.PAUSED, ConversationStatus.RUNNING),
        (ConversationStatus.FINISHING, ConversationStatus.COMPLETED),
        (ConversationStatus.COMPLETED, ConversationStatus.RUNNING),
        (ConversationStatus.COMPLETED, ConversationStatus.IDLE),
    ],
)
def test_allowed_transitions(start, target):
    machine = ConversationStateMachine(start)
    assert machine.transition(target) is True
    assert machine.status is target


def test_completed_to_paused_rejected(caplog):
    machine = ConversationStateMachine(ConversationStatus.COMPLETED)
    with caplog.at_level(logging.WARNING):
        assert machine.transition(ConversationStatus.PAUSED) is False
    assert machine.status is ConversationStatus.COMPLETED
    assert "completed -> paused" in caplog.text


def test_idle_cannot_pause():
    machine = ConversationStateMachine()
    assert machine.can_transition(ConversationStatus.PAUSED) is False
    assert machine.transition(ConversationStatus.PAUSED) is False
    assert machine.is_idle()


def test_listeners_notified_in_order_and_unsubscribe():
    machine = ConversationStateMachine()
    seen: list[tuple[str, ConversationStatus]] = []
    machine.subscribe(lambda s: seen.append(("first", s)))
    unsubscribe = machine.subscribe(lambda s: seen.append(("second", s)))

    machine.transition(ConversationStatus.RUNNING)
    unsubscribe()
    machine.transition(ConversationStatus.PAUSED)

    assert seen == [
        ("first", ConversationStatus.RUNNING),
        ("second", ConversationStatus.RUNNING),
        ("first", ConversationStatus.PAUSED),
    ]


def test_rejected_transition_does_not_notify():
    machine = ConversationStateMachine()
    seen = []
    machine.subscribe(seen.append)
    machine.transition(ConversationStatus.COMPLETED)
    assert seen == []


def test_reset_forces_idle_and_notifies():
    machine = ConversationStateMachine(ConversationStatus.FINISHING)
    seen = []
    machine.subscribe(seen.append)
    machine.reset()
    assert machine.is_idle()
    assert seen == [ConversationStatus.IDLE]


def test_is_active():
    assert ConversationStateMachine(ConversationStatus.RUNNING).is_active()
    assert ConversationStateMachine(ConversationStatus.PAUSED).is_active()
    assert not ConversationStateMachine(ConversationStatus.IDLE).is_active()
    assert not ConversationStateMachine(ConversationStatus.COMPLETED).is_active()


def test_turn_lifecycle():
    turn = TurnStateMachine()
    assert turn.transition(TurnStatus.RUNNING)
    assert turn.transition(TurnStatus.FAILED)
    assert turn.can_retry()
    assert turn.transition(TurnStatus.RUNNING)
    assert turn.transition(TurnStatus.COMPLETED)
    assert turn.is_terminal()
    assert turn.transition(TurnStatus.RUNNING) is False


def test_cancelled_turn_is_terminal():
    turn = TurnStateMachine(TurnStatus.PLANNED)
    assert turn.transition(TurnStatus.CANCELLED)
    assert turn.is_terminal()
    assert not turn.can_retry()
    assert turn.transition(TurnStatus.RUNNING) is False


def test_planned_cannot_complete_directly():
    assert TurnStateMachine().transition(TurnStatus.COMPLETED) is False
