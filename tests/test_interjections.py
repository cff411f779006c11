"""Unit tests for brainstorm/interjections.py."""

from brainstorm.events import EventType
from brainstorm.interjections import (
    MAX_INTERJECTION_LENGTH,
    InterjectionMode,
    InterjectionQueue,
    validate_interjection,
)
from brainstorm.models import Interjection, MessageType


def _queue(storage, events, conversation, current_round=0) -> InterjectionQueue:
    return InterjectionQueue(conversation.id, storage, events, current_round=current_round)


def test_validate_interjection():
    assert validate_interjection("Consider cost too") == (True, None)
    assert validate_interjection("   ")[0] is False
    assert validate_interjection("")[1] == "Content cannot be empty"
    ok, error = validate_interjection("x" * (MAX_INTERJECTION_LENGTH + 1))
    assert ok is False
    assert "too long" in error
    assert validate_interjection("x" * MAX_INTERJECTION_LENGTH)[0] is True


def test_immediate_targets_current_round_and_is_queued(storage, events, conversation):
    queue = _queue(storage, events, conversation, current_round=2)
    interjection = queue.add_interjection("Focus on security", InterjectionMode.IMMEDIATE)

    assert interjection.after_round == 2
    assert queue.has_immediate()
    assert [i.id for i in queue.drain_immediate()] == [interjection.id]
    assert not queue.has_immediate()
    assert queue.drain_immediate() == []


def test_next_round_targets_following_round(storage, events, conversation):
    queue = _queue(storage, events, conversation, current_round=2)
    interjection = queue.add_interjection("Think about hiring", InterjectionMode.NEXT_ROUND)

    assert interjection.after_round == 3
    assert not queue.has_immediate()
    assert queue.count_unprocessed() == 1
    assert queue.for_round(3)[0].id == interjection.id


def test_interjection_is_mirrored_as_message_and_emitted(storage, events, conversation):
    seen = []
    events.subscribe(lambda e: seen.append(e.type))
    queue = _queue(storage, events, conversation)

    queue.add_interjection("Mind the budget")

    messages = storage.messages_for(conversation.id)
    assert len(messages) == 1
    assert messages[0].type is MessageType.INTERJECTION
    assert messages[0].agent_id is None
    assert seen == [EventType.USER_INTERJECTION, EventType.MESSAGE_CREATED]


def test_mark_processed(storage, events, conversation):
    queue = _queue(storage, events, conversation)
    first = queue.add_interjection("one")
    queue.add_interjection("two")

    queue.mark_processed(first.id)
    assert [i.content for i in queue.unprocessed()] == ["two"]

    queue.mark_all_processed()
    assert queue.count_unprocessed() == 0
    assert len(queue.all()) == 2


def test_most_recent_and_clear(storage, events, conversation):
    queue = _queue(storage, events, conversation)
    assert queue.most_recent() is None
    queue.add_interjection("immediate", InterjectionMode.IMMEDIATE)
    storage.add_interjection(
        Interjection(conversation_id=conversation.id, content="newest", after_round=1, created_at=10**15)
    )
    assert queue.most_recent().content == "newest"

    queue.clear()
    assert not queue.has_immediate()
    assert queue.count_unprocessed() == 0


def test_set_current_round(storage, events, conversation):
    queue = _queue(storage, events, conversation)
    queue.set_current_round(5)
    assert queue.current_round == 5
    assert queue.add_interjection("late").after_round == 6
