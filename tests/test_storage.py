"""Unit tests for brainstorm/storage.py."""

import json

import pytest

from brainstorm.models import (
    Agent,
    Conversation,
    ConversationStatus,
    Interjection,
    Message,
    MessageType,
    Turn,
    TurnStatus,
)
from brainstorm.storage import InMemoryStorage, JsonFileStorage, turn_id


def test_turn_id_is_deterministic():
    assert turn_id("c1", 2, 3) == "c1-r2-s3"
    assert turn_id("c1", 2, 3) == turn_id("c1", 2, 3)


def test_returned_records_are_copies(storage, conversation):
    fetched = storage.get_conversation(conversation.id)
    fetched.subject = "changed"
    assert storage.get_conversation(conversation.id).subject == "Monorepo or polyrepo?"


def test_update_unknown_field_raises(storage, conversation):
    with pytest.raises(AttributeError):
        storage.update_conversation(conversation.id, nonsense=1)


def test_agents_sorted_by_order_and_secretary_lookup(storage, conversation):
    storage.add_agent(Agent(conversation_id=conversation.id, name="B", role="r", order=1))
    storage.add_agent(Agent(conversation_id=conversation.id, name="S", role="r", order=2, is_secretary=True))
    storage.add_agent(Agent(conversation_id=conversation.id, name="A", role="r", order=0))

    assert [a.name for a in storage.agents_for(conversation.id)] == ["A", "B", "S"]
    assert storage.get_secretary(conversation.id).name == "S"


def test_message_queries(storage, conversation):
    cid = conversation.id
    for round_number in range(3):
        for i in range(2):
            storage.add_message(Message(conversation_id=cid, content=f"r{round_number}m{i}", round=round_number))

    assert [m.content for m in storage.messages_for_round(cid, 1)] == ["r1m0", "r1m1"]
    assert len(storage.messages_since_round(cid, 1)) == 4
    assert [m.content for m in storage.recent_messages(cid, 3)] == ["r1m1", "r2m0", "r2m1"]
    assert storage.recent_messages(cid, 0) == []


def test_adjust_weight(storage, conversation):
    message = storage.add_message(Message(conversation_id=conversation.id, content="x", round=0))
    storage.adjust_weight(message.id, 2)
    storage.adjust_weight(message.id, 1)
    assert storage.get_message(message.id).weight == 3


def test_mark_running_turns_failed(storage, conversation):
    cid = conversation.id
    storage.create_turn(Turn(id=turn_id(cid, 0, 0), conversation_id=cid, agent_id="a", round=0, sequence=0,
                             state=TurnStatus.COMPLETED))
    storage.create_turn(Turn(id=turn_id(cid, 0, 1), conversation_id=cid, agent_id="b", round=0, sequence=1,
                             state=TurnStatus.RUNNING))

    assert storage.mark_running_turns_failed(cid, "Interrupted") == 1
    failed = storage.get_turn(turn_id(cid, 0, 1))
    assert failed.state is TurnStatus.FAILED
    assert failed.error == "Interrupted"
    assert storage.is_turn_completed(turn_id(cid, 0, 0))


def test_bulk_deletes(storage, conversation):
    cid = conversation.id
    storage.add_message(Message(conversation_id=cid, content="x", round=0))
    storage.add_interjection(Interjection(conversation_id=cid, content="y", after_round=1))
    storage.create_turn(Turn(id=turn_id(cid, 0, 0), conversation_id=cid, agent_id="a", round=0, sequence=0))

    storage.delete_messages(cid)
    storage.delete_interjections(cid)
    storage.delete_turns(cid)

    assert storage.messages_for(cid) == []
    assert storage.interjections_for(cid) == []
    assert storage.turns_for(cid) == []


def test_draft_created_on_first_update(storage, conversation):
    assert storage.get_draft(conversation.id) is None
    storage.append_round_summary(conversation.id, "first")
    draft = storage.update_draft(conversation.id, summary="s")
    assert draft.round_summaries == ["first"]
    assert draft.summary == "s"


def test_json_storage_round_trips_through_disk(tmp_path):
    store = JsonFileStorage(tmp_path)
    conversation = store.create_conversation(Conversation(subject="S", goal="G"))
    cid = conversation.id
    store.add_agent(Agent(conversation_id=cid, name="Ada", role="r"))
    store.create_turn(Turn(id=turn_id(cid, 0, 0), conversation_id=cid, agent_id="a", round=0, sequence=0))
    store.add_message(Message(conversation_id=cid, content="hello", round=0, type=MessageType.OPENING))
    store.update_conversation(cid, status=ConversationStatus.PAUSED)

    document = json.loads(store.path_for(cid).read_text(encoding="utf-8"))
    assert document["conversation"]["status"] == "paused"

    reloaded = JsonFileStorage(tmp_path)
    assert reloaded.get_conversation(cid).status is ConversationStatus.PAUSED
    assert reloaded.messages_for(cid)[0].type is MessageType.OPENING
    assert reloaded.get_turn(turn_id(cid, 0, 0)).state is TurnStatus.PLANNED
    assert reloaded.agents_for(cid)[0].name == "Ada"


def test_json_storage_skips_unreadable_files(tmp_path, caplog):
    (tmp_path / "broken.json").write_text("{not json", encoding="utf-8")
    store = JsonFileStorage(tmp_path)
    assert store.list_conversations() == []
    assert "broken.json" in caplog.text


def test_json_storage_delete_removes_file(tmp_path):
    store = JsonFileStorage(tmp_path)
    cid = store.create_conversation(Conversation(subject="S", goal="G")).id
    assert store.path_for(cid).exists()
    store.delete_conversation(cid)
    assert not store.path_for(cid).exists()


def test_in_memory_storage_lists_newest_first():
    store = InMemoryStorage()
    older = store.create_conversation(Conversation(subject="old", goal="g", updated_at=1))
    newer = store.create_conversation(Conversation(subject="new", goal="g", updated_at=2))
    assert [c.id for c in store.list_conversations()] == [newer.id, older.id]
