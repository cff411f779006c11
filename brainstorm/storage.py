"""Record store for conversations and everything hanging off them.

``Storage`` is the contract the engine relies on. ``InMemoryStorage`` keeps
records in dicts and hands out copies so callers never alias stored state.
``JsonFileStorage`` adds one JSON document per conversation on disk so a run
can be resumed from another process.
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any

from brainstorm.models import (
    Agent,
    Conversation,
    ConversationMode,
    ConversationStatus,
    Interjection,
    Message,
    MessageType,
    ResultDraft,
    Turn,
    TurnStatus,
    now_ms,
)

logger = logging.getLogger(__name__)


def turn_id(conversation_id: str, round_number: int, sequence: int) -> str:
    """Deterministic turn identity: the same triple always yields the same id."""
    return f"{conversation_id}-r{round_number}-s{sequence}"


class Storage(ABC):
    """CRUD contract consumed by the engine, the turn manager and the aggregator."""

    # conversations
    @abstractmethod
    def create_conversation(self, conversation: Conversation) -> Conversation: ...

    @abstractmethod
    def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    @abstractmethod
    def list_conversations(self) -> list[Conversation]: ...

    @abstractmethod
    def update_conversation(self, conversation_id: str, **changes: Any) -> Conversation | None: ...

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> None: ...

    # agents
    @abstractmethod
    def add_agent(self, agent: Agent) -> Agent: ...

    @abstractmethod
    def get_agent(self, agent_id: str) -> Agent | None: ...

    @abstractmethod
    def agents_for(self, conversation_id: str) -> list[Agent]: ...

    # turns
    @abstractmethod
    def create_turn(self, turn: Turn) -> Turn: ...

    @abstractmethod
    def get_turn(self, turn_id: str) -> Turn | None: ...

    @abstractmethod
    def turns_for(self, conversation_id: str) -> list[Turn]: ...

    @abstractmethod
    def update_turn(self, turn_id: str, **changes: Any) -> Turn | None: ...

    @abstractmethod
    def delete_turns(self, conversation_id: str) -> None: ...

    # messages
    @abstractmethod
    def add_message(self, message: Message) -> Message: ...

    @abstractmethod
    def get_message(self, message_id: str) -> Message | None: ...

    @abstractmethod
    def messages_for(self, conversation_id: str) -> list[Message]: ...

    @abstractmethod
    def adjust_weight(self, message_id: str, delta: int) -> Message | None: ...

    @abstractmethod
    def delete_messages(self, conversation_id: str) -> None: ...

    # interjections
    @abstractmethod
    def add_interjection(self, interjection: Interjection) -> Interjection: ...

    @abstractmethod
    def interjections_for(self, conversation_id: str) -> list[Interjection]: ...

    @abstractmethod
    def mark_interjection_processed(self, interjection_id: str) -> None: ...

    @abstractmethod
    def delete_interjections(self, conversation_id: str) -> None: ...

    # result drafts
    @abstractmethod
    def get_draft(self, conversation_id: str) -> ResultDraft | None: ...

    @abstractmethod
    def update_draft(self, conversation_id: str, **changes: Any) -> ResultDraft: ...

    # Derived queries shared by every backend.

    def get_secretary(self, conversation_id: str) -> Agent | None:
        return next((a for a in self.agents_for(conversation_id) if a.is_secretary), None)

    def turns_for_round(self, conversation_id: str, round_number: int) -> list[Turn]:
        return [t for t in self.turns_for(conversation_id) if t.round == round_number]

    def is_turn_completed(self, tid: str) -> bool:
        turn = self.get_turn(tid)
        return turn is not None and turn.state is TurnStatus.COMPLETED

    def mark_running_turns_failed(self, conversation_id: str, error: str) -> int:
        """Flip turns left ``running`` by a dead process to ``failed``. Returns the count."""
        count = 0
        for turn in self.turns_for(conversation_id):
            if turn.state is TurnStatus.RUNNING:
                self.update_turn(turn.id, state=TurnStatus.FAILED, error=error, ended_at=now_ms())
                count += 1
        return count

    def messages_for_round(self, conversation_id: str, round_number: int) -> list[Message]:
        return [m for m in self.messages_for(conversation_id) if m.round == round_number]

    def messages_since_round(self, conversation_id: str, round_number: int) -> list[Message]:
        return [m for m in self.messages_for(conversation_id) if m.round >= round_number]

    def recent_messages(self, conversation_id: str, limit: int) -> list[Message]:
        """The last ``limit`` messages, oldest first."""
        if limit <= 0:
            return []
        return self.messages_for(conversation_id)[-limit:]

    def message_for_turn(self, tid: str) -> Message | None:
        turn = self.get_turn(tid)
        if turn is None:
            return None
        return next((m for m in self.messages_for(turn.conversation_id) if m.turn_id == tid), None)

    def unprocessed_interjections(self, conversation_id: str) -> list[Interjection]:
        return [i for i in self.interjections_for(conversation_id) if not i.processed]

    def append_round_summary(self, conversation_id: str, summary: str) -> ResultDraft:
        draft = self.get_draft(conversation_id) or ResultDraft(conversation_id=conversation_id)
        return self.update_draft(conversation_id, round_summaries=[*draft.round_summaries, summary])


class InMemoryStorage(Storage):
    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._agents: dict[str, Agent] = {}
        self._turns: dict[str, Turn] = {}
        self._messages: dict[str, Message] = {}
        self._interjections: dict[str, Interjection] = {}
        self._drafts: dict[str, ResultDraft] = {}

    def _changed(self, conversation_id: str) -> None:
        """Hook called after every write touching ``conversation_id``."""

    # conversations

    def create_conversation(self, conversation: Conversation) -> Conversation:
        self._conversations[conversation.id] = copy.deepcopy(conversation)
        self._changed(conversation.id)
        return copy.deepcopy(conversation)

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return copy.deepcopy(self._conversations.get(conversation_id))

    def list_conversations(self) -> list[Conversation]:
        return sorted(
            (copy.deepcopy(c) for c in self._conversations.values()),
            key=lambda c: c.updated_at,
            reverse=True,
        )

    def update_conversation(self, conversation_id: str, **changes: Any) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return None
        _apply(conversation, changes)
        conversation.updated_at = now_ms()
        self._changed(conversation_id)
        return copy.deepcopy(conversation)

    def delete_conversation(self, conversation_id: str) -> None:
        self._conversations.pop(conversation_id, None)
        for table in (self._agents, self._turns, self._messages, self._interjections):
            for key in [k for k, v in table.items() if v.conversation_id == conversation_id]:
                del table[key]
        self._drafts.pop(conversation_id, None)
        self._changed(conversation_id)

    # agents

    def add_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = copy.deepcopy(agent)
        self._changed(agent.conversation_id)
        return copy.deepcopy(agent)

    def get_agent(self, agent_id: str) -> Agent | None:
        return copy.deepcopy(self._agents.get(agent_id))

    def agents_for(self, conversation_id: str) -> list[Agent]:
        agents = [copy.deepcopy(a) for a in self._agents.values() if a.conversation_id == conversation_id]
        return sorted(agents, key=lambda a: a.order)

    # turns

    def create_turn(self, turn: Turn) -> Turn:
        self._turns[turn.id] = copy.deepcopy(turn)
        self._changed(turn.conversation_id)
        return copy.deepcopy(turn)

    def get_turn(self, tid: str) -> Turn | None:
        return copy.deepcopy(self._turns.get(tid))

    def turns_for(self, conversation_id: str) -> list[Turn]:
        turns = [copy.deepcopy(t) for t in self._turns.values() if t.conversation_id == conversation_id]
        return sorted(turns, key=lambda t: (t.round, t.sequence))

    def update_turn(self, tid: str, **changes: Any) -> Turn | None:
        turn = self._turns.get(tid)
        if turn is None:
            return None
        _apply(turn, changes)
        self._changed(turn.conversation_id)
        return copy.deepcopy(turn)

    def delete_turns(self, conversation_id: str) -> None:
        for key in [k for k, t in self._turns.items() if t.conversation_id == conversation_id]:
            del self._turns[key]
        self._changed(conversation_id)

    # messages

    def add_message(self, message: Message) -> Message:
        self._messages[message.id] = copy.deepcopy(message)
        self._changed(message.conversation_id)
        return copy.deepcopy(message)

    def get_message(self, message_id: str) -> Message | None:
        return copy.deepcopy(self._messages.get(message_id))

    def messages_for(self, conversation_id: str) -> list[Message]:
        # dicts keep insertion order, which is creation order
        return [copy.deepcopy(m) for m in self._messages.values() if m.conversation_id == conversation_id]

    def adjust_weight(self, message_id: str, delta: int) -> Message | None:
        message = self._messages.get(message_id)
        if message is None:
            return None
        message.weight += delta
        self._changed(message.conversation_id)
        return copy.deepcopy(message)

    def delete_messages(self, conversation_id: str) -> None:
        for key in [k for k, m in self._messages.items() if m.conversation_id == conversation_id]:
            del self._messages[key]
        self._changed(conversation_id)

    # interjections

    def add_interjection(self, interjection: Interjection) -> Interjection:
        self._interjections[interjection.id] = copy.deepcopy(interjection)
        self._changed(interjection.conversation_id)
        return copy.deepcopy(interjection)

    def interjections_for(self, conversation_id: str) -> list[Interjection]:
        return [copy.deepcopy(i) for i in self._interjections.values() if i.conversation_id == conversation_id]

    def mark_interjection_processed(self, interjection_id: str) -> None:
        interjection = self._interjections.get(interjection_id)
        if interjection is not None and not interjection.processed:
            interjection.processed = True
            self._changed(interjection.conversation_id)

    def delete_interjections(self, conversation_id: str) -> None:
        for key in [k for k, i in self._interjections.items() if i.conversation_id == conversation_id]:
            del self._interjections[key]
        self._changed(conversation_id)

    # result drafts

    def get_draft(self, conversation_id: str) -> ResultDraft | None:
        return copy.deepcopy(self._drafts.get(conversation_id))

    def update_draft(self, conversation_id: str, **changes: Any) -> ResultDraft:
        draft = self._drafts.setdefault(conversation_id, ResultDraft(conversation_id=conversation_id))
        _apply(draft, changes)
        draft.updated_at = now_ms()
        self._changed(conversation_id)
        return copy.deepcopy(draft)


class JsonFileStorage(InMemoryStorage):
    """In-memory tables mirrored to ``<root>/<conversation_id>.json`` on every write."""

    def __init__(self, root: Path) -> None:
        super().__init__()
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        for path in sorted(self._root.glob("*.json")):
            try:
                self._load(path)
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Skipping unreadable conversation file %s: %s", path, exc)

    def path_for(self, conversation_id: str) -> Path:
        return self._root / f"{conversation_id}.json"

    def _changed(self, conversation_id: str) -> None:
        path = self.path_for(conversation_id)
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            if path.exists():
                path.unlink()
            return

        document = {
            "conversation": asdict(conversation),
            "agents": [asdict(a) for a in self._agents.values() if a.conversation_id == conversation_id],
            "turns": [asdict(t) for t in self._turns.values() if t.conversation_id == conversation_id],
            "messages": [asdict(m) for m in self._messages.values() if m.conversation_id == conversation_id],
            "interjections": [
                asdict(i) for i in self._interjections.values() if i.conversation_id == conversation_id
            ],
            "draft": asdict(self._drafts[conversation_id]) if conversation_id in self._drafts else None,
        }
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(document, indent=2), encoding="utf-8")
        tmp.replace(path)

    def _load(self, path: Path) -> None:
        raw = json.loads(path.read_text(encoding="utf-8"))

        conversation = _build(Conversation, raw["conversation"])
        conversation.mode = ConversationMode(conversation.mode)
        conversation.status = ConversationStatus(conversation.status)
        self._conversations[conversation.id] = conversation

        for item in raw.get("agents", []):
            agent = _build(Agent, item)
            self._agents[agent.id] = agent
        for item in raw.get("turns", []):
            turn = _build(Turn, item)
            turn.state = TurnStatus(turn.state)
            self._turns[turn.id] = turn
        for item in raw.get("messages", []):
            message = _build(Message, item)
            message.type = MessageType(message.type)
            self._messages[message.id] = message
        for item in raw.get("interjections", []):
            interjection = _build(Interjection, item)
            self._interjections[interjection.id] = interjection
        if raw.get("draft"):
            self._drafts[conversation.id] = _build(ResultDraft, raw["draft"])


def _apply(record: Any, changes: dict[str, Any]) -> None:
    for key, value in changes.items():
        if not hasattr(record, key):
            raise AttributeError(f"{type(record).__name__} has no field {key!r}")
        setattr(record, key, value)


def _build(cls: type, data: dict[str, Any]) -> Any:
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known})
