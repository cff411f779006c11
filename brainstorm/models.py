"""Dataclasses for conversations, agents, turns and results. No I/O."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum


class ConversationMode(str, Enum):
    ROUND_ROBIN = "round-robin"
    MODERATOR = "moderator"
    DYNAMIC = "dynamic"


class ConversationStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    FINISHING = "finishing"
    COMPLETED = "completed"


class TurnStatus(str, Enum):
    PLANNED = "planned"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MessageType(str, Enum):
    RESPONSE = "response"
    SUMMARY = "summary"
    INTERJECTION = "interjection"
    SYSTEM = "system"
    OPENING = "opening"


def new_id() -> str:
    return uuid.uuid4().hex


def now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class Conversation:
    subject: str
    goal: str
    mode: ConversationMode = ConversationMode.ROUND_ROBIN
    status: ConversationStatus = ConversationStatus.IDLE
    current_round: int = 0
    speed_ms: int = 2000           # pacing delay between turns
    max_rounds: int | None = None
    recommended_rounds: int | None = None  # set by the secretary after round 0
    opening_statement: str | None = None
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)


@dataclass
class Agent:
    conversation_id: str
    name: str
    role: str
    expertise: str = ""
    model: str = ""                # key into the configured providers
    is_secretary: bool = False
    order: int = 0
    id: str = field(default_factory=new_id)


@dataclass
class TurnSchedule:
    round: int
    sequence: int
    agent_id: str
    addressed_to: str | None = None


@dataclass
class Turn:
    id: str
    conversation_id: str
    agent_id: str
    round: int
    sequence: int
    state: TurnStatus = TurnStatus.PLANNED
    tokens_used: int | None = None
    error: str | None = None
    started_at: int | None = None
    ended_at: int | None = None


@dataclass
class Message:
    conversation_id: str
    content: str
    round: int
    type: MessageType = MessageType.RESPONSE
    turn_id: str | None = None
    agent_id: str | None = None    # None for user and system messages
    addressed_to: str | None = None
    weight: int = 0
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)


@dataclass
class Interjection:
    conversation_id: str
    content: str
    after_round: int
    processed: bool = False
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)


@dataclass
class ResultDraft:
    conversation_id: str
    content: str = ""
    summary: str = ""
    key_decisions: str = ""
    executive_summary: str = ""
    themes: list[str] = field(default_factory=list)
    consensus_areas: str = ""
    disagreements: str = ""
    recommendations: str = ""
    action_items: str = ""
    open_questions: str = ""
    round_summaries: list[str] = field(default_factory=list)
    updated_at: int = field(default_factory=now_ms)


@dataclass
class TurnResult:
    success: bool
    tokens_used: int = 0
    message: Message | None = None
    error: str | None = None
    cancelled: bool = False


@dataclass
class TurnQueueItem:
    agent_id: str
    agent_name: str
    status: str                    # "completed", "current" or "waiting"
    order: int


@dataclass
class TurnQueueState:
    conversation_id: str
    round: int
    current_index: int
    total_agents: int
    queue: list[TurnQueueItem] = field(default_factory=list)
