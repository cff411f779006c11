"""Turn selection for the three conversation modes, plus idempotent turn records."""

import logging
import random
import re

from brainstorm.models import Agent, ConversationMode, Turn, TurnSchedule, TurnStatus, now_ms
from brainstorm.storage import Storage, turn_id

logger = logging.getLogger(__name__)

_MENTION = re.compile(r"@(\w+)")

# How many of the latest messages dynamic mode scans for @mentions
_RECENT_WINDOW = 5


class TurnManager:
    """Decides who speaks next and owns the (round, sequence) counters.

    Secretary agents are dropped from the roster at construction; they never
    take regular turns.
    """

    def __init__(
        self,
        conversation_id: str,
        mode: ConversationMode,
        agents: list[Agent],
        storage: Storage,
        current_round: int = 0,
        rng: random.Random | None = None,
        recent_window: int = _RECENT_WINDOW,
    ) -> None:
        self._conversation_id = conversation_id
        self._mode = ConversationMode(mode)
        self._agents = [a for a in agents if not a.is_secretary]
        self._storage = storage
        self._round = current_round
        self._sequence = 0
        self._rng = rng or random.Random()
        self._recent_window = recent_window
        self._pending: dict[str, str] = {}          # agent_id -> reason, FIFO by insertion
        self._retry: TurnSchedule | None = None

    @property
    def current_round(self) -> int:
        return self._round

    @property
    def current_sequence(self) -> int:
        return self._sequence

    @property
    def agent_count(self) -> int:
        return len(self._agents)

    def get_next_agent(self) -> TurnSchedule | None:
        """Next schedule for the current mode. None only when the roster is empty."""
        if not self._agents:
            return None

        if self._retry is not None:
            schedule, self._retry = self._retry, None
            if schedule.round == self._round:
                return schedule
            logger.debug("Dropping stale retry for round %d", schedule.round)

        if self._mode is ConversationMode.MODERATOR:
            return self._next_moderated()
        if self._mode is ConversationMode.DYNAMIC:
            return self._next_dynamic()
        return self._next_round_robin()

    def _next_round_robin(self) -> TurnSchedule:
        if self._sequence >= len(self._agents):
            self._round += 1
            self._sequence = 0

        sequence = self._sequence
        self._sequence += 1
        return TurnSchedule(round=self._round, sequence=sequence, agent_id=self._agents[sequence].id)

    def _next_moderated(self) -> TurnSchedule:
        """Weighted draw favouring agents who have spoken least.

        weight = max(count) - count + 1, so every agent keeps weight >= 1.
        """
        counts = {a.id: 0 for a in self._agents}
        for message in self._storage.messages_for(self._conversation_id):
            if message.agent_id in counts:
                counts[message.agent_id] += 1

        highest = max(counts.values())
        weights = [(agent_id, highest - count + 1) for agent_id, count in counts.items()]
        total = sum(w for _, w in weights)

        draw = self._rng.random() * total
        chosen = self._agents[0].id
        for agent_id, weight in weights:
            draw -= weight
            if draw <= 0:
                chosen = agent_id
                break

        sequence = self._sequence
        self._sequence += 1
        return TurnSchedule(round=self._round, sequence=sequence, agent_id=chosen)

    def _next_dynamic(self) -> TurnSchedule:
        if self._pending:
            agent_id = next(iter(self._pending))
            reason = self._pending.pop(agent_id)
            logger.debug("Scheduling queued agent %s (%s)", agent_id, reason)
            sequence = self._sequence
            self._sequence += 1
            return TurnSchedule(round=self._round, sequence=sequence, agent_id=agent_id)

        # Newest first. A mention counts only while the mentioned agent has
        # not spoken since it was made.
        spoken_since: set[str] = set()
        for message in reversed(self._storage.recent_messages(self._conversation_id, self._recent_window)):
            addressed = self._parse_addressing(message.content)
            if addressed and addressed != message.agent_id and addressed not in spoken_since:
                sequence = self._sequence
                self._sequence += 1
                return TurnSchedule(
                    round=self._round,
                    sequence=sequence,
                    agent_id=addressed,
                    addressed_to=message.agent_id,
                )
            if message.agent_id:
                spoken_since.add(message.agent_id)

        return self._next_round_robin()

    def _parse_addressing(self, content: str) -> str | None:
        for match in _MENTION.finditer(content):
            name = match.group(1).lower()
            for agent in self._agents:
                if name in agent.name.lower() or name in agent.role.lower():
                    return agent.id
        return None

    def queue_agent(self, agent_id: str, reason: str) -> None:
        """Make ``agent_id`` the next dynamic-mode speaker (FIFO with other queued agents)."""
        self._pending[agent_id] = reason

    def reschedule(self, schedule: TurnSchedule) -> None:
        """Hand ``schedule`` out again on the next call, e.g. after a failed turn."""
        self._retry = schedule

    def create_turn(self, schedule: TurnSchedule) -> Turn:
        """Create the turn record, or return the existing one for this (round, sequence)."""
        tid = turn_id(self._conversation_id, schedule.round, schedule.sequence)
        existing = self._storage.get_turn(tid)
        if existing is not None:
            return existing

        return self._storage.create_turn(
            Turn(
                id=tid,
                conversation_id=self._conversation_id,
                agent_id=schedule.agent_id,
                round=schedule.round,
                sequence=schedule.sequence,
                state=TurnStatus.PLANNED,
                started_at=now_ms(),
            )
        )

    def is_turn_completed(self, round_number: int, sequence: int) -> bool:
        return self._storage.is_turn_completed(turn_id(self._conversation_id, round_number, sequence))

    def get_turn(self, schedule: TurnSchedule) -> Turn | None:
        return self._storage.get_turn(turn_id(self._conversation_id, schedule.round, schedule.sequence))

    def pending_turns(self) -> list[Turn]:
        return [
            t for t in self._storage.turns_for(self._conversation_id)
            if t.state in (TurnStatus.PLANNED, TurnStatus.RUNNING)
        ]

    def failed_turns(self) -> list[Turn]:
        return [t for t in self._storage.turns_for(self._conversation_id) if t.state is TurnStatus.FAILED]

    def advance_round(self) -> None:
        self._round += 1
        self._sequence = 0
        self._pending.clear()
        self._retry = None

    def set_current_round(self, round_number: int) -> None:
        self._round = round_number
        self._sequence = 0
        self._retry = None

    def is_round_complete(self) -> bool:
        return self._sequence >= len(self._agents)

    def update_agents(self, agents: list[Agent]) -> None:
        self._agents = [a for a in agents if not a.is_secretary]

    def turn_order(self) -> list[tuple[str, str, int]]:
        """(agent_id, name, position) for every rotating agent."""
        return [(a.id, a.name, index) for index, a in enumerate(self._agents)]
