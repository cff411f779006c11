"""Neutral secretary: round summaries, running summary updates and the structured result."""

import json
import logging
import re

from brainstorm.context import format_transcript
from brainstorm.events import Event, EventChannel, EventType
from brainstorm.models import Agent, Conversation, Message, MessageType, ResultDraft
from brainstorm.providers.base import AIProvider, ChatMessage
from brainstorm.storage import Storage
from config.config_loader import PromptsConfig

logger = logging.getLogger(__name__)

_HEADING = re.compile(r"^##\s+(.+?)\s*$", re.MULTILINE)
_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)

# Round decision bounds and fallbacks
_MIN_ROUNDS = 2
_MAX_ROUNDS = 10
_ROUNDS_FALLBACK = 5
_ROUNDS_NO_MESSAGES = 3

# Section heading (lowercased) -> ResultDraft field
_SECTIONS = {
    "executive summary": "executive_summary",
    "themes": "themes",
    "consensus": "consensus_areas",
    "disagreements": "disagreements",
    "recommendations": "recommendations",
    "action items": "action_items",
    "open questions": "open_questions",
}


def parse_sections(text: str) -> dict[str, str]:
    """Split markdown on ``## `` headings. Keys are lowercased heading text."""
    sections: dict[str, str] = {}
    matches = list(_HEADING.finditer(text))
    for index, match in enumerate(matches):
        end = matches[index + 1].start() if index + 1 < len(matches) else len(text)
        sections[match.group(1).strip().lower()] = text[match.end():end].strip()
    return sections


def _bullets(text: str) -> list[str]:
    items = [line.strip()[2:].strip() for line in text.splitlines() if line.strip().startswith(("- ", "* "))]
    return [item for item in items if item]


class Secretary:
    """Summarises the discussion through the secretary agent's provider.

    Every method raises ``ProviderError`` when the call fails; callers decide
    whether that is fatal.
    """

    def __init__(
        self,
        agent: Agent,
        provider: AIProvider,
        storage: Storage,
        events: EventChannel,
        prompts: PromptsConfig,
    ) -> None:
        self._agent = agent
        self._provider = provider
        self._storage = storage
        self._events = events
        self._prompts = prompts

    @property
    def agent(self) -> Agent:
        return self._agent

    async def _ask(self, prompt: str) -> str:
        messages: list[ChatMessage] = [{"role": "user", "content": prompt.strip()}]
        completion = await self._provider.complete(messages)
        return completion.content.strip()

    def _transcript(self, messages: list[Message]) -> str:
        return format_transcript(messages, self._storage.agents_for(self._agent.conversation_id))

    async def generate_round_summary(self, round_number: int) -> str | None:
        """Summarise one round and append it to the draft's round summaries.

        Returns None when the round has no agent messages.
        """
        conversation_id = self._agent.conversation_id
        conversation = self._storage.get_conversation(conversation_id)
        messages = [
            m for m in self._storage.messages_for_round(conversation_id, round_number)
            if m.type is not MessageType.SUMMARY
        ]
        if not messages or conversation is None:
            return None

        prompt = self._prompts.round_summary.format(
            round=round_number + 1,
            subject=conversation.subject,
            transcript=self._transcript(messages),
        )
        summary = await self._ask(prompt)
        draft = self._storage.append_round_summary(conversation_id, summary)
        self._events.emit(Event(EventType.DRAFT_UPDATED, conversation_id, payload=draft))
        logger.info("Secretary summarised round %d", round_number)
        return summary

    async def incremental_update(self, messages: list[Message]) -> ResultDraft | None:
        """Fold ``messages`` into the running summary."""
        conversation_id = self._agent.conversation_id
        if not messages:
            return self._storage.get_draft(conversation_id)

        draft = self._storage.get_draft(conversation_id) or ResultDraft(conversation_id=conversation_id)
        prompt = self._prompts.incremental_update.format(
            existing_summary=draft.summary or "(none yet)",
            transcript=self._transcript(messages),
        )
        update = await self._ask(prompt)

        summary = f"{draft.summary}\n\n{update}".strip() if draft.summary else update
        content = f"{draft.content}\n\n---\n\n{update}" if draft.content else update
        updated = self._storage.update_draft(conversation_id, summary=summary, content=content)
        self._events.emit(Event(EventType.DRAFT_UPDATED, conversation_id, payload=updated))
        return updated

    async def generate_result_draft(self, conversation: Conversation) -> ResultDraft:
        """Ask for the full structured result and store it as the draft."""
        messages = [
            m for m in self._storage.messages_for(conversation.id)
            if m.type is not MessageType.SUMMARY
        ]
        prompt = self._prompts.result_draft.format(
            subject=conversation.subject,
            goal=conversation.goal,
            transcript=self._transcript(messages),
        )
        text = await self._ask(prompt)

        fields: dict[str, object] = {}
        for heading, body in parse_sections(text).items():
            key = _SECTIONS.get(heading)
            if key == "themes":
                fields[key] = _bullets(body) or [body]
            elif key:
                fields[key] = body
        if not fields:
            logger.warning("Secretary result had no recognised sections, storing it as plain content")

        executive = str(fields.get("executive_summary", ""))
        draft = self._storage.update_draft(
            conversation.id,
            content=text,
            summary=executive or text,
            key_decisions=str(fields.get("consensus_areas", "")),
            **fields,
        )
        self._events.emit(Event(EventType.DRAFT_UPDATED, conversation.id, payload=draft))
        logger.info("Secretary produced the result draft (%d chars)", len(text))
        return draft

    async def decide_rounds(self, conversation: Conversation, round_number: int) -> tuple[int, str]:
        """Read a finished round and pick how many rounds the discussion needs.

        Returns ``(rounds, reasoning)`` with rounds clamped to 2..10. An empty
        round gives 3 and an unreadable answer gives 5.
        """
        messages = [
            m for m in self._storage.messages_for_round(conversation.id, round_number)
            if m.type is not MessageType.SUMMARY
        ]
        if not messages:
            rounds = _ROUNDS_NO_MESSAGES
            return rounds, f"Round {round_number + 1} had no contributions, planning {rounds} rounds."

        prompt = self._prompts.decide_rounds.format(
            subject=conversation.subject,
            goal=conversation.goal,
            transcript=self._transcript(messages),
        )
        text = await self._ask(prompt)

        match = _JSON_OBJECT.search(text)
        parsed = None
        if match:
            try:
                parsed = json.loads(match.group(0))
            except json.JSONDecodeError:
                logger.warning("Secretary round decision was not valid JSON")
        if not isinstance(parsed, dict):
            rounds = _ROUNDS_FALLBACK
            return rounds, f"Could not read the round decision, planning {rounds} rounds."

        try:
            rounds = int(parsed.get("recommendedRounds") or _ROUNDS_FALLBACK)
        except (TypeError, ValueError):
            rounds = _ROUNDS_FALLBACK
        rounds = min(_MAX_ROUNDS, max(_MIN_ROUNDS, rounds))

        reasoning = parsed.get("reasoning")
        if not isinstance(reasoning, str) or not reasoning.strip():
            reasoning = f"After round {round_number + 1}, planning {rounds} rounds."
        logger.info("Secretary decided on %d rounds", rounds)
        return rounds, reasoning.strip()
