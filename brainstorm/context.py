"""Builds the chat messages an agent sees on its turn."""

import logging

from brainstorm.models import Agent, Conversation, ConversationStatus, Interjection, Message, MessageType
from brainstorm.providers.base import ChatMessage
from config.config_loader import PromptsConfig

logger = logging.getLogger(__name__)


def format_transcript(messages: list[Message], agents: list[Agent]) -> str:
    """Render messages as ``Name: content`` blocks, one per message."""
    names = {a.id: a.name for a in agents}
    parts: list[str] = []
    for message in messages:
        if message.type is MessageType.INTERJECTION:
            speaker = "User"
        elif message.type in (MessageType.SYSTEM, MessageType.OPENING):
            speaker = "Moderator"
        else:
            speaker = names.get(message.agent_id or "", "Unknown")
        label = f"{speaker} (summary)" if message.type is MessageType.SUMMARY else speaker
        parts.append(f"{label}: {message.content}")
    return "\n\n".join(parts)


class ContextBuilder:
    def __init__(self, prompts: PromptsConfig, recent_messages: int = 12) -> None:
        self._prompts = prompts
        self._recent_messages = recent_messages

    def build(
        self,
        conversation: Conversation,
        agent: Agent,
        agents: list[Agent],
        messages: list[Message],
        interjections: list[Interjection],
        secretary_summary: str | None = None,
    ) -> list[ChatMessage]:
        participants = ", ".join(
            f"{a.name} ({a.role})" for a in agents if not a.is_secretary and a.id != agent.id
        )
        system = self._prompts.agent_system.format(
            name=agent.name,
            role=agent.role,
            expertise=agent.expertise or "general",
            participants=participants or "nobody else yet",
            subject=conversation.subject,
            goal=conversation.goal,
        ).strip()

        if secretary_summary:
            system += f"\n\nSummary of the discussion so far:\n{secretary_summary}"

        if interjections:
            notes = "\n".join(f"- {i.content}" for i in interjections)
            system += f"\n\nThe user has interjected. Take this into account:\n{notes}"

        recent = messages[-self._recent_messages:] if self._recent_messages > 0 else []
        instruction = self._prompts.agent_turn.format(
            round=conversation.current_round + 1,
            name=agent.name,
        ).strip()
        if conversation.status is ConversationStatus.FINISHING:
            instruction = f"{self._prompts.closing.strip()}\n\n{instruction}"

        if recent:
            user = f"Discussion so far:\n\n{format_transcript(recent, agents)}\n\n{instruction}"
        else:
            user = f"You are the first to speak.\n\n{instruction}"

        logger.debug("Context for %s: %d messages, %d interjections", agent.name, len(recent), len(interjections))
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": user},
        ]
