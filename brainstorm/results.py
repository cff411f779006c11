"""Running result draft: per-round folding, final summary and exports."""

import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone

from brainstorm.context import format_transcript
from brainstorm.events import Event, EventChannel, EventType
from brainstorm.models import Agent, Conversation, Message, MessageType, ResultDraft
from brainstorm.secretary import Secretary
from brainstorm.storage import Storage

logger = logging.getLogger(__name__)

_HIGHLIGHT_WEIGHT = 2
_MAX_HIGHLIGHTS = 10
_FALLBACK_MESSAGES = 5
_EXCERPT_CHARS = 200


def _excerpt(content: str) -> str:
    if len(content) > _EXCERPT_CHARS:
        return content[:_EXCERPT_CHARS] + "..."
    return content


def _format_ms(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


class ResultAggregator:
    """Owns the conversation's ResultDraft.

    ``incremental_update`` keeps a watermark so each round is folded in at
    most once. Secretary failures are logged and never propagate.
    """

    def __init__(
        self,
        conversation_id: str,
        storage: Storage,
        events: EventChannel,
        secretary: Secretary | None = None,
    ) -> None:
        self._conversation_id = conversation_id
        self._storage = storage
        self._events = events
        self._secretary = secretary
        # -1: no round folded in yet, so round 0 is eligible
        self._last_update_round = -1

    @property
    def last_update_round(self) -> int:
        return self._last_update_round

    @property
    def secretary(self) -> Secretary | None:
        return self._secretary

    def get_draft(self) -> ResultDraft | None:
        return self._storage.get_draft(self._conversation_id)

    def update_draft(self, **changes) -> ResultDraft:
        draft = self._storage.update_draft(self._conversation_id, **changes)
        self._events.emit(Event(EventType.DRAFT_UPDATED, self._conversation_id, payload=draft))
        return draft

    async def incremental_update(self, round_number: int) -> None:
        if round_number <= self._last_update_round:
            return

        messages = [
            m for m in self._storage.messages_for_round(self._conversation_id, round_number)
            if m.type is not MessageType.SUMMARY
        ]
        if not messages:
            return

        try:
            if self._secretary is not None:
                await self._secretary.incremental_update(messages)
            else:
                self._fold_plain(round_number, messages)
        except Exception:
            logger.exception("Incremental update for round %d failed", round_number)
            return

        self._last_update_round = round_number
        logger.debug("Draft updated through round %d", round_number)

    def _fold_plain(self, round_number: int, messages: list[Message]) -> None:
        agents = self._storage.agents_for(self._conversation_id)
        section = f"### Round {round_number + 1}\n\n{format_transcript(messages, agents)}"
        draft = self.get_draft()
        content = f"{draft.content}\n\n{section}" if draft and draft.content else section
        self.update_draft(content=content)

    async def generate_final_draft(self, conversation: Conversation) -> ResultDraft:
        """Secretary result when available, else the deterministic summary."""
        if self._secretary is not None:
            try:
                return await self._secretary.generate_result_draft(conversation)
            except Exception:
                logger.exception("Secretary result failed, falling back to a plain summary")
        return self._generate_simple_draft(conversation)

    def _generate_simple_draft(self, conversation: Conversation) -> ResultDraft:
        messages = self._storage.messages_for(self._conversation_id)
        agents = self._storage.agents_for(self._conversation_id)
        participants = [a for a in agents if not a.is_secretary]
        return self.update_draft(
            content=build_simple_summary(conversation, messages, agents),
            summary=f'Discussion on "{conversation.subject}" with {len(participants)} participants.',
            key_decisions="Review the full content for decisions.",
        )

    def export_markdown(self) -> str:
        draft = self.get_draft()
        if draft is None:
            return "# No result draft available"

        return (
            f"# {draft.summary or 'Discussion Result'}\n\n"
            f"{draft.content or 'No content available.'}\n\n"
            "## Key Decisions\n\n"
            f"{draft.key_decisions or 'No key decisions recorded.'}\n\n"
            "---\n"
            "*Generated by AI Brainstorm*\n"
            f"*Last updated: {_format_ms(draft.updated_at)}*\n"
        )

    def export_json(self) -> str:
        draft = self.get_draft()
        messages = self._storage.messages_for(self._conversation_id)
        agents = self._storage.agents_for(self._conversation_id)
        document = {
            "draft": asdict(draft) if draft else None,
            "messages": [asdict(m) for m in messages],
            "agents": [
                {"id": a.id, "name": a.name, "role": a.role, "expertise": a.expertise}
                for a in agents
            ],
            "exportedAt": datetime.now(timezone.utc).isoformat(),
        }
        return json.dumps(document, indent=2)

    def clear(self) -> None:
        """Blank every draft field and rewind the watermark."""
        self.update_draft(
            content="",
            summary="",
            key_decisions="",
            executive_summary="",
            themes=[],
            consensus_areas="",
            disagreements="",
            recommendations="",
            action_items="",
            open_questions="",
            round_summaries=[],
        )
        # -1: no round folded in yet, so round 0 is eligible again
        self._last_update_round = -1


def build_simple_summary(conversation: Conversation, messages: list[Message], agents: list[Agent]) -> str:
    """Markdown summary that needs no model call."""
    names = {a.id: a.name for a in agents}
    parts = [
        "# Discussion Summary",
        f"\n## Topic\n{conversation.subject}",
        f"\n## Goal\n{conversation.goal}",
        "\n## Participants",
    ]
    parts.extend(f"- {a.name}" for a in agents if not a.is_secretary)

    parts.append("\n## Discussion Highlights")
    highlights = sorted(
        (m for m in messages if m.weight >= _HIGHLIGHT_WEIGHT),
        key=lambda m: m.weight,
        reverse=True,
    )[:_MAX_HIGHLIGHTS]
    if highlights:
        for message in highlights:
            sender = names.get(message.agent_id or "", "Unknown")
            parts.append(f"\n> **{sender}**: {_excerpt(message.content)}")
    else:
        for message in messages[-_FALLBACK_MESSAGES:]:
            sender = names.get(message.agent_id or "", "Unknown")
            parts.append(f"\n**{sender}**: {_excerpt(message.content)}")

    parts.append("\n## Statistics")
    parts.append(f"- Total messages: {len(messages)}")
    parts.append(f"- Rounds completed: {conversation.current_round}")
    parts.append(f"- Session completed: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    return "\n".join(parts)
