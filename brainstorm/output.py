"""Rich console output and markdown/JSON export of conversations."""

import json
import logging
import re
from dataclasses import asdict
from datetime import datetime
from itertools import groupby
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from brainstorm.models import Agent, Conversation, Message, MessageType, ResultDraft

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def _speaker(message: Message, names: dict[str, str]) -> str:
    if message.type is MessageType.INTERJECTION:
        return "User"
    if message.type in (MessageType.SYSTEM, MessageType.OPENING):
        return "Moderator"
    return names.get(message.agent_id or "", "Unknown")


def print_message(message: Message, agents: list[Agent]) -> None:
    """Print one finished message as a panel."""
    names = {a.id: a.name for a in agents}
    roles = {a.id: a.role for a in agents}
    speaker = _speaker(message, names)
    subtitle = roles.get(message.agent_id or "", message.type.value)
    style = "dim" if message.type is MessageType.SUMMARY else "cyan"
    console.print(Panel(Markdown(message.content), title=f"[bold]{speaker}[/bold]", subtitle=subtitle, border_style=style))


def print_round_header(round_number: int) -> None:
    console.print(Rule(f"[bold cyan]Round {round_number + 1}[/bold cyan]"))


def print_result(conversation: Conversation, draft: ResultDraft | None) -> None:
    """Print the final draft to the console using Rich markdown."""
    console.print(Rule("[bold green]Result[/bold green]"))
    console.print(
        Text(
            f"Subject: {conversation.subject} | "
            f"Mode: {conversation.mode.value} | "
            f"Rounds: {conversation.current_round} | "
            f"Status: {conversation.status.value}",
            style="dim",
        )
    )
    if draft is None or not draft.content:
        console.print("[yellow]No result draft was produced.[/yellow]")
        return
    console.print(Markdown(draft.content))


def render_markdown(
    conversation: Conversation,
    agents: list[Agent],
    messages: list[Message],
    draft: ResultDraft | None,
) -> str:
    """Full transcript: header, participants, result and messages grouped by round."""
    names = {a.id: a.name for a in agents}
    participants = [a for a in agents if not a.is_secretary]

    lines: list[str] = [
        f"# AI Brainstorm: {conversation.subject[:80]}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Goal:** {conversation.goal}",
        f"**Mode:** {conversation.mode.value}",
        f"**Rounds:** {conversation.current_round}",
        f"**Status:** {conversation.status.value}",
        "",
        "## Participants",
        "",
    ]
    lines += [f"- **{a.name}**, {a.role} ({a.model})" for a in participants]
    lines += ["", "---", ""]

    if draft is not None and draft.summary:
        lines += ["## Summary", "", draft.summary, ""]
    if draft is not None and draft.key_decisions:
        lines += ["## Key Decisions", "", draft.key_decisions, ""]

    for round_number, round_messages in groupby(messages, key=lambda m: m.round):
        lines.append(f"## Round {round_number + 1}")
        lines.append("")
        for message in round_messages:
            label = _speaker(message, names)
            if message.type is MessageType.SUMMARY:
                label += " (round summary)"
            lines.append(f"### {label}")
            lines.append("")
            lines.append(message.content)
            lines.append("")

    if draft is not None and draft.content:
        lines += ["## Result", "", draft.content, ""]

    return "\n".join(lines)


def render_json(
    conversation: Conversation,
    agents: list[Agent],
    messages: list[Message],
    draft: ResultDraft | None,
) -> str:
    document = {
        "conversation": asdict(conversation),
        "agents": [asdict(a) for a in agents],
        "messages": [asdict(m) for m in messages],
        "draft": asdict(draft) if draft else None,
        "exportedAt": datetime.now().isoformat(),
    }
    return json.dumps(document, indent=2)


def save_to_file(markdown: str, subject: str, output_dir: Path) -> Path:
    """Write ``markdown`` to ``<output_dir>/<timestamp>_<slug>.md`` and return the path."""
    output_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = output_dir / f"{timestamp}_{_slug(subject) or 'conversation'}.md"
    filepath.write_text(markdown, encoding="utf-8")
    logger.info("Conversation saved to: %s", filepath)
    return filepath
