"""Topic files: markdown with optional YAML frontmatter describing a conversation."""

from dataclasses import dataclass, field
from pathlib import Path

import frontmatter

from brainstorm.models import ConversationMode


@dataclass
class Topic:
    subject: str
    goal: str | None = None
    mode: ConversationMode | None = None
    rounds: int | None = None
    speed_ms: int | None = None
    agents: list[str] = field(default_factory=list)


def parse_topic_file(file_path: Path) -> Topic:
    """Parse a topic file.

    The body is the subject. Recognised frontmatter keys: goal, mode,
    rounds, speed_ms and agents (list or comma-separated string). Unset keys
    stay None so CLI flags and config defaults can fill them.

    Raises:
        ValueError: If the body is empty or ``mode`` is unknown.
    """
    post = frontmatter.load(str(file_path))
    subject = post.content.strip()
    if not subject:
        raise ValueError(f"Topic file has no subject text: {file_path}")

    meta = dict(post.metadata)
    agents = meta.get("agents", [])
    if isinstance(agents, str):
        agents = [a.strip() for a in agents.split(",") if a.strip()]

    return Topic(
        subject=subject,
        goal=str(meta["goal"]) if "goal" in meta else None,
        mode=ConversationMode(meta["mode"]) if "mode" in meta else None,
        rounds=int(meta["rounds"]) if "rounds" in meta else None,
        speed_ms=int(meta["speed_ms"]) if "speed_ms" in meta else None,
        agents=[str(a) for a in agents],
    )
