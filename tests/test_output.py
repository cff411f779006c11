"""Tests for brainstorm/output.py."""

import json
from pathlib import Path

import pytest

from brainstorm.models import Agent, Message, MessageType, ResultDraft
from brainstorm.output import _slug, render_json, render_markdown, save_to_file


def test_slug_basic():
    assert _slug("Should we use YAML or JSON?") == "should-we-use-yaml-or-json"


def test_slug_max_len():
    assert len(_slug("a" * 100)) <= 40


def test_slug_special_chars():
    result = _slug("API vs. SDK (2024)")
    assert "." not in result
    assert "(" not in result


@pytest.fixture
def transcript(conversation, three_agents):
    ada, bob, _ = three_agents
    secretary = Agent(conversation_id=conversation.id, name="Sec", role="Secretary", is_secretary=True)
    agents = [*three_agents, secretary]
    messages = [
        Message(conversation_id=conversation.id, content="Welcome", round=0, type=MessageType.OPENING),
        Message(conversation_id=conversation.id, content="Monorepo please", round=0, agent_id=ada.id),
        Message(conversation_id=conversation.id, content="What about cost?", round=0,
                type=MessageType.INTERJECTION),
        Message(conversation_id=conversation.id, content="- cost raised", round=0, type=MessageType.SUMMARY,
                agent_id=secretary.id),
        Message(conversation_id=conversation.id, content="Polyrepo scales teams", round=1, agent_id=bob.id),
    ]
    draft = ResultDraft(conversation_id=conversation.id, content="## Executive Summary\nMonorepo.",
                        summary="Monorepo.", key_decisions="Adopt a monorepo")
    return agents, messages, draft


def test_render_markdown_structure(conversation, transcript):
    agents, messages, draft = transcript

    text = render_markdown(conversation, agents, messages, draft)

    assert text.startswith("# AI Brainstorm: Monorepo or polyrepo?")
    assert "**Goal:** Pick one" in text
    assert "- **Ada**, Architect (mock)" in text
    assert "- **Sec**" not in text
    assert text.index("## Round 1") < text.index("## Round 2") < text.index("## Result")
    assert "### Moderator\n\nWelcome" in text
    assert "### User\n\nWhat about cost?" in text
    assert "### Sec (round summary)" in text
    assert "## Key Decisions\n\nAdopt a monorepo" in text


def test_render_markdown_without_draft(conversation, transcript):
    agents, messages, _ = transcript
    text = render_markdown(conversation, agents, messages, None)
    assert "## Result" not in text
    assert "## Summary" not in text


def test_render_json(conversation, transcript):
    agents, messages, draft = transcript

    document = json.loads(render_json(conversation, agents, messages, draft))

    assert document["conversation"]["subject"] == "Monorepo or polyrepo?"
    assert document["conversation"]["status"] == "idle"
    assert len(document["messages"]) == 5
    assert document["messages"][2]["type"] == "interjection"
    assert document["draft"]["key_decisions"] == "Adopt a monorepo"


def test_save_to_file_creates_file(tmp_path: Path):
    saved = save_to_file("# Hello", "Monorepo or polyrepo?", tmp_path / "output")
    assert saved.exists()
    assert saved.suffix == ".md"
    assert saved.name.endswith("_monorepo-or-polyrepo.md")
    assert saved.read_text(encoding="utf-8") == "# Hello"


def test_save_to_file_creates_output_dir(tmp_path: Path):
    output_dir = tmp_path / "nested" / "output"
    save_to_file("x", "topic", output_dir)
    assert output_dir.exists()


def test_save_to_file_empty_slug(tmp_path: Path):
    saved = save_to_file("x", "???", tmp_path)
    assert saved.name.endswith("_conversation.md")
