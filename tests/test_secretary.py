"""Unit tests for brainstorm/secretary.py."""

import pytest

from brainstorm.models import Agent, Message, MessageType
from brainstorm.providers.base import ProviderError
from brainstorm.secretary import Secretary, parse_sections

from tests.conftest import MockProvider

RESULT_TEXT = """## Executive Summary
Go with a monorepo.

## Themes
- Tooling cost
- Team autonomy

## Consensus
Shared CI is worth it.

## Disagreements
Release cadence.

## Recommendations
Pilot with two teams.

## Action Items
- Draft a migration plan

## Open Questions
Who owns the build?
"""


@pytest.fixture
def secretary_agent(storage, conversation) -> Agent:
    return storage.add_agent(
        Agent(conversation_id=conversation.id, name="Sec", role="Secretary", model="mock", is_secretary=True, order=9)
    )


def _secretary(storage, events, agent, prompts, provider) -> Secretary:
    return Secretary(agent, provider, storage, events, prompts)


def _transcript(storage, conversation, agents):
    for round_number in range(2):
        for agent in agents:
            storage.add_message(
                Message(conversation_id=conversation.id, content=f"{agent.name} in round {round_number}",
                        round=round_number, agent_id=agent.id)
            )


def test_parse_sections():
    sections = parse_sections(RESULT_TEXT)
    assert sections["executive summary"] == "Go with a monorepo."
    assert sections["themes"] == "- Tooling cost\n- Team autonomy"
    assert list(sections)[-1] == "open questions"
    assert parse_sections("no headings at all") == {}


async def test_round_summary_appended_to_draft(storage, events, conversation, three_agents, secretary_agent,
                                               sample_prompts_config):
    _transcript(storage, conversation, three_agents)
    provider = MockProvider(responses=["- Ada wants a monorepo"])
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, provider)

    summary = await secretary.generate_round_summary(1)

    assert summary == "- Ada wants a monorepo"
    assert storage.get_draft(conversation.id).round_summaries == ["- Ada wants a monorepo"]
    prompt = provider.calls[0][0]["content"]
    assert "Ada in round 1" in prompt
    assert "Ada in round 0" not in prompt


async def test_round_summary_none_for_empty_round(storage, events, conversation, secretary_agent,
                                                  sample_prompts_config):
    provider = MockProvider()
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, provider)
    assert await secretary.generate_round_summary(3) is None
    assert provider.calls == []


async def test_incremental_update_appends(storage, events, conversation, three_agents, secretary_agent,
                                          sample_prompts_config):
    _transcript(storage, conversation, three_agents)
    provider = MockProvider(responses=["First update", "Second update"])
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, provider)

    await secretary.incremental_update(storage.messages_for_round(conversation.id, 0))
    draft = await secretary.incremental_update(storage.messages_for_round(conversation.id, 1))

    assert draft.content == "First update\n\n---\n\nSecond update"
    assert "First update" in provider.calls[1][0]["content"]


async def test_result_draft_fills_structured_fields(storage, events, conversation, three_agents, secretary_agent,
                                                    sample_prompts_config):
    _transcript(storage, conversation, three_agents)
    seen = []
    events.subscribe(seen.append)
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, MockProvider(responses=[RESULT_TEXT]))

    draft = await secretary.generate_result_draft(conversation)

    assert draft.executive_summary == "Go with a monorepo."
    assert draft.summary == "Go with a monorepo."
    assert draft.themes == ["Tooling cost", "Team autonomy"]
    assert draft.consensus_areas == "Shared CI is worth it."
    assert draft.key_decisions == "Shared CI is worth it."
    assert draft.action_items == "- Draft a migration plan"
    assert draft.open_questions == "Who owns the build?"
    assert draft.content == RESULT_TEXT.strip()
    assert seen[-1].payload == draft


async def test_result_draft_skips_summary_messages(storage, events, conversation, three_agents, secretary_agent,
                                                   sample_prompts_config):
    storage.add_message(Message(conversation_id=conversation.id, content="SUMMARY TEXT", round=0,
                                type=MessageType.SUMMARY, agent_id=secretary_agent.id))
    provider = MockProvider(responses=["plain text"])
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, provider)

    draft = await secretary.generate_result_draft(conversation)

    assert "SUMMARY TEXT" not in provider.calls[0][0]["content"]
    assert draft.summary == "plain text"


async def test_provider_failure_propagates(storage, events, conversation, three_agents, secretary_agent,
                                           sample_prompts_config):
    _transcript(storage, conversation, three_agents)
    provider = MockProvider(responses=[ProviderError("mock", "down")])
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, provider)

    with pytest.raises(ProviderError):
        await secretary.generate_round_summary(0)


async def test_decide_rounds_reads_json_in_prose(storage, events, conversation, three_agents, secretary_agent,
                                                 sample_prompts_config):
    _transcript(storage, conversation, three_agents)
    answer = 'Here is my call: {"recommendedRounds": 4, "reasoning": "Pricing needs more debate."}'
    provider = MockProvider(responses=[answer])
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, provider)

    rounds, reasoning = await secretary.decide_rounds(conversation, 0)

    assert (rounds, reasoning) == (4, "Pricing needs more debate.")
    prompt = provider.calls[0][0]["content"]
    assert "Ada in round 0" in prompt
    assert "Ada in round 1" not in prompt


@pytest.mark.parametrize("answer,expected", [
    ('{"recommendedRounds": 40, "reasoning": "x"}', 10),
    ('{"recommendedRounds": 1, "reasoning": "x"}', 2),
    ('{"recommendedRounds": "three", "reasoning": "x"}', 5),
    ("Let us do three more rounds.", 5),
    ("{not json}", 5),
])
async def test_decide_rounds_clamps_and_falls_back(storage, events, conversation, three_agents, secretary_agent,
                                                   sample_prompts_config, answer, expected):
    _transcript(storage, conversation, three_agents)
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, MockProvider(responses=[answer]))

    rounds, reasoning = await secretary.decide_rounds(conversation, 0)

    assert rounds == expected
    assert reasoning


async def test_decide_rounds_without_reasoning(storage, events, conversation, three_agents, secretary_agent,
                                               sample_prompts_config):
    _transcript(storage, conversation, three_agents)
    provider = MockProvider(responses=['{"recommendedRounds": 6}'])
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, provider)

    rounds, reasoning = await secretary.decide_rounds(conversation, 0)

    assert rounds == 6
    assert "6 rounds" in reasoning


async def test_decide_rounds_for_empty_round(storage, events, conversation, secretary_agent, sample_prompts_config):
    provider = MockProvider()
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, provider)

    rounds, _ = await secretary.decide_rounds(conversation, 0)

    assert rounds == 3
    assert provider.calls == []


async def test_decide_rounds_provider_failure_propagates(storage, events, conversation, three_agents,
                                                         secretary_agent, sample_prompts_config):
    _transcript(storage, conversation, three_agents)
    provider = MockProvider(responses=[ProviderError("mock", "down")])
    secretary = _secretary(storage, events, secretary_agent, sample_prompts_config, provider)

    with pytest.raises(ProviderError):
        await secretary.decide_rounds(conversation, 0)
