"""Shared pytest fixtures."""

import asyncio
from pathlib import Path

import pytest

from brainstorm.engine import ConversationEngine
from brainstorm.events import EventChannel
from brainstorm.models import Agent, Conversation, ConversationMode
from brainstorm.providers.base import AIProvider, ChatMessage, StreamChunk
from brainstorm.storage import InMemoryStorage
from config.config_loader import AgentConfig, AppConfig, DefaultsConfig, ModelConfig, PromptsConfig


class MockProvider(AIProvider):
    """Scripted streaming provider.

    Each call consumes the next entry of ``responses``; the last entry is
    reused once the script runs out. An Exception entry is raised instead of
    streamed. Text is streamed word by word, with ``delay`` seconds between
    chunks.
    """

    def __init__(
        self,
        provider_name: str = "mock",
        responses: list[str | Exception] | None = None,
        delay: float = 0.0,
        tokens: int | None = 10,
    ) -> None:
        self._name = provider_name
        self._responses = list(responses) if responses is not None else ["Mock response"]
        self._delay = delay
        self._tokens = tokens
        self.calls: list[list[ChatMessage]] = []

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def stream(self, messages: list[ChatMessage], cancel: asyncio.Event | None = None):
        self.calls.append(messages)
        index = min(len(self.calls) - 1, len(self._responses) - 1)
        item = self._responses[index]
        if isinstance(item, Exception):
            raise item

        words = item.split(" ")
        for position, word in enumerate(words):
            if cancel is not None and cancel.is_set():
                return
            if self._delay:
                await asyncio.sleep(self._delay)
            yield StreamChunk(content=word if position == 0 else f" {word}")
        yield StreamChunk(content="", done=True, tokens_used=self._tokens)


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        agent_system="You are {name}, a {role} ({expertise}). With: {participants}. Topic: {subject}. Goal: {goal}.",
        agent_turn="Round {round}. Speak as {name}.",
        round_summary="Summarise round {round} of {subject}:\n{transcript}",
        incremental_update="Summary so far:\n{existing_summary}\n\nNew:\n{transcript}",
        result_draft="Result for {subject} ({goal}):\n{transcript}",
        closing="Share brief closing thoughts.",
    )


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="openai",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
        base_url=None,
    )


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        mode="round-robin",
        max_rounds=1,
        speed_ms=0,
        output_dir=tmp_path / "output",
        storage_dir=tmp_path / "conversations",
        lock_dir=tmp_path / "locks",
        retry_backoff_sec=0.0,
        recent_messages=12,
    )


@pytest.fixture
def sample_app_config(
    sample_defaults_config: DefaultsConfig,
    sample_prompts_config: PromptsConfig,
) -> AppConfig:
    model_cfg = ModelConfig(
        name="claude",
        sdk="anthropic",
        model="claude-sonnet-4-20250514",
        api_key_env="ANTHROPIC_API_KEY",
        timeout_sec=60,
        max_tokens=4096,
    )
    return AppConfig(
        defaults=sample_defaults_config,
        models={"claude": model_cfg},
        agents=[
            AgentConfig(name="Ada", role="Architect", model="claude"),
            AgentConfig(name="Ben", role="Strategist", model="claude"),
            AgentConfig(name="Secretary", role="Neutral Secretary", model="claude", is_secretary=True),
        ],
        prompts=sample_prompts_config,
        available_providers={"claude"},
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def events() -> EventChannel:
    return EventChannel()


@pytest.fixture
def conversation(storage: InMemoryStorage) -> Conversation:
    return storage.create_conversation(
        Conversation(subject="Monorepo or polyrepo?", goal="Pick one", speed_ms=0)
    )


@pytest.fixture
def three_agents(storage: InMemoryStorage, conversation: Conversation) -> list[Agent]:
    return [
        storage.add_agent(Agent(conversation_id=conversation.id, name=name, role=role, model="mock", order=i))
        for i, (name, role) in enumerate([("Ada", "Architect"), ("Bob", "Builder"), ("Cleo", "Critic")])
    ]


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


def roster(*names: str, secretary: bool = False) -> list[AgentConfig]:
    agents = [AgentConfig(name=name, role=f"{name} role", model="mock") for name in names]
    if secretary:
        agents.append(AgentConfig(name="Secretary", role="Neutral Secretary", model="mock", is_secretary=True))
    return agents


def make_engine(
    storage: InMemoryStorage,
    prompts: PromptsConfig,
    provider: AIProvider,
    names: tuple[str, ...] = ("Ada", "Bob", "Cleo"),
    mode: ConversationMode = ConversationMode.ROUND_ROBIN,
    max_rounds: int | None = 1,
    secretary: bool = False,
    **kwargs,
) -> ConversationEngine:
    """Engine with every agent on ``provider``, no pacing and no retry backoff."""
    return ConversationEngine.create(
        subject="Monorepo or polyrepo?",
        goal="Pick one",
        agents=roster(*names, secretary=secretary),
        storage=storage,
        providers={"mock": provider},
        prompts=prompts,
        mode=mode,
        max_rounds=max_rounds,
        speed_ms=0,
        include_secretary=secretary,
        retry_backoff_sec=0.0,
        **kwargs,
    )
