"""Abstract base for all model providers."""

import asyncio
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass

ChatMessage = dict[str, str]   # {"role": "system" | "user" | "assistant", "content": ...}


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"[{provider_name}] {message}")


@dataclass
class StreamChunk:
    content: str
    done: bool = False
    tokens_used: int | None = None     # set on the terminal chunk when the API reports usage


@dataclass
class Completion:
    content: str
    tokens_used: int | None
    latency_sec: float


class AIProvider(ABC):
    """Abstract base for all model providers."""

    @abstractmethod
    def name(self) -> str:
        """Return the configured provider name (e.g. 'claude', 'openai')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        """Return the actual model identifier string."""
        ...

    @abstractmethod
    def stream(
        self,
        messages: list[ChatMessage],
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion.

        Yields zero or more text chunks followed by exactly one chunk with
        ``done=True``. Once ``cancel`` is set no further chunks are yielded.

        Raises:
            ProviderError: On API failure, timeout, or invalid response.
        """
        ...

    async def complete(self, messages: list[ChatMessage]) -> Completion:
        """Non-streamed call built on :meth:`stream`."""
        start = time.monotonic()
        parts: list[str] = []
        tokens: int | None = None
        async for chunk in self.stream(messages):
            parts.append(chunk.content)
            if chunk.done:
                tokens = chunk.tokens_used
        content = "".join(parts)
        if not content.strip():
            raise ProviderError(self.name(), "Empty response content")
        return Completion(content=content, tokens_used=tokens, latency_sec=time.monotonic() - start)
