"""OpenAI provider using openai SDK streaming. Also serves OpenAI-compatible endpoints."""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator

import openai
from openai import AsyncOpenAI

from brainstorm.providers.base import AIProvider, ChatMessage, ProviderError, StreamChunk
from config.config_loader import ModelConfig

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI provider via openai SDK.

    With ``base_url`` set this talks to any OpenAI-compatible API
    (OpenRouter, Ollama, xAI, ...).
    """

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = AsyncOpenAI(
            api_key=api_key,
            base_url=config.base_url,
            timeout=float(config.timeout_sec),
        )

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def stream(
        self,
        messages: list[ChatMessage],
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        start = time.monotonic()
        token_count: int | None = None
        try:
            response = await self._client.chat.completions.create(
                model=self._config.model,
                messages=messages,
                max_tokens=self._config.max_tokens,
                stream=True,
                stream_options={"include_usage": True},
            )
            try:
                async for chunk in response:
                    if cancel is not None and cancel.is_set():
                        return
                    if chunk.usage:
                        token_count = chunk.usage.total_tokens
                    if chunk.choices and chunk.choices[0].delta.content:
                        yield StreamChunk(content=chunk.choices[0].delta.content)
            finally:
                await response.close()
        except openai.APITimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except openai.APIError as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        logger.info("OpenAI %s: %.2fs, %s tokens", self._config.model, time.monotonic() - start, token_count)
        yield StreamChunk(content="", done=True, tokens_used=token_count)
