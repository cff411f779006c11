"""Anthropic Claude provider using anthropic SDK with native async streaming."""

import asyncio
import logging
import os
import time
from collections.abc import AsyncIterator

import anthropic as anthropic_sdk

from brainstorm.providers.base import AIProvider, ChatMessage, ProviderError, StreamChunk
from config.config_loader import ModelConfig

logger = logging.getLogger(__name__)


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        api_key = os.environ.get(config.api_key_env, "").strip()
        if not api_key:
            raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
        self._client = anthropic_sdk.AsyncAnthropic(api_key=api_key, timeout=float(config.timeout_sec))

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    async def stream(
        self,
        messages: list[ChatMessage],
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamChunk]:
        # Anthropic takes the system prompt separately from the turns
        system = "\n\n".join(m["content"] for m in messages if m["role"] == "system")
        turns = [{"role": m["role"], "content": m["content"]} for m in messages if m["role"] != "system"]
        if not turns:
            turns = [{"role": "user", "content": "Begin."}]

        start = time.monotonic()
        try:
            async with self._client.messages.stream(
                model=self._config.model,
                max_tokens=self._config.max_tokens,
                system=system or anthropic_sdk.NOT_GIVEN,
                messages=turns,
            ) as stream:
                async for text in stream.text_stream:
                    if cancel is not None and cancel.is_set():
                        return
                    if text:
                        yield StreamChunk(content=text)
                final = await stream.get_final_message()
        except anthropic_sdk.APITimeoutError as exc:
            raise ProviderError(self._config.name, f"Request timed out after {self._config.timeout_sec}s") from exc
        except anthropic_sdk.APIError as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        token_count: int | None = None
        if final.usage:
            token_count = final.usage.input_tokens + final.usage.output_tokens

        logger.info("Anthropic %s: %.2fs, %s tokens", self._config.model, time.monotonic() - start, token_count)
        yield StreamChunk(content="", done=True, tokens_used=token_count)
