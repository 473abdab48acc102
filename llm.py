"""Completion-service client (OpenAI-compatible chat completions).

One ``CompletionClient`` is shared by the whole process.  ``stream`` feeds the
user-visible response, ``complete`` serves as the summarizer's completion
function.
"""
from __future__ import annotations

import logging
from typing import AsyncIterator

from errors import CompletionError
from settings import settings

logger = logging.getLogger(__name__)


class CompletionClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ):
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.base_url = base_url or settings.OPENAI_BASE_URL or None
        self.model = model or settings.OPENAI_MODEL
        self.temperature = settings.LLM_TEMPERATURE if temperature is None else temperature
        self.max_tokens = max_tokens or settings.LLM_MAX_TOKENS
        self._client = None

    def _get_client(self):
        """Lazy-initialize the async OpenAI client."""
        if self._client is None:
            from openai import AsyncOpenAI

            if not self.api_key:
                raise CompletionError("OPENAI_API_KEY is not configured")
            self._client = AsyncOpenAI(api_key=self.api_key, base_url=self.base_url)
        return self._client

    async def stream(self, messages: list[dict]) -> AsyncIterator[str]:
        """Yield text deltas of a streamed chat completion."""
        client = self._get_client()
        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
                stream=True,
            )
        except Exception as e:
            raise CompletionError(f"completion request failed: {e}") from e

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta and delta.content:
                    yield delta.content
        except Exception as e:
            raise CompletionError(f"completion stream failed: {e}") from e
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                try:
                    await close()
                except Exception as e:
                    logger.debug("Error closing completion stream: %s", e)

    async def complete(self, messages: list[dict]) -> str:
        """Return the full text of a non-streamed completion."""
        client = self._get_client()
        try:
            resp = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                temperature=0.2,
            )
        except Exception as e:
            raise CompletionError(f"completion request failed: {e}") from e
        if not resp.choices:
            raise CompletionError("completion service returned no choices")
        return resp.choices[0].message.content or ""
