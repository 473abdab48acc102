"""Rolling conversation summary — condensation via the completion service.

Two operations, one prompt:

    summarize_overflow(messages)  → digest of messages trimmed out of the window
    merge_summary(old, delta)     → fully re-condensed replacement summary

Both raise ``SummarizationError`` on any model failure or timeout.  Callers
decide how to degrade (see ``assembler`` and ``persistence``).
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

from context_manager import estimate_tokens
from errors import SummarizationError
from models import Message

logger = logging.getLogger(__name__)

CompletionFn = Callable[[list[dict]], Awaitable[str]]

_SUMMARIZE_SYSTEM = (
    "You condense conversations. Keep only the essential facts: topics, "
    "decisions, facts the user shared about themselves, and open questions. "
    "Write in the same language as the conversation. Be as short as possible. "
    "Output ONLY the summary, with no preamble or labels."
)

# Per-message character cap inside a transcript; every message stays in.
MAX_MESSAGE_CHARS: int = 1200


def clip(text: str, max_chars: int = MAX_MESSAGE_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "…"


def format_transcript(messages: list[Message]) -> str:
    return "\n".join(f"{m.role.transcript_label}: {clip(m.content)}" for m in messages)


class Summarizer:
    def __init__(self, completion_fn: CompletionFn, timeout: float | None = None):
        self._complete = completion_fn
        self.timeout = timeout

    async def _condense(self, user_text: str) -> str:
        prompt = [
            {"role": "system", "content": _SUMMARIZE_SYSTEM},
            {"role": "user", "content": user_text},
        ]
        try:
            if self.timeout:
                text = await asyncio.wait_for(self._complete(prompt), self.timeout)
            else:
                text = await self._complete(prompt)
        except asyncio.TimeoutError as e:
            raise SummarizationError(f"summarization timed out after {self.timeout}s") from e
        except SummarizationError:
            raise
        except Exception as e:
            raise SummarizationError(f"summarization failed: {e}") from e
        return (text or "").strip()

    async def summarize_overflow(self, messages: list[Message]) -> str:
        if not messages:
            return ""
        summary = await self._condense(
            f"Condense the following conversation:\n\n{format_transcript(messages)}"
        )
        logger.info(
            "Condensed %d overflow messages into ~%d-token digest",
            len(messages), estimate_tokens(summary),
        )
        return summary

    async def merge_summary(self, old_summary: str, delta: str) -> str:
        """Fold *delta* into *old_summary*, returning a replacement summary.

        An empty delta condenses the old summary alone; with nothing on either
        side no model call is made.
        """
        old_summary = (old_summary or "").strip()
        delta = (delta or "").strip()
        if not old_summary and not delta:
            return ""
        if not delta:
            request = f"Condense this summary:\n{old_summary}"
        else:
            request = (
                f"Existing summary:\n{old_summary or '(no earlier history)'}\n\n"
                f"New conversation to incorporate:\n{delta}\n\n"
                "Return the updated summary, complete and as short as possible."
            )
        return await self._condense(request)
