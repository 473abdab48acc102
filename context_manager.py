"""Token-budget context management — token counting and window trimming.

Why this module exists
----------------------
Every turn re-sends prior messages to the model.  Without a token budget a
long conversation silently overflows the model's window.  This module
decides which suffix of the history fits, and reports the rest as overflow
so the caller can fold it into the rolling summary instead of losing it.

Token counting
--------------
Counts come from the tiktoken encoding of the configured model
(``gpt-4o-mini``), falling back to a secondary profile (``gpt-4``), then to
``cl100k_base``.  When no tiktoken encoding can be loaded (e.g. offline with
an empty cache) the counter degrades to the ``len(text) // 4`` estimate.
The encoder is loaded once per process and injected into ``TokenCounter``.

Public API
----------
    estimate_tokens(text)                    → int
    load_encoder(primary, fallback)          → encoder with .encode(text)
    TokenCounter(encoder).count(msg)         → int
    TokenCounter(encoder).count_all(msgs)    → int
    WindowTrimmer(counter).trim(history, budget_tokens) → Window
    without_current_input(history, text)     → list[Message]
"""

from __future__ import annotations

import functools
import json
import logging
from typing import Any, Iterable

import tiktoken

from models import Message, Role, Window

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------
#  Constants
# --------------------------------------------------------------------------

# Characters-per-token approximation.  4 chars ≈ 1 GPT token for English.
_CHARS_PER_TOKEN: int = 4

# Last-resort tiktoken encoding when neither model profile resolves.
_BASE_ENCODING: str = "cl100k_base"


# --------------------------------------------------------------------------
#  Token estimation
# --------------------------------------------------------------------------

def estimate_tokens(text: str) -> int:
    """Estimate token count from character length (chars / 4)."""
    if not text:
        return 0
    return max(1, len(text) // _CHARS_PER_TOKEN)


class CharEstimateEncoder:
    """Stand-in encoder used when no tiktoken encoding can be loaded."""

    name = "char-estimate"

    def encode(self, text: str) -> list[int]:
        return [0] * estimate_tokens(text)


@functools.lru_cache(maxsize=None)
def load_encoder(primary: str = "gpt-4o-mini", fallback: str = "gpt-4"):
    """Return the shared encoder for *primary*, falling back to *fallback*.

    Cached for the process lifetime; encoders are read-only and safe to share
    between concurrent requests.
    """
    for model in (primary, fallback):
        try:
            enc = tiktoken.encoding_for_model(model)
            logger.info("Token counter using tiktoken encoding %s (model=%s)", enc.name, model)
            return enc
        except Exception as e:
            logger.warning("Tokenizer for model %s unavailable: %s", model, e)
    try:
        return tiktoken.get_encoding(_BASE_ENCODING)
    except Exception as e:
        logger.warning("tiktoken %s unavailable (%s) — using char estimate", _BASE_ENCODING, e)
    return CharEstimateEncoder()


# --------------------------------------------------------------------------
#  Token counting
# --------------------------------------------------------------------------

def content_to_text(content: Any) -> str:
    """Flatten message content (string, list of parts, anything) to text."""
    if isinstance(content, str):
        return content
    if content is None:
        return ""
    if isinstance(content, list):
        parts = []
        for p in content:
            if isinstance(p, dict) and p.get("type") == "text":
                parts.append(str(p.get("text", "")))
            elif isinstance(p, str):
                parts.append(p)
            else:
                parts.append(json.dumps(p, default=str))
        return " ".join(parts)
    return str(content)


class TokenCounter:
    """Counts role label + content tokens for messages.

    Accepts ``Message`` objects or OpenAI-format dicts.  Never raises.
    """

    def __init__(self, encoder):
        self._encoder = encoder

    def count_text(self, text: Any) -> int:
        text = content_to_text(text)
        if not text:
            return 0
        try:
            return len(self._encoder.encode(text))
        except Exception as e:
            logger.debug("Encoder failed (%s) — estimating %d chars", e, len(text))
            return estimate_tokens(text)

    def count(self, message) -> int:
        if isinstance(message, Message):
            role, content = message.role.value, message.content
        else:
            role = message.get("role", "")
            role = role.value if isinstance(role, Role) else str(role or "")
            content = message.get("content", "")
        return self.count_text(role) + self.count_text(content)

    def count_all(self, messages: Iterable) -> int:
        return sum(self.count(m) for m in messages)


# --------------------------------------------------------------------------
#  Window trimming
# --------------------------------------------------------------------------

def without_current_input(history: list[Message], current_input: str) -> list[Message]:
    """Drop user messages identical to the turn's own input from a window.

    A stale reload can return the input already persisted; it is presented to
    the model once, as the current input.  Applied after trimming, so the
    overflow keeps older copies for the summary.
    """
    return [
        m for m in history
        if not (m.role is Role.USER and m.content == current_input)
    ]


class WindowTrimmer:
    """Selects the newest messages that fit a token budget ("last" strategy)."""

    def __init__(self, counter: TokenCounter):
        self.counter = counter

    def trim(self, history: list[Message], budget_tokens: int) -> Window:
        """Split *history* into the maximal in-budget suffix and the overflow.

        Walks backwards from the newest message and stops at the first one that
        would push the running total over *budget_tokens*.  Messages are never
        cut in half, so the window may be empty when the newest message alone
        exceeds the budget.
        """
        if not history:
            return Window(messages=[], overflow=[])

        budget = max(budget_tokens, 0)
        used = 0
        cut = len(history)
        for i in range(len(history) - 1, -1, -1):
            cost = self.counter.count(history[i])
            if used + cost > budget:
                break
            used += cost
            cut = i

        window = list(history[cut:])
        overflow = list(history[:cut])
        if overflow:
            logger.info(
                "Context budget: %d oldest messages overflow the %d-token budget "
                "(kept %d, %d tokens)",
                len(overflow), budget, len(window), used,
            )
        return Window(messages=window, overflow=overflow)
