"""Per-turn context assembly.

    session → (history ∥ summary) → trim → [overflow digest] → TurnContext

The overflow digest is turn-scoped: it is shown to the model now and only
reaches storage through the post-turn summary merge.
"""
from __future__ import annotations

import asyncio
import logging

from context_manager import WindowTrimmer, without_current_input
from errors import InputError, SummarizationError
from history_store import HistoryStore
from models import TurnContext, TurnStage
from summarizer import Summarizer

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Chat"


def make_title(text: str, max_chars: int = 50) -> str:
    text = (text or "").strip()
    if not text:
        return DEFAULT_TITLE
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + "..."


class ContextAssembler:
    def __init__(
        self,
        store: HistoryStore,
        trimmer: WindowTrimmer,
        summarizer: Summarizer,
        system_preamble: str,
        budget_tokens: int = 1500,
        title_max_chars: int = 50,
    ):
        self.store = store
        self.trimmer = trimmer
        self.summarizer = summarizer
        self.system_preamble = system_preamble
        self.budget_tokens = budget_tokens
        self.title_max_chars = title_max_chars

    async def resolve_session(
        self,
        session_id: str | None,
        user_id: str | None,
        first_user_text: str,
    ) -> tuple[str, bool]:
        """Return ``(session_id, created)``; creates a session when none is given."""
        if session_id:
            return session_id, False
        if not user_id:
            raise InputError("User ID is required for new sessions", stage=TurnStage.IDLE.value)
        title = make_title(first_user_text, self.title_max_chars)
        new_id = await self.store.create_session(user_id, title)
        logger.info("New session %s (%r) for user %s", new_id, title, user_id)
        return new_id, True

    async def assemble(self, session_id: str, current_input: str) -> TurnContext:
        history, persisted_summary = await asyncio.gather(
            self.store.get_all(session_id),
            self.store.get_summary(session_id),
        )
        logger.debug("[%s] %s: %d messages, summary %d chars", session_id,
                     TurnStage.HISTORY_LOADED.value, len(history), len(persisted_summary))

        window = self.trimmer.trim(history, self.budget_tokens)
        # Overflow stays unfiltered so older copies of the input still get summarised.
        in_window = without_current_input(window.messages, current_input)

        overflow_summary = ""
        if window.overflow:
            try:
                overflow_summary = await self.summarizer.summarize_overflow(window.overflow)
            except SummarizationError as e:
                # Older history is simply unavailable this turn.
                logger.warning("[%s] %s: overflow summary failed, dropping %d messages: %s",
                               session_id, TurnStage.WINDOW_COMPUTED.value,
                               len(window.overflow), e)

        return TurnContext(
            session_id=session_id,
            system_preamble=self.system_preamble,
            current_input=current_input,
            window=in_window,
            persisted_summary=persisted_summary,
            overflow_summary=overflow_summary,
        )
