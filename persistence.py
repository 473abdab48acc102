"""Post-turn persistence.

By default the user message is recorded before streaming starts; the
assistant message and the summary update only after the stream is
exhausted.  A turn that fails or is cancelled mid-stream therefore leaves
the user's words in the log and no partial assistant text.  With
PERSIST_USER_BEFORE_STREAM off, both messages are appended together at the
end instead.  Every step is best-effort: failures are
logged with the session id and step, never raised.
"""
from __future__ import annotations

import logging

from errors import ChatError
from history_store import HistoryStore
from models import Message, Role, TurnContext, TurnStage
from summarizer import Summarizer, clip

logger = logging.getLogger(__name__)


def turn_delta(ctx: TurnContext, assistant_text: str) -> str:
    """Text folded into the persisted summary for one completed turn."""
    return "\n".join(p for p in (
        ctx.overflow_summary,
        f"{Role.USER.transcript_label}: {clip(ctx.current_input)}",
        f"{Role.ASSISTANT.transcript_label}: {clip(assistant_text)}",
    ) if p)


class TurnPersistence:
    def __init__(self, store: HistoryStore, summarizer: Summarizer):
        self.store = store
        self.summarizer = summarizer

    async def record_user_message(self, ctx: TurnContext) -> bool:
        try:
            await self.store.append(ctx.session_id, Message(role=Role.USER, content=ctx.current_input))
        except Exception as e:
            logger.error("[%s] %s: could not record user message: %s",
                         ctx.session_id, ctx.stage.value, e)
            return False
        ctx.user_message_recorded = True
        return True

    async def complete_turn(self, ctx: TurnContext, assistant_text: str) -> None:
        if not assistant_text:
            return
        await self._append_turn(ctx, assistant_text)
        await self._update_summary(ctx, assistant_text)

    async def _append_turn(self, ctx: TurnContext, assistant_text: str) -> None:
        batch = [Message(role=Role.ASSISTANT, content=assistant_text)]
        if not ctx.user_message_recorded:
            batch.insert(0, Message(role=Role.USER, content=ctx.current_input))
        try:
            await self.store.append_many(ctx.session_id, batch)
        except Exception as e:
            logger.error("[%s] %s: could not append turn messages: %s",
                         ctx.session_id, TurnStage.COMPLETED.value, e)

    async def _update_summary(self, ctx: TurnContext, assistant_text: str) -> None:
        try:
            summary = await self.summarizer.merge_summary(
                ctx.persisted_summary, turn_delta(ctx, assistant_text)
            )
        except ChatError as e:
            logger.warning("[%s] %s: summary merge failed, keeping old summary: %s",
                           ctx.session_id, TurnStage.COMPLETED.value, e)
            return
        if not summary:
            return
        try:
            await self.store.set_summary(ctx.session_id, summary)
        except Exception as e:
            logger.error("[%s] %s: could not store summary: %s",
                         ctx.session_id, TurnStage.COMPLETED.value, e)
