"""Turn orchestration — from a submitted message list to a streamed answer.

``ChatService.start_turn`` does everything that can still fail cleanly
(validation, session resolution, assembly, opening the model stream and
waiting for its first chunk) so those failures surface as ordinary error
responses.  The returned ``Turn`` then streams events:

    {"type": "start", "sessionId": ...}
    {"type": "text-delta", "delta": ...}   (repeated)
    {"type": "finish"} | {"type": "error", "errorText": ...}

Persistence runs only once the model stream is exhausted.  A client
disconnect closes the event generator, which closes the model stream and
skips persistence entirely.

There is no per-session lock: concurrent turns on one session both append,
and the last summary write wins.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

import worker
from assembler import ContextAssembler, make_title
from context_manager import TokenCounter, WindowTrimmer, content_to_text, load_encoder
from errors import ChatError, CompletionError, InputError, SessionNotFoundError, TurnTimeoutError
from history_store import HistoryStore, create_store
from llm import CompletionClient
from models import Session, TurnContext, TurnStage
from persistence import TurnPersistence
from settings import settings
from summarizer import Summarizer

logger = logging.getLogger(__name__)

StreamFn = Callable[[list[dict]], AsyncIterator[str]]


# --------------------------------------------------------------------------
#  Request parsing
# --------------------------------------------------------------------------

@dataclass
class TurnRequest:
    messages: list[dict]
    session_id: str | None = None
    user_id: str | None = None


def message_text(msg: dict) -> str:
    """Text of a client message: its text parts, else its ``content``."""
    parts = msg.get("parts")
    if isinstance(parts, list):
        texts = [str(p.get("text", "")) for p in parts
                 if isinstance(p, dict) and p.get("type") == "text"]
        if texts:
            return "".join(texts)
    return content_to_text(msg.get("content"))


def _user_texts(messages) -> list[str]:
    if not isinstance(messages, list):
        return []
    return [message_text(m) for m in messages
            if isinstance(m, dict) and m.get("role") == "user"]


def latest_user_text(messages) -> str:
    texts = _user_texts(messages)
    return texts[-1].strip() if texts else ""


def first_user_text(messages) -> str:
    texts = _user_texts(messages)
    return texts[0] if texts else ""


# --------------------------------------------------------------------------
#  Streaming turn
# --------------------------------------------------------------------------

class Turn:
    """A turn whose model stream is open and whose first chunk is known."""

    def __init__(self, service: "ChatService", ctx: TurnContext, stream: AsyncIterator[str],
                 first_chunk: str | None, deadline: float):
        self.service = service
        self.ctx = ctx
        self._stream = stream
        self._first_chunk = first_chunk
        self._deadline = deadline

    @property
    def session_id(self) -> str:
        return self.ctx.session_id

    async def aclose(self) -> None:
        aclose = getattr(self._stream, "aclose", None)
        if aclose is not None:
            try:
                await aclose()
            except Exception as e:
                logger.debug("[%s] error closing model stream: %s", self.session_id, e)

    async def events(self) -> AsyncIterator[dict]:
        ctx = self.ctx
        ctx.stage = TurnStage.STREAMING
        chunks: list[str] = []
        try:
            yield {"type": "start", "sessionId": ctx.session_id}
            chunk = self._first_chunk
            while chunk is not None:
                if chunk:
                    chunks.append(chunk)
                    yield {"type": "text-delta", "delta": chunk}
                chunk = await self.service._next_chunk(self._stream, self._deadline, ctx)
        except ChatError as e:
            ctx.stage = TurnStage.FAILED
            logger.error("[%s] turn failed mid-stream after %d chunks: %s",
                         ctx.session_id, len(chunks), e)
            yield {"type": "error", "errorText": e.public_message}
            return
        finally:
            await self.aclose()

        ctx.stage = TurnStage.COMPLETED
        await self.service._after_stream(ctx, "".join(chunks))
        yield {"type": "finish"}


class ChatService:
    def __init__(
        self,
        store: HistoryStore,
        assembler: ContextAssembler,
        persistence: TurnPersistence,
        stream_fn: StreamFn,
        turn_timeout: float = 30.0,
        persist_user_before_stream: bool = True,
        persist_in_background: bool = True,
    ):
        self.store = store
        self.assembler = assembler
        self.persistence = persistence
        self.stream_fn = stream_fn
        self.turn_timeout = turn_timeout
        self.persist_user_before_stream = persist_user_before_stream
        self.persist_in_background = persist_in_background

    @classmethod
    def from_settings(cls, store: HistoryStore | None = None,
                      client: CompletionClient | None = None) -> "ChatService":
        store = store or create_store()
        client = client or CompletionClient()
        counter = TokenCounter(load_encoder(settings.TOKENIZER_MODEL, settings.TOKENIZER_FALLBACK_MODEL))
        summarizer = Summarizer(client.complete, timeout=settings.SUMMARY_TIMEOUT_SECONDS)
        assembler = ContextAssembler(
            store=store,
            trimmer=WindowTrimmer(counter),
            summarizer=summarizer,
            system_preamble=settings.SYSTEM_PROMPT,
            budget_tokens=settings.HISTORY_TOKEN_BUDGET,
            title_max_chars=settings.TITLE_MAX_CHARS,
        )
        return cls(
            store=store,
            assembler=assembler,
            persistence=TurnPersistence(store, summarizer),
            stream_fn=client.stream,
            turn_timeout=settings.TURN_TIMEOUT_SECONDS,
            persist_user_before_stream=settings.PERSIST_USER_BEFORE_STREAM,
        )

    # ── deadline helpers ───────────────────────────────────────

    def _remaining(self, deadline: float) -> float:
        return max(deadline - asyncio.get_running_loop().time(), 0.0)

    async def _within(self, deadline: float, aw, ctx_session: str, stage: TurnStage):
        try:
            return await asyncio.wait_for(aw, self._remaining(deadline))
        except asyncio.TimeoutError as e:
            raise TurnTimeoutError(f"turn exceeded {self.turn_timeout}s",
                                   session_id=ctx_session, stage=stage.value) from e

    async def _next_chunk(self, stream: AsyncIterator[str], deadline: float,
                          ctx: TurnContext) -> str | None:
        try:
            return await self._within(deadline, stream.__anext__(), ctx.session_id, ctx.stage)
        except StopAsyncIteration:
            return None
        except ChatError:
            raise
        except Exception as e:
            raise CompletionError(f"completion stream failed: {e}",
                                  session_id=ctx.session_id, stage=ctx.stage.value) from e

    # ── turn lifecycle ─────────────────────────────────────────

    async def start_turn(self, request: TurnRequest) -> Turn:
        current_input = latest_user_text(request.messages)
        if not current_input:
            raise InputError("No valid user input found.", stage=TurnStage.IDLE.value)

        deadline = asyncio.get_running_loop().time() + self.turn_timeout
        session_id, created = await self._within(
            deadline,
            self.assembler.resolve_session(request.session_id, request.user_id,
                                           first_user_text(request.messages)),
            request.session_id or "-", TurnStage.IDLE,
        )
        ctx = await self._within(deadline, self.assembler.assemble(session_id, current_input),
                                 session_id, TurnStage.SESSION_RESOLVED)
        logger.info("[%s] %s: window=%d messages, summary=%d chars, new_session=%s",
                    session_id, ctx.stage.value, len(ctx.window), len(ctx.merged_summary), created)

        if self.persist_user_before_stream:
            await self.persistence.record_user_message(ctx)

        stream = self.stream_fn(ctx.to_prompt())
        ctx.stage = TurnStage.STREAMING
        try:
            first = await self._next_chunk(stream, deadline, ctx)
        except ChatError as e:
            ctx.stage = TurnStage.FAILED
            logger.error("[%s] completion failed before any output: %s", session_id, e)
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
            raise
        return Turn(self, ctx, stream, first, deadline)

    async def _after_stream(self, ctx: TurnContext, assistant_text: str) -> None:
        if not assistant_text:
            logger.warning("[%s] completion produced no text; nothing to persist", ctx.session_id)
            return
        if self.persist_in_background:
            worker.submit(self.persistence.complete_turn, ctx, assistant_text)
        else:
            await self.persistence.complete_turn(ctx, assistant_text)

    async def run_turn(self, request: TurnRequest) -> tuple[str, str]:
        """Consume a whole turn; returns ``(session_id, assistant_text)``."""
        turn = await self.start_turn(request)
        parts = []
        async for event in turn.events():
            if event["type"] == "text-delta":
                parts.append(event["delta"])
            elif event["type"] == "error":
                raise CompletionError(event["errorText"], session_id=turn.session_id,
                                      stage=TurnStage.FAILED.value)
        return turn.session_id, "".join(parts)

    # ── queries ────────────────────────────────────────────────

    async def get_history(self, session_id: str | None) -> list[dict]:
        if not session_id:
            raise InputError("Session ID is required")
        messages = await self.store.get_all(session_id)
        return [m.to_api() for m in messages]

    async def list_sessions(self, user_id: str | None, limit: int = 50) -> list[Session]:
        if not user_id:
            raise InputError("User ID is required")
        return await self.store.list_sessions(user_id, limit)

    async def get_session(self, session_id: str) -> Session:
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
        return session

    async def create_session(self, user_id: str | None, title: str | None = None) -> Session:
        if not user_id:
            raise InputError("User ID is required")
        sid = await self.store.create_session(user_id, make_title(title or "", self.assembler.title_max_chars))
        return await self.get_session(sid)

    async def rename_session(self, session_id: str, title: str | None) -> Session:
        if not title or not title.strip():
            raise InputError("Title is required")
        session = await self.store.rename_session(session_id, title.strip())
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
        return session

    async def delete_session(self, session_id: str) -> None:
        if not await self.store.delete_session(session_id):
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
