"""Shared pytest fixtures and fakes."""
from __future__ import annotations

import asyncio

import pytest

from assembler import ContextAssembler
from chat_service import ChatService
from context_manager import TokenCounter, WindowTrimmer
from history_store import InMemoryHistoryStore
from models import Message, Role
from persistence import TurnPersistence
from summarizer import Summarizer


class WordEncoder:
    """One token per whitespace-separated word."""

    name = "words"

    def encode(self, text: str) -> list[int]:
        return [0] * len(text.split())


class FakeModel:
    """Completion service double: scripted stream plus a summarizer reply."""

    def __init__(self, chunks=("Hi", " there"), fail_after=None, first_delay=0.0,
                 chunk_delay=0.0, summary="digest", summary_error=None):
        self.chunks = list(chunks)
        self.fail_after = fail_after
        self.first_delay = first_delay
        self.chunk_delay = chunk_delay
        self.summary = summary
        self.summary_error = summary_error
        self.prompts: list[list[dict]] = []
        self.summary_prompts: list[list[dict]] = []
        self.closed = False

    async def stream(self, messages):
        self.prompts.append(messages)
        try:
            if self.first_delay:
                await asyncio.sleep(self.first_delay)
            for i, chunk in enumerate(self.chunks):
                if self.fail_after is not None and i == self.fail_after:
                    raise RuntimeError("model exploded")
                if i and self.chunk_delay:
                    await asyncio.sleep(self.chunk_delay)
                yield chunk
            if self.fail_after is not None and self.fail_after >= len(self.chunks):
                raise RuntimeError("model exploded")
        finally:
            self.closed = True

    async def complete(self, messages):
        self.summary_prompts.append(messages)
        if self.summary_error is not None:
            raise self.summary_error
        if callable(self.summary):
            return self.summary(messages)
        return self.summary


def msg(role: str, words: int, tag: str = "w") -> Message:
    return Message(role=Role(role), content=" ".join([tag] * words))


@pytest.fixture
def counter():
    return TokenCounter(WordEncoder())


@pytest.fixture
def trimmer(counter):
    return WindowTrimmer(counter)


@pytest.fixture
def store():
    return InMemoryHistoryStore()


@pytest.fixture
def model():
    return FakeModel()


def build_service(store, model, *, budget=1500, turn_timeout=5.0, summary_timeout=None,
                  persist_user_before_stream=True):
    summarizer = Summarizer(model.complete, timeout=summary_timeout)
    assembler = ContextAssembler(
        store=store,
        trimmer=WindowTrimmer(TokenCounter(WordEncoder())),
        summarizer=summarizer,
        system_preamble="You are a test assistant.",
        budget_tokens=budget,
    )
    return ChatService(
        store=store,
        assembler=assembler,
        persistence=TurnPersistence(store, summarizer),
        stream_fn=model.stream,
        turn_timeout=turn_timeout,
        persist_user_before_stream=persist_user_before_stream,
        persist_in_background=False,
    )


@pytest.fixture
def service(store, model):
    return build_service(store, model)
