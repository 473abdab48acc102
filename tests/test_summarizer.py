import asyncio

import pytest

from errors import SummarizationError
from models import Message, Role
from summarizer import MAX_MESSAGE_CHARS, Summarizer, clip, format_transcript


def _echo_last_line(messages):
    return messages[-1]["content"].splitlines()[-1]


class Recorder:
    def __init__(self, reply=_echo_last_line):
        self.reply = reply
        self.calls = []

    async def __call__(self, messages):
        self.calls.append(messages)
        return self.reply(messages)


def test_format_transcript_uses_role_labels():
    text = format_transcript([
        Message(role=Role.USER, content="hi"),
        Message(role=Role.ASSISTANT, content="hello"),
        Message(role=Role.SYSTEM, content="note"),
    ])
    assert text == "User: hi\nAssistant: hello\nSystem: note"


@pytest.mark.asyncio
async def test_summarize_overflow_skips_empty_input():
    rec = Recorder()
    assert await Summarizer(rec).summarize_overflow([]) == ""
    assert rec.calls == []


@pytest.mark.asyncio
async def test_summarize_overflow_sends_transcript_with_instruction():
    rec = Recorder(lambda m: "  condensed  ")
    out = await Summarizer(rec).summarize_overflow([Message(role=Role.USER, content="my name is Ana")])
    assert out == "condensed"
    system, user = rec.calls[0]
    assert system["role"] == "system"
    assert "same language" in system["content"]
    assert "User: my name is Ana" in user["content"]


@pytest.mark.asyncio
async def test_merge_with_nothing_makes_no_call():
    rec = Recorder()
    assert await Summarizer(rec).merge_summary("", "") == ""
    assert rec.calls == []


@pytest.mark.asyncio
async def test_merge_with_empty_delta_condenses_old_summary_only():
    rec = Recorder()
    out = await Summarizer(rec).merge_summary("user likes tea", "")
    assert out == "user likes tea"
    assert "New conversation" not in rec.calls[0][-1]["content"]


@pytest.mark.asyncio
async def test_merge_includes_old_summary_and_delta():
    rec = Recorder(lambda m: "merged")
    out = await Summarizer(rec).merge_summary("old facts", "User: q\nAssistant: a")
    assert out == "merged"
    prompt = rec.calls[0][-1]["content"]
    assert "old facts" in prompt
    assert "User: q\nAssistant: a" in prompt


@pytest.mark.asyncio
async def test_model_error_is_wrapped():
    async def broken(messages):
        raise RuntimeError("503")

    with pytest.raises(SummarizationError):
        await Summarizer(broken).merge_summary("a", "b")


@pytest.mark.asyncio
async def test_timeout_is_wrapped():
    async def slow(messages):
        await asyncio.sleep(1)
        return "late"

    with pytest.raises(SummarizationError, match="timed out"):
        await Summarizer(slow, timeout=0.01).summarize_overflow([Message(role=Role.USER, content="x")])


@pytest.mark.asyncio
async def test_long_messages_are_clipped_but_none_dropped():
    rec = Recorder(lambda m: "ok")
    huge = [Message(role=Role.USER, content=f"m{i} " + "x" * 5000) for i in range(20)]

    await Summarizer(rec).summarize_overflow(huge)

    transcript = rec.calls[0][-1]["content"]
    assert all(f"User: m{i} " in transcript for i in range(20))
    assert transcript.rstrip().endswith("…")
    assert len(transcript) < 20 * (MAX_MESSAGE_CHARS + 20) + 100


def test_clip_leaves_short_text_alone():
    assert clip("short") == "short"
    assert clip("abcdef", max_chars=3) == "abc…"
