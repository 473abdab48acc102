import pytest

from assembler import make_title
from errors import InputError, SummarizationError
from models import Message, Role

from conftest import FakeModel, build_service, msg


def test_make_title():
    assert make_title("short question") == "short question"
    long_text = "a" * 60
    assert make_title(long_text) == "a" * 50 + "..."
    assert make_title("b" * 50) == "b" * 50
    assert make_title("   ") == "New Chat"


@pytest.mark.asyncio
async def test_empty_history_makes_no_summary_call(store):
    model = FakeModel()
    service = build_service(store, model)
    sid = await store.create_session("u1", "t")

    ctx = await service.assembler.assemble(sid, "first question")

    assert ctx.window == []
    assert model.summary_prompts == []
    assert ctx.to_prompt() == [
        {"role": "system", "content": "You are a test assistant."},
        {"role": "user", "content": "first question"},
    ]


@pytest.mark.asyncio
async def test_overflow_is_summarized_and_merged(store, counter):
    model = FakeModel(summary="overflow digest")
    service = build_service(store, model, budget=1500)
    sid = await store.create_session("u1", "t")
    # 10 messages of 200 tokens each (1 role + 199 words) = 2000 tokens.
    history = [msg("user" if i % 2 == 0 else "assistant", 199, tag=f"t{i}") for i in range(10)]
    await store.append_many(sid, history)
    await store.set_summary(sid, "persisted facts")

    ctx = await service.assembler.assemble(sid, "next question")

    assert counter.count_all(ctx.window) <= 1500
    assert ctx.window == history[3:]
    assert ctx.overflow_summary == "overflow digest"
    assert ctx.merged_summary == "persisted facts\noverflow digest"
    prompt = ctx.to_prompt()
    assert "persisted facts\noverflow digest" in prompt[1]["content"]
    assert prompt[-1] == {"role": "user", "content": "next question"}
    transcript = model.summary_prompts[0][-1]["content"]
    assert "t0" in transcript and "t3" not in transcript


@pytest.mark.asyncio
async def test_current_input_never_duplicated(store):
    service = build_service(store, FakeModel())
    sid = await store.create_session("u1", "t")
    await store.append_many(sid, [
        Message(role=Role.USER, content="hi"),
        Message(role=Role.ASSISTANT, content="hey"),
        Message(role=Role.USER, content="what is 2+2?"),
    ])

    ctx = await service.assembler.assemble(sid, "what is 2+2?")

    prompt = ctx.to_prompt()
    occurrences = [m for m in prompt if m["role"] == "user" and m["content"] == "what is 2+2?"]
    assert len(occurrences) == 1
    assert [m.content for m in ctx.window] == ["hi", "hey"]


@pytest.mark.asyncio
async def test_every_overflow_message_reaches_the_summarizer(store):
    model = FakeModel(summary="digest")
    service = build_service(store, model, budget=300)
    sid = await store.create_session("u1", "t")
    # 151 tokens each; only the newest fits the window.
    history = [msg("user" if i % 2 == 0 else "assistant", 150, tag=f"t{i}") for i in range(40)]
    await store.append_many(sid, history)

    ctx = await service.assembler.assemble(sid, "next")

    assert ctx.window == history[39:]
    transcript = model.summary_prompts[0][-1]["content"]
    assert all(f"t{i} " in transcript for i in range(39))
    assert "t39" not in transcript


@pytest.mark.asyncio
async def test_earlier_copy_of_input_in_overflow_is_still_summarized(store):
    model = FakeModel(summary="digest")
    service = build_service(store, model, budget=5)
    sid = await store.create_session("u1", "t")
    await store.append_many(sid, [
        Message(role=Role.USER, content="yes"),
        Message(role=Role.ASSISTANT, content="booked flight to Oslo for you"),
        Message(role=Role.USER, content="thanks"),
        Message(role=Role.ASSISTANT, content="np"),
    ])

    ctx = await service.assembler.assemble(sid, "yes")

    assert [m.content for m in ctx.window] == ["thanks", "np"]
    transcript = model.summary_prompts[0][-1]["content"]
    assert "User: yes\nAssistant: booked flight to Oslo for you" in transcript


@pytest.mark.asyncio
async def test_summarizer_failure_degrades_to_old_summary(store):
    model = FakeModel(summary_error=RuntimeError("model down"))
    service = build_service(store, model, budget=10)
    sid = await store.create_session("u1", "t")
    await store.append_many(sid, [msg("user", 20), msg("assistant", 3)])
    await store.set_summary(sid, "old summary")

    ctx = await service.assembler.assemble(sid, "go on")

    assert ctx.overflow_summary == ""
    assert ctx.merged_summary == "old summary"
    assert len(ctx.window) == 1
    assert ctx.to_prompt()[-1]["content"] == "go on"


@pytest.mark.asyncio
async def test_summarizer_timeout_degrades(store):
    model = FakeModel(summary_error=SummarizationError("timed out"))
    service = build_service(store, model, budget=5)
    sid = await store.create_session("u1", "t")
    await store.append_many(sid, [msg("user", 20)])

    ctx = await service.assembler.assemble(sid, "go on")
    assert ctx.merged_summary == ""
    assert ctx.window == []


@pytest.mark.asyncio
async def test_resolve_session_creates_titled_session(store):
    service = build_service(store, FakeModel())
    first = "Please explain how the rolling summary works in this chat application"

    sid, created = await service.assembler.resolve_session(None, "u1", first)

    assert created is True
    session = await store.get_session(sid)
    assert session.title == first[:50] + "..."
    assert session.user_id == "u1"


@pytest.mark.asyncio
async def test_resolve_session_keeps_supplied_id(store):
    service = build_service(store, FakeModel())
    assert await service.assembler.resolve_session("abc", None, "x") == ("abc", False)
    assert store.sessions == {}


@pytest.mark.asyncio
async def test_new_session_requires_user_id(store):
    service = build_service(store, FakeModel())
    with pytest.raises(InputError):
        await service.assembler.resolve_session(None, None, "hello")
