import asyncio
import logging

import pytest

from chat_engine.exceptions import MediaDispatchError
from chat_engine.models import MediaKind, Role, StreamEvent, Turn, TurnStatus
from chat_engine.persistence import InMemoryPersistence
from chat_engine.registry import ModelInfo, ModelRegistry
from chat_engine.service import ChatService
from chat_engine.session import SessionState
from conftest import (
    BlockingSummarizer,
    FailingPersistence,
    FakeMediaDispatch,
    FakeStream,
    FakeSummarizer,
    FakeTransport,
    chunk,
    done,
    wait_until,
)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
async def service(transport, fast_config):
    svc = ChatService(
        transport,
        config=fast_config,
        persistence=InMemoryPersistence(),
        media_dispatch=FakeMediaDispatch(statuses=[{"status": "completed", "resultUrl": "X"}]),
    )
    yield svc
    await svc.aclose()


async def test_send_streams_reply_into_transcript(service, transport):
    transport.add(FakeStream([chunk("Hi "), chunk("there"), done("Hi there", message_id="m1")]))
    frames = []
    service.add_listener(frames.append)

    session = await service.send("Hello")
    await session.wait()

    frame = service.frame()
    assert [(t.role, t.text) for t in frame.turns] == [(Role.USER, "Hello"), (Role.ASSISTANT, "Hi there")]
    assert frame.turns[-1].id == "m1"
    assert not frame.is_streaming
    assert frame.streaming_text == ""
    assert 0 <= frame.usage_percent <= 100
    # the finished turn and the streaming indicator are never shown together
    assert not any(f.is_streaming and any(t.id == "m1" for t in f.turns) for f in frames)
    assert all("Hi there".startswith(f.streaming_text) for f in frames)
    records = service.persistence.records[frame.conversation_id]
    assert [(r["role"], r["content"]) for r in records] == [("user", "Hello")]


async def test_send_creates_conversation_with_requested_model(service, transport):
    transport.add(FakeStream([done("ok")]))

    session = await service.send("Hello", model_id="model-b")
    await session.wait()

    conversation = service.conversations[service.active_conversation_id]
    assert conversation.model_id == "model-b"
    assert transport.calls[0]["model_id"] == "model-b"
    assert transport.calls[0]["context"] == [{"role": "user", "content": "Hello"}]


async def test_empty_send_is_ignored(service, transport):
    assert await service.send("   ") is None
    assert service.conversations == {}
    assert transport.calls == []


async def test_send_while_streaming_is_rejected(service, transport):
    transport.add(FakeStream([chunk("working")], hold=True))
    session = await service.send("first")
    conversation_id = session.conversation_id

    assert await service.send("second", conversation_id=conversation_id) is None
    assert [t.text for t in service.frame().turns] == ["first"]


async def test_stop_appends_partial_turn(service, transport):
    transport.add(FakeStream([chunk("Hello, "), chunk("how")], hold=True))
    session = await service.send("Hi")
    await wait_until(lambda: session.buffer == "Hello, how")

    turn = await service.stop()

    frame = service.frame()
    assert turn.text == "Hello, how\n\n_(stopped midway)_"
    assert frame.turns[-1] is turn
    assert turn.status is TurnStatus.STOPPED
    assert not frame.is_streaming
    records = service.persistence.records[frame.conversation_id]
    assert records[-1]["content"] == turn.text


async def test_switching_conversation_mid_stream_leaks_nothing(service, transport):
    stream = transport.add(FakeStream([chunk("partial")], hold=True))
    session = await service.send("question for A")
    first_id = session.conversation_id
    await wait_until(lambda: session.buffer == "partial")

    other = service.create_conversation()
    frames = []
    service.add_listener(frames.append)
    service.open(other.id)
    await session.wait()

    assert stream.stopped.is_set()
    assert service.conversations[other.id].turns == []
    assert [t.text for t in service.conversations[first_id].turns] == ["question for A"]
    assert all(f.conversation_id == other.id and f.streaming_text == "" for f in frames)
    assert not service.frame().is_streaming


async def test_persistence_failure_does_not_block_generation(transport, fast_config, caplog):
    persistence = FailingPersistence()
    svc = ChatService(transport, config=fast_config, persistence=persistence)
    transport.add(FakeStream([chunk("fine"), done("fine")]))

    with caplog.at_level(logging.ERROR, logger="chat_engine.service"):
        session = await svc.send("Hello")
        await session.wait()
        await svc.aclose()

    conversation = svc.conversations[session.conversation_id]
    assert [t.text for t in conversation.turns] == ["Hello", "fine"]
    assert persistence.attempts == 1
    assert "Failed to save user message" in caplog.text


async def test_failed_generation_can_be_retried(service, transport):
    transport.add(FakeStream([StreamEvent(type="error", message="upstream 502")]))
    transport.add(FakeStream([chunk("second try"), done("second try")]))

    first = await service.send("Hello")
    await first.wait()
    frame = service.frame()
    user_turn = frame.turns[0]
    assert frame.failure is not None
    assert frame.failure.user_turn_id == user_turn.id
    assert frame.failure.message == "upstream 502"
    assert [t.text for t in frame.turns] == ["Hello"]

    second = await service.retry()
    await second.wait()

    frame = service.frame()
    assert frame.failure is None
    assert [t.text for t in frame.turns] == ["Hello", "second try"]
    assert transport.calls[0]["context"] == transport.calls[1]["context"]


async def test_retry_without_failure_does_nothing(service, transport):
    transport.add(FakeStream([done("ok")]))
    session = await service.send("Hello")
    await session.wait()

    assert await service.retry() is None
    assert len(transport.calls) == 1


async def test_edit_truncates_and_regenerates(service, transport):
    conversation = service.create_conversation()
    conversation.turns = [
        Turn(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, text=f"turn {i}", id=f"t{i}") for i in range(5)
    ]
    service.open(conversation.id)
    stream = transport.add(FakeStream([chunk("new answer"), done("new answer")], pause_at=0))

    session = await service.edit("t2", "turn 2, reworded")
    assert [t.id for t in conversation.turns] == ["t0", "t1", "t2"]
    assert conversation.turns[2].text == "turn 2, reworded"

    stream.resume.set()
    await session.wait()

    assert [t.text for t in conversation.turns][-1] == "new answer"
    assert len(conversation.turns) == 4
    assert transport.calls[0]["context"] == [
        {"role": "user", "content": "turn 0"},
        {"role": "assistant", "content": "turn 1"},
        {"role": "user", "content": "turn 2, reworded"},
    ]


async def test_regenerate_replaces_the_last_reply(service, transport):
    transport.add(FakeStream([done("first answer", message_id="a1")]))
    transport.add(FakeStream([done("second answer", message_id="a2")]))
    session = await service.send("question")
    await session.wait()

    session = await service.regenerate("a1")
    await session.wait()

    assert [t.text for t in service.frame().turns] == ["question", "second answer"]
    assert transport.calls[1]["context"] == [{"role": "user", "content": "question"}]


async def test_rewind_is_rejected_while_streaming(service, transport):
    transport.add(FakeStream([chunk("busy")], hold=True))
    session = await service.send("question")
    user_turn = service.frame().turns[0]

    assert await service.edit(user_turn.id, "changed") is None
    assert await service.regenerate("anything") is None
    assert service.frame().turns[0].text == "question"
    assert session.is_live


def _tiny_budget_service(transport, fast_config, summarizer):
    registry = ModelRegistry(
        [ModelInfo(id="tiny", display_name="Tiny", max_context_tokens=4_042)],
        response_reserve_tokens=4_000,
    )
    svc = ChatService(transport, config=fast_config, registry=registry, summarizer=summarizer)
    conversation = svc.create_conversation("tiny")
    conversation.turns = [
        Turn(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, text="x" * 40, id=f"t{i}") for i in range(7)
    ]
    svc.open(conversation.id)
    return svc, conversation


async def test_stop_during_compaction_prevents_generation(transport, fast_config):
    summarizer = BlockingSummarizer()
    svc, conversation = _tiny_budget_service(transport, fast_config, summarizer)

    pending = asyncio.get_running_loop().create_task(svc.send("y" * 40))
    await summarizer.entered.wait()
    assert await svc.stop() is None
    summarizer.release.set()

    assert await pending is None
    assert transport.calls == []
    assert conversation.turns[-1].text == "y" * 40
    assert not svc.frame().is_streaming

    transport.add(FakeStream([done("ok")]))
    session = await svc.send("again")
    await session.wait()
    await svc.aclose()

    assert conversation.turns[-1].text == "ok"


async def test_rewind_is_rejected_during_compaction(transport, fast_config):
    summarizer = BlockingSummarizer()
    svc, conversation = _tiny_budget_service(transport, fast_config, summarizer)
    transport.add(FakeStream([done("answer")]))

    pending = asyncio.get_running_loop().create_task(svc.send("y" * 40))
    await summarizer.entered.wait()

    assert await svc.edit("t0", "changed") is None
    assert await svc.regenerate("t5") is None
    assert conversation.turns[0].text == "x" * 40
    assert len(conversation.turns) == 8

    summarizer.release.set()
    session = await pending
    await session.wait()
    await svc.aclose()

    assert conversation.turns[-1].text == "answer"


async def test_stop_while_finalizing_lets_reply_land_once(service, transport, fast_config):
    fast_config.settle_delay = 0.05
    transport.add(FakeStream([chunk("done already"), done("done already", message_id="m1")]))
    session = await service.send("Hi")
    await wait_until(lambda: session.state is SessionState.FINALIZING)

    assert await service.stop() is None
    assert service.frame().is_streaming
    await session.wait()

    frame = service.frame()
    assert [t.text for t in frame.turns] == ["Hi", "done already"]
    assert frame.turns[-1].status is TurnStatus.COMPLETE
    records = service.persistence.records[frame.conversation_id]
    assert [r["role"] for r in records] == ["user"]


async def test_blank_media_prompt_leaves_transcript_untouched(service):
    conversation = service.create_conversation()
    service.open(conversation.id)

    with pytest.raises(ValueError):
        await service.submit_media(MediaKind.IMAGE, "   ")

    assert conversation.turns == []


async def test_rewinding_past_failed_media_drops_its_retry(service, transport):
    transport.add(FakeStream([done("first")]))
    transport.add(FakeStream([done("second")]))
    session = await service.send("question")
    await session.wait()
    service.media_dispatch.submit_error = MediaDispatchError("quota exceeded")
    await service.submit_media(MediaKind.IMAGE, "a red fox")
    conversation = service.conversations[session.conversation_id]
    failed = conversation.turns[-1]
    assert failed.status is TurnStatus.FAILED

    session = await service.edit(conversation.turns[0].id, "question, reworded")
    await session.wait()

    assert failed.id not in {t.id for t in conversation.turns}
    with pytest.raises(KeyError):
        await service.retry_media(failed.id)


async def test_failure_is_cleared_when_its_turn_is_rewound(service, transport):
    transport.add(FakeStream([StreamEvent(type="error", message="upstream 502")]))
    transport.add(FakeStream([done("fixed")]))
    first = await service.send("Hello")
    await first.wait()
    conversation_id = first.conversation_id
    user_turn = service.frame().turns[0]

    session = await service.edit(user_turn.id, "Hello again")
    await session.wait()
    other = service.create_conversation()
    service.open(other.id)
    service.open(conversation_id)

    assert service.frame().failure is None
    assert await service.retry() is None


async def test_compaction_uses_registry_budget(transport, fast_config):
    registry = ModelRegistry(
        [ModelInfo(id="tiny", display_name="Tiny", max_context_tokens=4_042)],
        response_reserve_tokens=4_000,
    )
    summarizer = FakeSummarizer(summary="earlier chatter")
    svc = ChatService(transport, config=fast_config, registry=registry, summarizer=summarizer)
    conversation = svc.create_conversation("tiny")
    conversation.turns = [
        Turn(role=Role.USER if i % 2 == 0 else Role.ASSISTANT, text="x" * 40) for i in range(7)
    ]
    svc.open(conversation.id)
    transport.add(FakeStream([done("ok")]))

    session = await svc.send("y" * 40)
    await session.wait()
    usage = svc.frame().usage_percent
    await svc.aclose()

    context = transport.calls[0]["context"]
    assert context[0] == {"role": "system", "content": "Summary of earlier conversation:\nearlier chatter"}
    assert len(context) == 4
    assert len(summarizer.calls) == 1
    assert usage == 100


async def test_media_result_lands_in_transcript(service):
    conversation = service.create_conversation()
    service.open(conversation.id)

    job_id = await service.submit_media(MediaKind.IMAGE, "a red fox")
    await wait_until(lambda: any(t.media for t in conversation.turns))

    assert job_id == "J1"
    assert [t.text for t in conversation.turns] == ["a red fox", "a red fox"]
    assert conversation.turns[-1].media == ("X",)


async def test_leaving_view_stops_media_polls(transport, fast_config):
    dispatch = FakeMediaDispatch()
    svc = ChatService(transport, config=fast_config, media_dispatch=dispatch)
    first = svc.create_conversation()
    second = svc.create_conversation()
    svc.open(first.id)

    await svc.submit_media(MediaKind.VIDEO, "slow video")
    await wait_until(lambda: len(dispatch.status_calls) >= 1)
    svc.open(second.id)
    calls = len(dispatch.status_calls)
    await asyncio.sleep(0.02)
    await svc.aclose()

    assert len(dispatch.status_calls) == calls
    assert second.turns == []
    assert first.turns[-1].status is TurnStatus.PENDING


async def test_history_and_listing(service, transport):
    transport.add(FakeStream([StreamEvent(type="title", title="Greeting"), done("hi", message_id="m1")]))
    session = await service.send("hello")
    await session.wait()
    conversation_id = session.conversation_id

    history = service.get_history(conversation_id)
    listing = service.list_conversations()

    assert history["title"] == "Greeting"
    assert [m["content"] for m in history["messages"]] == ["hello", "hi"]
    assert history["is_streaming"] is False
    assert listing[0]["conversation_id"] == conversation_id
    assert listing[0]["message_count"] == 2
    with pytest.raises(ValueError):
        service.get_history("missing")
