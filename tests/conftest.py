from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pytest

from chat_engine.config import ChatConfig
from chat_engine.models import StreamEvent, Turn


def chunk(text: str) -> StreamEvent:
    return StreamEvent(type="chunk", content=text)


def done(text: str = "", message_id: Optional[str] = None) -> StreamEvent:
    return StreamEvent(type="done", content=text, message_id=message_id)


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.001)


class FakeStream:
    """Scripted generation stream.

    ``pause_at`` holds the stream before that event index until ``resume`` is
    set; ``hold`` keeps it open after the last event until ``stop()``.
    """

    def __init__(
        self,
        events: Sequence[StreamEvent],
        *,
        pause_at: Optional[int] = None,
        hold: bool = False,
        error: Optional[Exception] = None,
    ) -> None:
        self.events = list(events)
        self.pause_at = pause_at
        self.hold = hold
        self.error = error
        self.resume = asyncio.Event()
        self.stopped = asyncio.Event()

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for index, event in enumerate(self.events):
            if index == self.pause_at:
                while not (self.resume.is_set() or self.stopped.is_set()):
                    await asyncio.sleep(0.001)
            if self.stopped.is_set():
                return
            yield event
        if self.error is not None:
            raise self.error
        if self.hold:
            await self.stopped.wait()

    def stop(self) -> None:
        self.stopped.set()


class FakeTransport:
    """Hands out one prepared stream per ``generate`` call and records the calls."""

    def __init__(self, *streams: FakeStream) -> None:
        self.streams = list(streams)
        self.calls: List[Dict[str, Any]] = []

    def add(self, stream: FakeStream) -> FakeStream:
        self.streams.append(stream)
        return stream

    def generate(self, conversation_id, context, model_id, attachments=()):
        self.calls.append(
            {
                "conversation_id": conversation_id,
                "context": [dict(m) for m in context],
                "model_id": model_id,
                "attachments": list(attachments),
            }
        )
        return self.streams.pop(0)


class FakeSummarizer:
    def __init__(self, summary: str = "they talked about cats", error: Optional[Exception] = None) -> None:
        self.summary = summary
        self.error = error
        self.calls: List[List[Mapping[str, str]]] = []

    async def summarize(self, turns):
        self.calls.append(list(turns))
        if self.error is not None:
            raise self.error
        return {"summary": self.summary}


class BlockingSummarizer(FakeSummarizer):
    """Holds every summarize call until ``release`` is set."""

    def __init__(self, summary: str = "earlier chatter") -> None:
        super().__init__(summary)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def summarize(self, turns):
        self.entered.set()
        await self.release.wait()
        return await super().summarize(turns)


class FailingPersistence:
    def __init__(self) -> None:
        self.attempts = 0

    async def append_turn(self, conversation_id: str, role: str, text: str) -> Optional[str]:
        self.attempts += 1
        raise RuntimeError("database unavailable")


class FakeMediaDispatch:
    """Returns queued job ids and plays back status payloads per job."""

    def __init__(self, job_ids: Sequence[str] = ("J1",), statuses: Sequence[Mapping[str, Any]] = ()) -> None:
        self.job_ids = list(job_ids)
        self.statuses = list(statuses)
        self.submitted: List[Dict[str, Any]] = []
        self.status_calls: List[str] = []
        self.submit_error: Optional[Exception] = None

    async def submit_image_job(self, prompt, model_id, params):
        return self._submit("image", prompt, model_id, params)

    async def submit_video_job(self, prompt, model_id, params):
        return self._submit("video", prompt, model_id, params)

    def _submit(self, kind, prompt, model_id, params):
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append({"kind": kind, "prompt": prompt, "model_id": model_id, "params": dict(params)})
        return self.job_ids.pop(0) if len(self.job_ids) > 1 else self.job_ids[0]

    async def status_of(self, job_id):
        self.status_calls.append(job_id)
        if len(self.statuses) > 1:
            return dict(self.statuses.pop(0))
        if self.statuses:
            return dict(self.statuses[0])
        return {"status": "generating"}


class FakeStudioDispatch:
    def __init__(self, created: Mapping[str, Any], updates: Sequence[Mapping[str, Any]] = ()) -> None:
        self.created = dict(created)
        self.updates = list(updates)
        self.requests: List[Dict[str, Any]] = []
        self.get_calls = 0

    async def create_job(self, request):
        self.requests.append(dict(request))
        return dict(self.created)

    async def get_job(self, job_id):
        self.get_calls += 1
        if len(self.updates) > 1:
            return dict(self.updates.pop(0))
        if self.updates:
            return dict(self.updates[0])
        return {"status": "generating"}


class FakeTranscript:
    def __init__(self) -> None:
        self.turns: List[Turn] = []

    def append_turn(self, turn: Turn) -> None:
        self.turns.append(turn)

    def replace_turn(self, turn_id: str, turn: Turn) -> None:
        for index, existing in enumerate(self.turns):
            if existing.id == turn_id:
                self.turns[index] = turn
                return
        raise KeyError(turn_id)

    def remove_turn(self, turn_id: str) -> None:
        self.turns = [turn for turn in self.turns if turn.id != turn_id]


@pytest.fixture
def fast_config() -> ChatConfig:
    return ChatConfig(
        reveal_interval=0.001,
        settle_delay=0.0,
        media_poll_interval=0.001,
        studio_poll_interval=0.001,
    )
