"""Interfaces of the collaborators the engine consumes.

Concrete HTTP implementations live in :mod:`chat_engine.llm_client` and
:mod:`chat_engine.persistence`; tests substitute in-process fakes.
"""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Dict,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    runtime_checkable,
)

if TYPE_CHECKING:
    from .models import StreamEvent, Turn


@runtime_checkable
class GenerationStream(Protocol):
    """Async iterator of decoded stream events that can be aborted."""

    def __aiter__(self) -> AsyncIterator["StreamEvent"]: ...

    def stop(self) -> None: ...


class GenerationTransport(Protocol):
    def generate(
        self,
        conversation_id: str,
        context: Sequence[Mapping[str, str]],
        model_id: str,
        attachments: Sequence[str] = (),
    ) -> GenerationStream: ...


class Summarizer(Protocol):
    async def summarize(self, turns: Sequence[Mapping[str, str]]) -> Mapping[str, Any]: ...


class Persistence(Protocol):
    async def append_turn(self, conversation_id: str, role: str, text: str) -> Optional[str]: ...


class MediaDispatch(Protocol):
    async def submit_image_job(self, prompt: str, model_id: str, params: Mapping[str, Any]) -> str: ...

    async def submit_video_job(self, prompt: str, model_id: str, params: Mapping[str, Any]) -> str: ...

    async def status_of(self, job_id: str) -> Mapping[str, Any]: ...


class StudioDispatch(Protocol):
    async def create_job(self, request: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def get_job(self, job_id: str) -> Dict[str, Any]: ...


class TranscriptSink(Protocol):
    """Where media results are folded back into a conversation."""

    turns: List["Turn"]

    def append_turn(self, turn: "Turn") -> None: ...

    def replace_turn(self, turn_id: str, turn: "Turn") -> None: ...

    def remove_turn(self, turn_id: str) -> None: ...
