"""Conversation, turn and job records shared across the engine."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


def new_id(prefix: str = "") -> str:
    return f"{prefix}{uuid.uuid4().hex}"


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class TurnStatus(str, Enum):
    COMPLETE = "complete"
    PENDING = "pending"
    STOPPED = "stopped"
    FAILED = "failed"


class MediaKind(str, Enum):
    IMAGE = "image"
    VIDEO = "video"


class JobStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.PENDING


class StudioMode(str, Enum):
    IMAGE = "image"
    VIDEO = "video"
    FRAME_TO_VIDEO = "frame_to_video"
    VIDEO_MIX = "video_mix"


class StudioJobStatus(str, Enum):
    QUEUED = "queued"
    GENERATING = "generating"
    DOWNLOADING = "downloading"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (StudioJobStatus.COMPLETED, StudioJobStatus.FAILED, StudioJobStatus.CANCELLED)


@dataclass(frozen=True)
class Turn:
    """One authored message. Replaced, never edited in place."""

    role: Role
    text: str
    id: str = field(default_factory=lambda: new_id("turn-"))
    media: tuple = ()
    model_id: Optional[str] = None
    status: TurnStatus = TurnStatus.COMPLETE
    error: Optional[str] = None
    created_at: float = field(default_factory=time.time)
    response_seconds: Optional[float] = None

    def as_message(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.text}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role.value,
            "content": self.text,
            "media": list(self.media),
            "model_id": self.model_id,
            "status": self.status.value,
            "error": self.error,
            "created_at": self.created_at,
            "response_seconds": self.response_seconds,
        }


@dataclass
class Conversation:
    id: str
    model_id: str
    turns: List[Turn] = field(default_factory=list)
    title: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def index_of(self, turn_id: str) -> int:
        for index, turn in enumerate(self.turns):
            if turn.id == turn_id:
                return index
        raise KeyError(f"No turn '{turn_id}' in conversation '{self.id}'")

    def get(self, turn_id: str) -> Turn:
        return self.turns[self.index_of(turn_id)]

    def append_turn(self, turn: Turn) -> None:
        self.turns.append(turn)
        self.updated_at = time.time()

    def replace_turn(self, turn_id: str, turn: Turn) -> None:
        self.turns[self.index_of(turn_id)] = turn
        self.updated_at = time.time()

    def remove_turn(self, turn_id: str) -> None:
        del self.turns[self.index_of(turn_id)]
        self.updated_at = time.time()


@dataclass
class MediaJob:
    """A chat-inline image or video job, kept only until it reaches a terminal state."""

    id: str
    kind: MediaKind
    prompt: str
    model_id: str
    placeholder_turn_id: str
    params: Dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    result_urls: List[str] = field(default_factory=list)
    error: Optional[str] = None


@dataclass
class StudioJob:
    job_id: str
    prompt: str
    mode: StudioMode = StudioMode.IMAGE
    status: StudioJobStatus = StudioJobStatus.QUEUED
    model: Optional[str] = None
    result_file: Optional[str] = None
    download_url: Optional[str] = None
    error: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StudioJob":
        return cls(
            job_id=str(payload["job_id"]),
            prompt=payload.get("prompt", ""),
            mode=StudioMode(payload.get("mode", StudioMode.IMAGE.value)),
            status=StudioJobStatus(payload.get("status", StudioJobStatus.QUEUED.value)),
            model=payload.get("model"),
            result_file=payload.get("result_file"),
            download_url=payload.get("download_url"),
            error=payload.get("error"),
            created_at=payload.get("created_at", ""),
            updated_at=payload.get("updated_at", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "prompt": self.prompt,
            "mode": self.mode.value,
            "status": self.status.value,
            "model": self.model,
            "result_file": self.result_file,
            "download_url": self.download_url,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class StreamEvent:
    """A decoded event delivered by a generation transport."""

    type: str
    content: str = ""
    message_id: Optional[str] = None
    message: Optional[str] = None
    title: Optional[str] = None
    search_results: tuple = ()

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "StreamEvent":
        return cls(
            type=str(payload.get("type", "")),
            content=payload.get("content") or "",
            message_id=payload.get("messageId") or payload.get("message_id"),
            message=payload.get("message"),
            title=payload.get("title"),
            search_results=tuple(payload.get("searchResults") or ()),
        )


@dataclass(frozen=True)
class GenerationFailure:
    """A retryable generation error scoped to the user turn that triggered it."""

    conversation_id: str
    user_turn_id: Optional[str]
    message: str
    retryable: bool = True
