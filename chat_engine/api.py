"""FastAPI entry point for the chat engine."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, validator

from .config import ChatConfig
from .exceptions import MediaDispatchError
from .llm_client import (
    ChatLLMClient,
    HTTPGenerationTransport,
    HTTPMediaDispatch,
    HTTPStudioDispatch,
    HTTPSummarizer,
)
from .models import MediaKind, Role, StudioMode
from .persistence import HTTPPersistence
from .registry import ModelRegistry
from .service import ChatService, ViewFrame
from .session import GenerationSession
from .utils import setup_logging

logger = logging.getLogger(__name__)


class ChatRequest(BaseModel):
    conversation_id: Optional[str] = Field(None, description="Existing conversation; a new one is created when omitted.")
    message: str = Field(..., description="User message to send to the model.")
    model_id: Optional[str] = Field(None, description="Model override for this conversation.")
    attachments: List[str] = Field(default_factory=list, description="Locators of attached files.")

    @validator("message")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class EditRequest(BaseModel):
    turn_id: str
    message: str

    @validator("turn_id", "message")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class RegenerateRequest(BaseModel):
    turn_id: str


class MediaRequest(BaseModel):
    kind: MediaKind = MediaKind.IMAGE
    prompt: str
    model_id: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)

    @validator("prompt")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class StudioRequest(BaseModel):
    prompt: str
    mode: StudioMode = StudioMode.IMAGE
    model: Optional[str] = None
    aspect_ratio: str = "16:9"
    image_url: Optional[str] = None
    end_image_url: Optional[str] = None

    @validator("prompt")
    def _not_empty(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("field must not be empty")
        return value


class HistoryResponse(BaseModel):
    conversation_id: str
    title: str = ""
    model_id: str
    messages: List[dict] = Field(default_factory=list)
    is_streaming: bool = False
    updated_at: float


def build_service(chat_config: ChatConfig, registry: Optional[ModelRegistry] = None) -> ChatService:
    """Wire a ChatService to the HTTP collaborators described by ``chat_config``."""
    client = ChatLLMClient(chat_config.llm)
    return ChatService(
        HTTPGenerationTransport(client),
        config=chat_config,
        registry=registry,
        summarizer=HTTPSummarizer(client, chat_config.summarise_prompt),
        persistence=HTTPPersistence(chat_config.llm),
        media_dispatch=HTTPMediaDispatch(client),
        studio_dispatch=HTTPStudioDispatch(client),
    )


def create_app(
    chat_config: Optional[ChatConfig] = None,
    *,
    service: Optional[ChatService] = None,
    registry: Optional[ModelRegistry] = None,
    log_dir: Optional[str] = None,
) -> FastAPI:
    if log_dir:
        setup_logging(log_dir, logging.INFO)

    chat_service = service or build_service(chat_config or ChatConfig(), registry)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        await app.state.service.aclose()

    app = FastAPI(title="Chat Engine", version="0.1.0", lifespan=lifespan)
    app.state.service = chat_service

    @app.get("/health")
    async def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/models")
    async def models() -> List[Dict[str, Any]]:
        return [
            {
                "id": model.id,
                "display_name": model.display_name,
                "provider_icon": model.provider_icon,
                "max_context_tokens": app.state.service.registry.max_context_tokens(model.id),
                "kind": model.kind.value,
            }
            for model in app.state.service.registry.models()
        ]

    @app.post("/chat")
    async def chat(request: ChatRequest):
        svc: ChatService = app.state.service
        logger.info("Chat request for conversation %s", request.conversation_id or "(new)")
        try:
            session = await svc.send(
                request.message,
                conversation_id=request.conversation_id,
                model_id=request.model_id,
                attachments=request.attachments,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except Exception as exc:
            logger.exception("Chat request failed (conversation_id=%s)", request.conversation_id)
            raise HTTPException(status_code=500, detail="Chat request failed") from exc
        return _reply(svc, session)

    @app.post("/chat/{conversation_id}/stop")
    async def stop(conversation_id: str) -> Dict[str, Any]:
        svc: ChatService = app.state.service
        _require_known(svc, conversation_id)
        if svc.active_conversation_id != conversation_id:
            raise HTTPException(status_code=409, detail="Conversation is not displayed")
        turn = await svc.stop()
        return {"turn": turn.to_dict() if turn else None}

    @app.post("/chat/{conversation_id}/edit")
    async def edit(conversation_id: str, request: EditRequest):
        svc = _open(app.state.service, conversation_id)
        session = await _started(svc.edit(request.turn_id, request.message))
        return _reply(svc, session)

    @app.post("/chat/{conversation_id}/regenerate")
    async def regenerate(conversation_id: str, request: RegenerateRequest):
        svc = _open(app.state.service, conversation_id)
        session = await _started(svc.regenerate(request.turn_id))
        return _reply(svc, session)

    @app.post("/chat/{conversation_id}/retry")
    async def retry(conversation_id: str):
        svc = _open(app.state.service, conversation_id)
        session = await _started(svc.retry())
        return _reply(svc, session)

    @app.post("/chat/{conversation_id}/media")
    async def media(conversation_id: str, request: MediaRequest) -> Dict[str, Optional[str]]:
        svc = _open(app.state.service, conversation_id)
        try:
            job_id = await svc.submit_media(
                request.kind,
                request.prompt,
                model_id=request.model_id,
                params=request.params,
            )
        except RuntimeError as exc:
            raise HTTPException(status_code=503, detail=str(exc)) from exc
        return {"job_id": job_id}

    @app.get("/chat/history/{conversation_id}", response_model=HistoryResponse)
    async def chat_history(conversation_id: str):
        logger.info("Fetching history for conversation %s", conversation_id)
        try:
            payload = app.state.service.get_history(conversation_id)
        except ValueError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return payload

    @app.get("/chat/sessions")
    async def chat_sessions() -> List[Dict[str, Any]]:
        return app.state.service.list_conversations()

    @app.post("/studio/jobs")
    async def create_studio_job(request: StudioRequest) -> Dict[str, Any]:
        studio = app.state.service.studio
        if studio is None:
            raise HTTPException(status_code=503, detail="Studio generation is not configured")
        try:
            job = await studio.generate(
                request.prompt,
                mode=request.mode,
                model=request.model,
                aspect_ratio=request.aspect_ratio,
                image_url=request.image_url,
                end_image_url=request.end_image_url,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except MediaDispatchError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return job.to_dict()

    @app.get("/studio/jobs")
    async def list_studio_jobs() -> List[Dict[str, Any]]:
        studio = app.state.service.studio
        if studio is None:
            return []
        return [job.to_dict() for job in studio.jobs]

    return app


def _require_known(svc: ChatService, conversation_id: str) -> None:
    if conversation_id not in svc.conversations:
        raise HTTPException(status_code=404, detail=f"No conversation found for id '{conversation_id}'")


def _open(svc: ChatService, conversation_id: str) -> ChatService:
    _require_known(svc, conversation_id)
    svc.open(conversation_id)
    return svc


async def _started(pending) -> Optional[GenerationSession]:
    try:
        return await pending
    except KeyError as exc:
        raise HTTPException(status_code=404, detail=str(exc.args[0] if exc.args else exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _reply(svc: ChatService, session: Optional[GenerationSession]) -> StreamingResponse:
    if session is None:
        raise HTTPException(status_code=409, detail="No reply started: nothing to send or a reply is already in progress")
    conversation_id = session.conversation_id
    frames: asyncio.Queue = asyncio.Queue()
    # subscribe before yielding control so no frame of this reply is missed
    unsubscribe = svc.add_listener(frames.put_nowait)
    return StreamingResponse(
        _reply_text(frames, unsubscribe, conversation_id),
        media_type="text/plain",
        headers={"X-Conversation-Id": conversation_id},
    )


async def _reply_text(frames: asyncio.Queue, unsubscribe, conversation_id: str) -> AsyncIterator[str]:
    """Yield revealed text as it appears, ending with the finished turn."""
    sent = 0
    try:
        while True:
            frame: ViewFrame = await frames.get()
            if frame.conversation_id != conversation_id:
                break
            if frame.is_streaming:
                if len(frame.streaming_text) > sent:
                    yield frame.streaming_text[sent:]
                    sent = len(frame.streaming_text)
                continue
            if frame.failure is not None:
                yield f"\n[error] {frame.failure.message}"
                break
            if frame.turns and frame.turns[-1].role is Role.ASSISTANT:
                yield frame.turns[-1].text[sent:]
            break
    finally:
        unsubscribe()
