"""Conversational streaming and context-management engine for an AI chat client.

The package fits conversation history into a model's token budget, drives one
cancellable generation per conversation, reveals arriving text at a steady
rate, and tracks detached image/video jobs. The primary entry points are
``chat_engine.api.create_app`` for running the HTTP service and
``chat_engine.service.ChatService`` for embedding the engine directly into
Python code.
"""

from .compactor import CompactionResult, ContextCompactor
from .config import ChatConfig, ChatLLMConfig
from .registry import ModelInfo, ModelRegistry
from .service import ChatService, ViewFrame
from .session import SessionState, StreamingSessionController
from .typewriter import TypewriterRenderer

__all__ = [
    "ChatConfig",
    "ChatLLMConfig",
    "ChatService",
    "CompactionResult",
    "ContextCompactor",
    "ModelInfo",
    "ModelRegistry",
    "SessionState",
    "StreamingSessionController",
    "TypewriterRenderer",
    "ViewFrame",
]
