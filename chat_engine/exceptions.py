"""Exception types raised by the chat engine."""

from __future__ import annotations


class ChatEngineError(Exception):
    """Base class for chat engine failures."""


class TransportError(ChatEngineError):
    """The generation transport failed mid-flight."""


class MediaDispatchError(ChatEngineError):
    """A media or studio job could not be dispatched or queried."""


class RewindError(ChatEngineError, ValueError):
    """An edit or regenerate request does not match the transcript."""
