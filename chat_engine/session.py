"""Lifecycle of one streamed generation per conversation.

The controller only lets the conversation currently on screen touch visible
state. Each session carries a :class:`SessionToken` captured at start; the
token is compared against the :class:`ActiveConversation` cell whenever a
callback fires and again after every suspension point, so a session that went
stale mid-flight finishes quietly instead of writing into another transcript.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Mapping, Optional, Sequence, Set

from .config import ChatConfig
from .exceptions import TransportError
from .models import GenerationFailure, Role, StreamEvent, Turn, TurnStatus, new_id
from .protocols import GenerationStream, GenerationTransport
from .typewriter import TypewriterRenderer

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    CANCELLED = "cancelled"
    ERRORED = "errored"


_TRANSITIONS = {
    SessionState.IDLE: {SessionState.SENDING},
    SessionState.SENDING: {SessionState.STREAMING, SessionState.FINALIZING, SessionState.CANCELLED, SessionState.ERRORED},
    SessionState.STREAMING: {SessionState.FINALIZING, SessionState.CANCELLED, SessionState.ERRORED},
    SessionState.FINALIZING: {SessionState.IDLE},
    SessionState.CANCELLED: set(),
    SessionState.ERRORED: set(),
}


@dataclass(frozen=True)
class SessionToken:
    conversation_id: Optional[str]
    epoch: int


class ActiveConversation:
    """The single "currently displayed conversation" cell.

    Every activation bumps the epoch, so switching away and back still
    invalidates tokens issued before the switch.
    """

    def __init__(self) -> None:
        self.conversation_id: Optional[str] = None
        self.epoch = 0

    def activate(self, conversation_id: Optional[str]) -> SessionToken:
        self.conversation_id = conversation_id
        self.epoch += 1
        return self.token()

    def token(self) -> SessionToken:
        return SessionToken(self.conversation_id, self.epoch)

    def is_current(self, token: SessionToken) -> bool:
        return token.conversation_id is not None and token == self.token()


@dataclass
class GenerationCallbacks:
    on_increment: Optional[Callable[[str], None]] = None
    on_reveal: Optional[Callable[[str], None]] = None
    on_complete: Optional[Callable[[Turn], None]] = None
    on_error: Optional[Callable[[GenerationFailure], None]] = None
    on_title: Optional[Callable[[str], None]] = None


@dataclass(eq=False)
class GenerationSession:
    conversation_id: str
    token: SessionToken
    model_id: str
    callbacks: GenerationCallbacks
    renderer: TypewriterRenderer
    user_turn_id: Optional[str] = None
    buffer: str = ""
    cancelled: bool = False
    abandoned: bool = False
    state: SessionState = SessionState.IDLE
    started_at: float = field(default_factory=time.monotonic)
    stream: Optional[GenerationStream] = None
    task: Optional[asyncio.Task] = None

    @property
    def is_live(self) -> bool:
        return self.task is not None and not self.task.done()

    async def wait(self) -> None:
        """Block until the session task has ended, however it ended."""
        if self.task is not None:
            await asyncio.wait({self.task})

    def transition(self, state: SessionState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal session transition {self.state.value} -> {state.value}")
        logger.debug("Session for %s: %s -> %s", self.conversation_id, self.state.value, state.value)
        self.state = state


class StreamingSessionController:
    """Start, stop and finalize generations; at most one live session per conversation."""

    def __init__(
        self,
        transport: GenerationTransport,
        active: ActiveConversation,
        config: Optional[ChatConfig] = None,
    ) -> None:
        self.transport = transport
        self.active = active
        self.config = config or ChatConfig()
        self._sessions: Dict[str, GenerationSession] = {}
        self._draining: Set[GenerationSession] = set()

    def session(self, conversation_id: Optional[str]) -> Optional[GenerationSession]:
        if conversation_id is None:
            return None
        return self._sessions.get(conversation_id)

    def is_live(self, conversation_id: Optional[str]) -> bool:
        session = self.session(conversation_id)
        return session is not None and session.is_live

    def state(self, conversation_id: Optional[str]) -> SessionState:
        session = self.session(conversation_id)
        return session.state if session is not None else SessionState.IDLE

    def start(
        self,
        conversation_id: str,
        context: Sequence[Mapping[str, str]],
        model_id: str,
        callbacks: GenerationCallbacks,
        *,
        user_turn_id: Optional[str] = None,
        attachments: Sequence[str] = (),
    ) -> Optional[GenerationSession]:
        if not context and not attachments:
            logger.debug("Nothing to send for conversation %s", conversation_id)
            return None
        token = self.active.token()
        if token.conversation_id != conversation_id:
            logger.info("Not starting generation for %s: conversation is not displayed", conversation_id)
            return None
        if self.is_live(conversation_id):
            logger.info("Generation already in progress for conversation %s", conversation_id)
            return None

        session = GenerationSession(
            conversation_id=conversation_id,
            token=token,
            model_id=model_id,
            callbacks=callbacks,
            user_turn_id=user_turn_id,
            renderer=TypewriterRenderer(
                interval=self.config.reveal_interval,
                chars_per_tick=self.config.reveal_chars_per_tick,
            ),
        )
        session.renderer.on_reveal = lambda text: self._emit(session, "on_reveal", text)
        session.transition(SessionState.SENDING)
        self._sessions[conversation_id] = session
        session.task = asyncio.get_running_loop().create_task(
            self._run(session, [dict(m) for m in context], list(attachments))
        )
        logger.info(
            "Started generation for conversation %s with model %s (%d context turn(s))",
            conversation_id,
            model_id,
            len(context),
        )
        return session

    def stop(self, conversation_id: Optional[str]) -> Optional[Turn]:
        """Cancel the live session and return the terminated turn, if any text arrived."""
        session = self.session(conversation_id)
        if session is None or not session.is_live:
            return None
        if session.state is SessionState.FINALIZING:
            # the reply is complete and already saved upstream; let it land
            logger.info("Stop for %s ignored: reply is already finalizing", conversation_id)
            return None
        session.cancelled = True
        if session.state in (SessionState.SENDING, SessionState.STREAMING):
            session.transition(SessionState.CANCELLED)
        del self._sessions[session.conversation_id]
        self._draining.add(session)
        self._abort(session)
        if session.task is not None and not session.task.done():
            session.task.cancel()
        partial = session.buffer
        logger.info("Stopped generation for %s after %d char(s)", conversation_id, len(partial))
        if not partial:
            return None
        return Turn(
            role=Role.ASSISTANT,
            text=f"{partial}\n\n_({self.config.stopped_marker})_",
            id=new_id("partial-"),
            model_id=session.model_id,
            status=TurnStatus.STOPPED,
            response_seconds=time.monotonic() - session.started_at,
        )

    def abandon_stale(self) -> int:
        """Abort every session whose conversation is no longer displayed."""
        stale = [s for s in self._sessions.values() if not self.active.is_current(s.token)]
        for session in stale:
            session.abandoned = True
            self._sessions.pop(session.conversation_id, None)
            if session.is_live:
                self._draining.add(session)
            self._abort(session)
            logger.info("Abandoned generation for %s after navigation", session.conversation_id)
        return len(stale)

    async def aclose(self) -> None:
        sessions = list(self._sessions.values()) + list(self._draining)
        for session in sessions:
            session.abandoned = True
            self._abort(session)
            if session.task is not None and not session.task.done():
                session.task.cancel()
        tasks = [s.task for s in sessions if s.task is not None]
        if tasks:
            await asyncio.wait(tasks)
        self._sessions.clear()
        self._draining.clear()

    async def _run(self, session: GenerationSession, context: list, attachments: list) -> None:
        final_text: Optional[str] = None
        persisted_id: Optional[str] = None
        try:
            stream = self.transport.generate(session.conversation_id, context, session.model_id, attachments)
            session.stream = stream
            async for event in stream:
                if session.cancelled or session.abandoned:
                    return
                if not self._is_current(session):
                    self._drop_stale(session)
                    return
                if event.type == "chunk":
                    self._on_chunk(session, event)
                elif event.type == "done":
                    final_text = event.content or session.buffer
                    persisted_id = event.message_id
                    break
                elif event.type == "error":
                    raise TransportError(event.message or "Generation failed")
                elif event.type == "title" and event.title:
                    self._emit(session, "on_title", event.title)
                else:
                    logger.debug("Ignoring %s event for %s", event.type, session.conversation_id)

            if session.cancelled or session.abandoned:
                return
            if final_text is None:
                final_text = session.buffer
            await self._finalize(session, final_text, persisted_id)
        except asyncio.CancelledError:
            logger.debug("Generation task for %s cancelled", session.conversation_id)
            raise
        except Exception as exc:
            self._fail(session, exc)
        finally:
            self._release(session)

    def _on_chunk(self, session: GenerationSession, event: StreamEvent) -> None:
        if not event.content:
            return
        if session.state is SessionState.SENDING:
            session.transition(SessionState.STREAMING)
        session.buffer += event.content
        session.renderer.push(event.content)
        self._emit(session, "on_increment", event.content)

    async def _finalize(self, session: GenerationSession, final_text: str, persisted_id: Optional[str]) -> None:
        session.transition(SessionState.FINALIZING)
        session.buffer = final_text
        session.renderer.finalize(final_text)
        await asyncio.sleep(self.config.settle_delay)
        if session.cancelled or session.abandoned:
            return
        if not self._is_current(session):
            self._drop_stale(session)
            return

        turn = Turn(
            role=Role.ASSISTANT,
            text=final_text,
            id=persisted_id or new_id("ai-"),
            model_id=session.model_id,
            response_seconds=time.monotonic() - session.started_at,
        )
        self._emit(session, "on_complete", turn)
        session.transition(SessionState.IDLE)
        logger.info(
            "Completed generation for %s: %d char(s) in %.2f seconds",
            session.conversation_id,
            len(final_text),
            turn.response_seconds,
        )

    def _fail(self, session: GenerationSession, exc: Exception) -> None:
        if session.state in (SessionState.SENDING, SessionState.STREAMING):
            session.transition(SessionState.ERRORED)
        session.renderer.close()
        logger.warning("Generation failed for conversation %s: %s", session.conversation_id, exc)
        failure = GenerationFailure(
            conversation_id=session.conversation_id,
            user_turn_id=session.user_turn_id,
            message=str(exc) or type(exc).__name__,
        )
        self._emit(session, "on_error", failure)

    def _drop_stale(self, session: GenerationSession) -> None:
        logger.debug("Discarding output of stale session for %s", session.conversation_id)
        session.abandoned = True
        self._abort(session)

    def _abort(self, session: GenerationSession) -> None:
        session.renderer.close()
        if session.stream is not None:
            try:
                session.stream.stop()
            except Exception:
                logger.warning("Transport abort failed for %s", session.conversation_id, exc_info=True)
        elif session.task is not None and not session.task.done():
            session.task.cancel()

    def _release(self, session: GenerationSession) -> None:
        session.renderer.close()
        if self._sessions.get(session.conversation_id) is session:
            del self._sessions[session.conversation_id]
        self._draining.discard(session)

    def _is_current(self, session: GenerationSession) -> bool:
        return self.active.is_current(session.token)

    def _emit(self, session: GenerationSession, name: str, *args) -> None:
        if session.cancelled or session.abandoned or not self._is_current(session):
            logger.debug("Suppressed %s for stale session of %s", name, session.conversation_id)
            return
        callback = getattr(session.callbacks, name)
        if callback is not None:
            callback(*args)
