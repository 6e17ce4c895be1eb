"""High level orchestration of the displayed conversation.

``ChatService`` owns the conversations, the visible transcript of the one on
screen, and the scoped resources (streaming session, reveal timer, media
polls) that may write into it. All transcript mutation goes through here.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set

from .compactor import CompactionResult, ContextCompactor
from .config import ChatConfig
from .media import MediaJobTracker, StudioJobTracker
from .models import (
    Conversation,
    GenerationFailure,
    MediaKind,
    Role,
    Turn,
    TurnStatus,
    new_id,
)
from .protocols import (
    GenerationTransport,
    MediaDispatch,
    Persistence,
    StudioDispatch,
    Summarizer,
)
from .registry import ModelRegistry
from .rewind import RewindPlan, plan_edit, plan_regenerate
from .session import (
    ActiveConversation,
    GenerationCallbacks,
    GenerationSession,
    StreamingSessionController,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ViewFrame:
    """What the surrounding UI would render right now."""

    conversation_id: Optional[str]
    turns: tuple = ()
    streaming_text: str = ""
    is_streaming: bool = False
    usage_percent: int = 0
    failure: Optional[GenerationFailure] = None


class _ViewTranscript:
    """Transcript handle given to the media tracker of one view."""

    def __init__(self, service: "ChatService", conversation: Conversation) -> None:
        self._service = service
        self._conversation = conversation

    @property
    def turns(self) -> List[Turn]:
        return self._conversation.turns

    def append_turn(self, turn: Turn) -> None:
        self._conversation.append_turn(turn)
        self._service._notify()

    def replace_turn(self, turn_id: str, turn: Turn) -> None:
        self._conversation.replace_turn(turn_id, turn)
        self._service._notify()

    def remove_turn(self, turn_id: str) -> None:
        self._conversation.remove_turn(turn_id)
        self._service._notify()


@dataclass
class _ViewScope:
    conversation_id: str
    media: Optional[MediaJobTracker]
    failure: Optional[GenerationFailure] = None
    streaming_text: str = ""
    is_streaming: bool = False
    usage_percent: int = 0


class ChatService:
    """Core chat engine used by both the API and direct Python consumers."""

    def __init__(
        self,
        transport: GenerationTransport,
        *,
        config: Optional[ChatConfig] = None,
        registry: Optional[ModelRegistry] = None,
        summarizer: Optional[Summarizer] = None,
        persistence: Optional[Persistence] = None,
        media_dispatch: Optional[MediaDispatch] = None,
        studio_dispatch: Optional[StudioDispatch] = None,
    ) -> None:
        self.config = config or ChatConfig()
        self.registry = registry or ModelRegistry(
            default_max_context_tokens=self.config.default_max_context_tokens,
            response_reserve_tokens=self.config.response_reserve_tokens,
        )
        self.summarizer = summarizer
        self.persistence = persistence
        self.media_dispatch = media_dispatch
        self.conversations: Dict[str, Conversation] = {}
        self.active = ActiveConversation()
        self.controller = StreamingSessionController(transport, self.active, self.config)
        self.studio = (
            StudioJobTracker(studio_dispatch, interval=self.config.studio_poll_interval)
            if studio_dispatch is not None
            else None
        )
        self._compactors: Dict[str, ContextCompactor] = {}
        self._preparing: Set[str] = set()
        self._stop_requested: Set[str] = set()
        self._view: Optional[_ViewScope] = None
        self._listeners: List[Callable[[ViewFrame], None]] = []
        self._background: Set[asyncio.Task] = set()
        self._failures: Dict[str, GenerationFailure] = {}

    # ------------------------------------------------------------------
    # Navigation
    # ------------------------------------------------------------------

    @property
    def active_conversation_id(self) -> Optional[str]:
        return self.active.conversation_id

    def create_conversation(self, model_id: Optional[str] = None, *, conversation_id: Optional[str] = None) -> Conversation:
        conversation = Conversation(
            id=conversation_id or new_id("chat-"),
            model_id=model_id or self.config.default_model_id,
        )
        self.conversations[conversation.id] = conversation
        logger.info("Created conversation %s with model %s", conversation.id, conversation.model_id)
        return conversation

    def open(self, conversation_id: str) -> Conversation:
        """Display ``conversation_id``, disposing the previous view."""
        conversation = self._get(conversation_id)
        if self._view is not None and self._view.conversation_id == conversation_id:
            return conversation

        self._dispose_view()
        self.active.activate(conversation_id)
        abandoned = self.controller.abandon_stale()
        if abandoned:
            logger.info("Switched to %s; abandoned %d stale generation(s)", conversation_id, abandoned)
        self._view = _ViewScope(
            conversation_id=conversation_id,
            media=self._media_tracker(conversation),
            failure=self._failures.get(conversation_id),
        )
        self._notify()
        return conversation

    def close_view(self) -> None:
        """Dispose the displayed view without opening another one."""
        self._dispose_view()
        self.active.activate(None)
        self.controller.abandon_stale()
        self._notify()

    def set_model(self, model_id: str, conversation_id: Optional[str] = None) -> None:
        conversation = self._get(conversation_id or self._require_active())
        conversation.model_id = model_id
        logger.info("Conversation %s now uses model %s", conversation.id, model_id)

    # ------------------------------------------------------------------
    # Sending and streaming
    # ------------------------------------------------------------------

    async def send(
        self,
        text: str,
        *,
        conversation_id: Optional[str] = None,
        model_id: Optional[str] = None,
        attachments: Sequence[str] = (),
    ) -> Optional[GenerationSession]:
        """Append a user turn and stream the assistant reply."""
        if not text or not text.strip():
            if not attachments:
                return None
        if conversation_id is None:
            conversation_id = self.active.conversation_id
        if conversation_id is None or conversation_id not in self.conversations:
            conversation = self.create_conversation(model_id, conversation_id=conversation_id)
        else:
            conversation = self.conversations[conversation_id]
        if model_id:
            conversation.model_id = model_id
        self.open(conversation.id)

        if self._busy(conversation.id):
            logger.info("Ignoring send to %s while a reply is in progress", conversation.id)
            return None

        user_turn = Turn(role=Role.USER, text=text, media=tuple(attachments))
        conversation.append_turn(user_turn)
        self._failures.pop(conversation.id, None)
        self._view.failure = None
        self._notify()
        self._persist_in_background(conversation.id, user_turn)
        return await self._generate(conversation, conversation.turns, user_turn)

    async def stop(self) -> Optional[Turn]:
        """Stop the displayed conversation's reply, keeping what already arrived."""
        conversation_id = self.active.conversation_id
        if conversation_id is None or self._view is None:
            return None
        if conversation_id in self._preparing:
            # compaction is still running; _generate checks this before starting
            self._stop_requested.add(conversation_id)
            logger.info("Stop requested for %s before generation started", conversation_id)
            return None

        turn = self.controller.stop(conversation_id)
        if turn is None:
            if not self.controller.is_live(conversation_id):
                self._view.is_streaming = False
                self._view.streaming_text = ""
            self._notify()
            return None

        self._view.is_streaming = False
        self._view.streaming_text = ""

        conversation = self._get(conversation_id)
        conversation.append_turn(turn)
        self._notify()
        await self._persist(conversation_id, turn)
        return turn

    async def retry(self) -> Optional[GenerationSession]:
        """Resend the user turn whose generation failed."""
        conversation = self._get(self._require_active())
        failure = self._failures.get(conversation.id)
        if failure is None or failure.user_turn_id is None:
            logger.info("Nothing to retry for conversation %s", conversation.id)
            return None
        index = conversation.index_of(failure.user_turn_id)
        session = await self._generate(conversation, conversation.turns[: index + 1], conversation.turns[index])
        if session is not None:
            self._failures.pop(conversation.id, None)
            self._view.failure = None
            self._notify()
        return session

    # ------------------------------------------------------------------
    # Rewind
    # ------------------------------------------------------------------

    async def edit(self, turn_id: str, new_text: str) -> Optional[GenerationSession]:
        conversation = self._get(self._require_active())
        if self._busy(conversation.id):
            logger.info("Edit rejected: reply in progress for %s", conversation.id)
            return None
        plan = plan_edit(conversation.turns, turn_id, new_text)
        return await self._rewind(conversation, plan)

    async def regenerate(self, assistant_turn_id: str) -> Optional[GenerationSession]:
        conversation = self._get(self._require_active())
        if self._busy(conversation.id):
            logger.info("Regenerate rejected: reply in progress for %s", conversation.id)
            return None
        plan = plan_regenerate(conversation.turns, assistant_turn_id)
        return await self._rewind(conversation, plan)

    async def _rewind(self, conversation: Conversation, plan: RewindPlan) -> Optional[GenerationSession]:
        conversation.turns = plan.kept
        conversation.updated_at = time.time()
        self._failures.pop(conversation.id, None)
        self._view.failure = None
        if self._view.media is not None:
            self._view.media.forget_missing()
        self._notify()
        logger.info(
            "Rewound %s to %d turn(s), removed %d",
            conversation.id,
            len(plan.kept),
            len(plan.removed),
        )
        return await self._generate(conversation, plan.context, plan.user_turn)

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def submit_media(
        self,
        kind: MediaKind,
        prompt: str,
        *,
        model_id: Optional[str] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        self._require_active()
        if self._view is None or self._view.media is None:
            raise RuntimeError("Media generation is not configured")
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required")
        conversation = self._get(self._view.conversation_id)
        conversation.append_turn(Turn(role=Role.USER, text=prompt))
        self._notify()
        return await self._view.media.submit(kind, prompt, model_id or conversation.model_id, params)

    async def retry_media(self, failed_turn_id: str) -> Optional[str]:
        if self._view is None or self._view.media is None:
            raise RuntimeError("Media generation is not configured")
        return await self._view.media.retry(failed_turn_id)

    # ------------------------------------------------------------------
    # Views and history
    # ------------------------------------------------------------------

    def frame(self) -> ViewFrame:
        view = self._view
        if view is None:
            return ViewFrame(conversation_id=None)
        conversation = self.conversations[view.conversation_id]
        return ViewFrame(
            conversation_id=view.conversation_id,
            turns=tuple(conversation.turns),
            streaming_text=view.streaming_text,
            is_streaming=view.is_streaming,
            usage_percent=view.usage_percent,
            failure=view.failure,
        )

    def add_listener(self, listener: Callable[[ViewFrame], None]) -> Callable[[], None]:
        """Call ``listener`` with a frame after every visible change; returns an unsubscribe."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def get_history(self, conversation_id: str) -> Dict[str, object]:
        """Return the recorded conversation and metadata."""
        conversation = self.conversations.get(conversation_id)
        if not conversation:
            raise ValueError(f"No conversation found for id '{conversation_id}'")
        return {
            "conversation_id": conversation.id,
            "title": conversation.title,
            "model_id": conversation.model_id,
            "messages": [turn.to_dict() for turn in conversation.turns],
            "is_streaming": self.controller.is_live(conversation.id),
            "updated_at": conversation.updated_at,
        }

    def list_conversations(self) -> List[Dict[str, object]]:
        """Return lightweight conversation metadata for UI selection."""
        payload = []
        for conversation in self.conversations.values():
            last_message = conversation.turns[-1].text if conversation.turns else ""
            payload.append(
                {
                    "conversation_id": conversation.id,
                    "title": conversation.title,
                    "model_id": conversation.model_id,
                    "updated_at": conversation.updated_at,
                    "last_message": last_message,
                    "message_count": len(conversation.turns),
                }
            )
        return sorted(payload, key=lambda item: item.get("updated_at", 0), reverse=True)

    async def aclose(self) -> None:
        self._dispose_view()
        if self.studio is not None:
            self.studio.close()
        await self.controller.aclose()
        if self._background:
            await asyncio.wait(list(self._background))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _generate(
        self, conversation: Conversation, source: Sequence[Turn], user_turn: Turn
    ) -> Optional[GenerationSession]:
        token = self.active.token()
        if token.conversation_id != conversation.id:
            return None
        if self._busy(conversation.id):
            return None

        self._preparing.add(conversation.id)
        try:
            compaction = await self._compact(conversation, source)
        finally:
            self._preparing.discard(conversation.id)
            stop_requested = conversation.id in self._stop_requested
            self._stop_requested.discard(conversation.id)
        if stop_requested:
            logger.info("Generation for %s stopped before it started", conversation.id)
            return None
        if not self.active.is_current(token):
            logger.info("Conversation %s left the view during compaction; not generating", conversation.id)
            return None

        view = self._view
        view.usage_percent = compaction.usage_percent
        session = self.controller.start(
            conversation.id,
            compaction.messages,
            conversation.model_id,
            self._callbacks(conversation),
            user_turn_id=user_turn.id,
            attachments=user_turn.media,
        )
        if session is not None:
            view.is_streaming = True
            view.streaming_text = ""
        self._notify()
        return session

    async def _compact(self, conversation: Conversation, source: Sequence[Turn]) -> CompactionResult:
        compactor = self._compactors.get(conversation.id)
        if compactor is None:
            compactor = ContextCompactor(self.summarizer, summary_prefix=self.config.summary_prefix)
            self._compactors[conversation.id] = compactor
        messages = [
            turn.as_message()
            for turn in source
            if turn.role in (Role.USER, Role.ASSISTANT) and turn.status is not TurnStatus.PENDING
        ]
        return await compactor.compact_and_fit(messages, self.registry.context_budget(conversation.model_id))

    def _callbacks(self, conversation: Conversation) -> GenerationCallbacks:
        def on_reveal(text: str) -> None:
            self._view.streaming_text = text
            self._notify()

        def on_complete(turn: Turn) -> None:
            conversation.append_turn(turn)
            self._view.streaming_text = ""
            self._view.is_streaming = False
            self._notify()

        def on_error(failure: GenerationFailure) -> None:
            self._failures[conversation.id] = failure
            self._view.failure = failure
            self._view.streaming_text = ""
            self._view.is_streaming = False
            self._notify()

        def on_title(title: str) -> None:
            conversation.title = title
            self._notify()

        return GenerationCallbacks(
            on_reveal=on_reveal,
            on_complete=on_complete,
            on_error=on_error,
            on_title=on_title,
        )

    def _persist_in_background(self, conversation_id: str, turn: Turn) -> None:
        task = asyncio.get_running_loop().create_task(self._persist(conversation_id, turn))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _persist(self, conversation_id: str, turn: Turn) -> None:
        if self.persistence is None:
            return
        try:
            await self.persistence.append_turn(conversation_id, turn.role.value, turn.text)
        except Exception:
            logger.exception("Failed to save %s message for conversation %s", turn.role.value, conversation_id)

    def _media_tracker(self, conversation: Conversation) -> Optional[MediaJobTracker]:
        if self.media_dispatch is None:
            return None
        return MediaJobTracker(
            self.media_dispatch,
            _ViewTranscript(self, conversation),
            interval=self.config.media_poll_interval,
        )

    def _dispose_view(self) -> None:
        view, self._view = self._view, None
        if view is not None and view.media is not None:
            view.media.close()

    def _busy(self, conversation_id: str) -> bool:
        return conversation_id in self._preparing or self.controller.is_live(conversation_id)

    def _require_active(self) -> str:
        conversation_id = self.active.conversation_id
        if conversation_id is None:
            raise ValueError("no conversation is open")
        return conversation_id

    def _get(self, conversation_id: str) -> Conversation:
        conversation = self.conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(f"No conversation found for id '{conversation_id}'")
        return conversation

    def _notify(self) -> None:
        if not self._listeners:
            return
        frame = self.frame()
        for listener in list(self._listeners):
            listener(frame)
