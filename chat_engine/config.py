"""Configuration objects for the chat engine."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass
class ChatLLMConfig:
    """Connection details for the generation, media and persistence endpoints."""

    base_url: str = "http://localhost:3000"
    generate_path: str = "/api/ai/generate"
    completion_path: str = "/api/ai/complete"
    image_path: str = "/api/ai/image/generate"
    video_path: str = "/api/ai/video/generate"
    video_status_path: str = "/api/ai/video/status"
    studio_jobs_path: str = "/api/studios/jobs"
    studio_generate_path: str = "/api/studios/generate"
    messages_path: str = "/api/chat/{conversation_id}/messages"
    compact_model: str = "openai/gpt-oss-120b"
    request_timeout: int = 60
    auth_token: str = ""

    def url(self, path: str) -> str:
        return self.base_url.rstrip("/") + path


@dataclass
class ChatConfig:
    """Runtime controls for compaction, streaming and media polling."""

    llm: ChatLLMConfig = field(default_factory=ChatLLMConfig)
    default_model_id: str = "stepfun/step-3.5-flash:free"
    default_max_context_tokens: int = 128_000
    response_reserve_tokens: int = 4_000
    summarise_prompt: str = (
        "Summarise the following conversation concisely. Keep important facts, decisions, "
        "the user's needs and any context required to continue the conversation. Answer in "
        "the same language as the conversation, in no more than 300 words."
    )
    summary_prefix: str = "Summary of earlier conversation:\n"
    reveal_interval: float = 0.02
    reveal_chars_per_tick: int = 1
    settle_delay: float = 0.3
    stopped_marker: str = "stopped midway"
    media_poll_interval: float = 5.0
    studio_poll_interval: float = 3.0
