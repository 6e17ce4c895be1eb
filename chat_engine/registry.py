"""In-memory model registry: id to display info, context size and kind."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)


class ModelKind(str, Enum):
    CHAT = "chat"
    IMAGE = "image"
    VIDEO = "video"


@dataclass(frozen=True)
class ModelInfo:
    id: str
    display_name: str
    provider_icon: str = ""
    max_context_tokens: Optional[int] = None
    kind: ModelKind = ModelKind.CHAT

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "ModelInfo":
        return cls(
            id=str(payload["id"]),
            display_name=payload.get("display_name") or payload.get("name") or str(payload["id"]),
            provider_icon=payload.get("provider_icon", ""),
            max_context_tokens=payload.get("max_context_tokens") or payload.get("context_length"),
            kind=ModelKind(payload.get("kind", ModelKind.CHAT.value)),
        )


class ModelRegistry:
    """Lookup table for the models a conversation can select."""

    def __init__(
        self,
        models: Iterable[ModelInfo] = (),
        *,
        default_max_context_tokens: int = 128_000,
        response_reserve_tokens: int = 4_000,
    ) -> None:
        self._models: Dict[str, ModelInfo] = {model.id: model for model in models}
        self.default_max_context_tokens = default_max_context_tokens
        self.response_reserve_tokens = response_reserve_tokens

    @classmethod
    def from_file(cls, path: str, **kwargs: Any) -> "ModelRegistry":
        """Load a JSON list of model entries."""
        with Path(path).open("r", encoding="utf-8") as f:
            entries = json.load(f)
        if not isinstance(entries, list):
            raise ValueError("models file must contain a list of model entries")
        models = [ModelInfo.from_payload(entry) for entry in entries]
        logger.info("Loaded %d model(s) from %s", len(models), path)
        return cls(models, **kwargs)

    def register(self, model: ModelInfo) -> None:
        self._models[model.id] = model

    def lookup(self, model_id: str) -> Optional[ModelInfo]:
        return self._models.get(model_id)

    def models(self, kind: Optional[ModelKind] = None) -> List[ModelInfo]:
        return [m for m in self._models.values() if kind is None or m.kind is kind]

    def max_context_tokens(self, model_id: str) -> int:
        model = self.lookup(model_id)
        if model is None or not model.max_context_tokens:
            return self.default_max_context_tokens
        return model.max_context_tokens

    def context_budget(self, model_id: str) -> int:
        """Tokens available for history once the response reserve is set aside."""
        return max(self.max_context_tokens(model_id) - self.response_reserve_tokens, 0)
