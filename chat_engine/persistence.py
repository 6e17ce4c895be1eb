"""Turn persistence backends."""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Dict, List, Optional

from fastapi.concurrency import run_in_threadpool
import requests

from .config import ChatLLMConfig
from .models import new_id

logger = logging.getLogger(__name__)


class InMemoryPersistence:
    """Keeps appended turns per conversation; useful for local runs and tests."""

    def __init__(self) -> None:
        self.records: Dict[str, List[Dict[str, str]]] = defaultdict(list)

    async def append_turn(self, conversation_id: str, role: str, text: str) -> Optional[str]:
        record_id = new_id("msg-")
        self.records[conversation_id].append({"id": record_id, "role": role, "content": text})
        return record_id


class HTTPPersistence:
    """Posts turns to the chat messages endpoint."""

    def __init__(self, config: ChatLLMConfig) -> None:
        self.config = config

    async def append_turn(self, conversation_id: str, role: str, text: str) -> Optional[str]:
        return await run_in_threadpool(self._post, conversation_id, role, text)

    def _post(self, conversation_id: str, role: str, text: str) -> Optional[str]:
        url = self.config.url(self.config.messages_path.format(conversation_id=conversation_id))
        headers = {"Authorization": f"Bearer {self.config.auth_token}"} if self.config.auth_token else {}
        response = requests.post(
            url,
            json={"role": role, "content": text},
            headers=headers,
            timeout=self.config.request_timeout,
        )
        response.raise_for_status()
        data = response.json() if response.content else {}
        logger.debug("Persisted %s turn for conversation %s", role, conversation_id)
        return data.get("id")
