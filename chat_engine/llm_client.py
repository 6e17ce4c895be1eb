"""HTTP clients for generation streams, summaries and media jobs."""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence

from fastapi.concurrency import run_in_threadpool
import requests

from .compactor import messages_as_text
from .config import ChatLLMConfig
from .exceptions import MediaDispatchError, TransportError
from .models import StreamEvent

logger = logging.getLogger(__name__)

_END = object()


class ChatLLMClient:
    """Thin wrapper around the generation endpoint with streaming support."""

    def __init__(self, config: ChatLLMConfig) -> None:
        self.config = config

    def headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.config.auth_token:
            headers["Authorization"] = f"Bearer {self.config.auth_token}"
        return headers

    def open_stream(self, payload: Dict[str, object]) -> requests.Response:
        url = self.config.url(self.config.generate_path)
        logger.info("Streaming generation from %s using model %s", url, payload.get("model"))
        response = requests.post(
            url,
            json=payload,
            headers=self.headers(),
            stream=True,
            timeout=self.config.request_timeout,
        )
        if not response.ok:
            detail = self._error_detail(response)
            response.close()
            raise TransportError(detail)
        return response

    def iter_events(self, lines: Iterable[bytes]) -> Iterator[StreamEvent]:
        """Decode ``data:`` lines into stream events."""
        for raw_line in lines:
            if not raw_line:
                continue
            line = raw_line.decode("utf-8").strip() if isinstance(raw_line, bytes) else raw_line.strip()
            if not line.startswith("data:"):
                continue
            line = line[5:].strip()
            if not line or line == "[DONE]":
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.debug("Skipping non-JSON stream line: %s", line)
                continue
            if isinstance(payload, dict):
                yield StreamEvent.from_payload(payload)

    def complete(self, messages: List[Dict[str, str]], *, model: Optional[str] = None) -> str:
        """Return a full completion (no streaming)."""
        payload: Dict[str, object] = {
            "model": model or self.config.compact_model,
            "messages": messages,
            "stream": False,
        }
        logger.debug("Requesting non-streaming completion for %d message(s)", len(messages))
        response = requests.post(
            self.config.url(self.config.completion_path),
            json=payload,
            headers=self.headers(),
            timeout=self.config.request_timeout,
        )
        response.raise_for_status()
        data = response.json()
        if "content" in data:
            return data.get("content") or ""
        choice = (data.get("choices") or [{}])[0]
        message = choice.get("message") or {}
        return message.get("content", "") or ""

    def get_json(self, path: str, params: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
        response = requests.get(
            self.config.url(path),
            params=params,
            headers=self.headers(),
            timeout=self.config.request_timeout,
        )
        if not response.ok:
            raise MediaDispatchError(self._error_detail(response))
        return response.json()

    def post_json(self, path: str, body: Mapping[str, Any]) -> Dict[str, Any]:
        response = requests.post(
            self.config.url(path),
            json=dict(body),
            headers=self.headers(),
            timeout=self.config.request_timeout,
        )
        if not response.ok:
            raise MediaDispatchError(self._error_detail(response))
        return response.json()

    @staticmethod
    def _error_detail(response: requests.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if isinstance(data, dict) and data.get("error"):
            return str(data["error"])
        return f"HTTP {response.status_code}"


class HTTPGenerationStream:
    """Async view over a blocking SSE response read on a worker thread."""

    def __init__(self, client: ChatLLMClient, payload: Dict[str, object]) -> None:
        self._client = client
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue()
        self._stopped = threading.Event()
        self._response: Optional[requests.Response] = None
        self._future = self._loop.run_in_executor(None, self._pump, payload)

    def __aiter__(self) -> "HTTPGenerationStream":
        return self

    async def __anext__(self) -> StreamEvent:
        item = await self._queue.get()
        if item is _END:
            raise StopAsyncIteration
        if isinstance(item, TransportError):
            raise item
        if isinstance(item, Exception):
            raise TransportError(str(item)) from item
        return item

    def stop(self) -> None:
        self._stopped.set()
        response = self._response
        if response is not None:
            response.close()

    def _pump(self, payload: Dict[str, object]) -> None:
        try:
            response = self._client.open_stream(payload)
            self._response = response
            with response:
                for event in self._client.iter_events(response.iter_lines()):
                    if self._stopped.is_set():
                        break
                    self._put(event)
        except Exception as exc:
            if not self._stopped.is_set():
                self._put(exc)
        finally:
            self._put(_END)

    def _put(self, item: object) -> None:
        try:
            self._loop.call_soon_threadsafe(self._queue.put_nowait, item)
        except RuntimeError:
            logger.debug("Event loop closed before stream item could be delivered")


class HTTPGenerationTransport:
    def __init__(self, client: ChatLLMClient, *, web_search: bool = False) -> None:
        self.client = client
        self.web_search = web_search

    def generate(
        self,
        conversation_id: str,
        context: Sequence[Mapping[str, str]],
        model_id: str,
        attachments: Sequence[str] = (),
    ) -> HTTPGenerationStream:
        payload: Dict[str, object] = {
            "chatId": conversation_id,
            "messages": [dict(m) for m in context],
            "model": model_id,
            "webSearch": self.web_search,
        }
        if attachments:
            payload["attachments"] = list(attachments)
        return HTTPGenerationStream(self.client, payload)


class HTTPSummarizer:
    """Summarises dropped turns with a cheap completion model."""

    def __init__(self, client: ChatLLMClient, prompt: str) -> None:
        self.client = client
        self.prompt = prompt

    async def summarize(self, turns: Sequence[Mapping[str, str]]) -> Dict[str, str]:
        messages = [
            {"role": "system", "content": self.prompt},
            {"role": "user", "content": messages_as_text(turns)},
        ]
        summary = await run_in_threadpool(self.client.complete, messages)
        return {"summary": summary}


class HTTPMediaDispatch:
    """Image/video job submission and status lookups."""

    def __init__(self, client: ChatLLMClient) -> None:
        self.client = client

    async def submit_image_job(self, prompt: str, model_id: str, params: Mapping[str, Any]) -> str:
        return await self._submit(self.client.config.image_path, prompt, model_id, params)

    async def submit_video_job(self, prompt: str, model_id: str, params: Mapping[str, Any]) -> str:
        return await self._submit(self.client.config.video_path, prompt, model_id, params)

    async def status_of(self, job_id: str) -> Dict[str, Any]:
        return await run_in_threadpool(
            self.client.get_json, self.client.config.video_status_path, {"taskId": job_id}
        )

    async def _submit(self, path: str, prompt: str, model_id: str, params: Mapping[str, Any]) -> str:
        body = {"prompt": prompt, "model": model_id, **params}
        data = await run_in_threadpool(self.client.post_json, path, body)
        job_id = data.get("taskId") or data.get("job_id") or data.get("id")
        if not job_id:
            raise MediaDispatchError("dispatch response did not include a job id")
        return str(job_id)


class HTTPStudioDispatch:
    def __init__(self, client: ChatLLMClient) -> None:
        self.client = client

    async def create_job(self, request: Mapping[str, Any]) -> Dict[str, Any]:
        return await run_in_threadpool(
            self.client.post_json, self.client.config.studio_generate_path, request
        )

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        return await run_in_threadpool(
            self.client.get_json, f"{self.client.config.studio_jobs_path}/{job_id}"
        )
