"""Start-and-poll tracking for detached image/video generation jobs.

Two surfaces use this: chat-inline media turns (:class:`MediaJobTracker`) and
the creative studio job list (:class:`StudioJobTracker`). They share the
:class:`JobPoller` loop and keep their own intervals.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .exceptions import MediaDispatchError
from .models import (
    JobStatus,
    MediaJob,
    MediaKind,
    Role,
    StudioJob,
    StudioJobStatus,
    StudioMode,
    Turn,
    TurnStatus,
)
from .protocols import MediaDispatch, StudioDispatch, TranscriptSink

logger = logging.getLogger(__name__)

CheckFn = Callable[[], Awaitable[bool]]


class JobPoller:
    """One polling task per job id, torn down on a terminal state or ``close()``."""

    def __init__(self, interval: float, *, name: str = "jobs") -> None:
        self.interval = interval
        self.name = name
        self._loops: Dict[str, asyncio.Task] = {}
        self._closed = False

    def __contains__(self, job_id: str) -> bool:
        return job_id in self._loops

    def __len__(self) -> int:
        return len(self._loops)

    @property
    def closed(self) -> bool:
        return self._closed

    def track(self, job_id: str, check: CheckFn) -> bool:
        """Start polling ``job_id``; returns False when it is already tracked."""
        if self._closed:
            logger.debug("[%s] Poller closed; not tracking %s", self.name, job_id)
            return False
        if job_id in self._loops:
            logger.info("[%s] Job %s is already being polled", self.name, job_id)
            return False
        self._loops[job_id] = asyncio.get_running_loop().create_task(self._loop(job_id, check))
        return True

    def cancel(self, job_id: str) -> None:
        task = self._loops.pop(job_id, None)
        if task is not None and not task.done():
            task.cancel()

    def close(self) -> None:
        self._closed = True
        for job_id in list(self._loops):
            self.cancel(job_id)

    async def join(self) -> None:
        """Wait for every running loop to end."""
        while self._loops:
            await asyncio.wait(list(self._loops.values()))

    async def _loop(self, job_id: str, check: CheckFn) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval)
                try:
                    finished = await check()
                except Exception:
                    logger.warning("[%s] Status check for %s failed; will retry", self.name, job_id, exc_info=True)
                    continue
                if finished:
                    logger.debug("[%s] Job %s reached a terminal state", self.name, job_id)
                    return
        finally:
            if self._loops.get(job_id) is asyncio.current_task():
                del self._loops[job_id]


def _result_urls(payload: Mapping[str, Any]) -> List[str]:
    urls = payload.get("result_urls")
    if urls:
        return [str(url) for url in urls]
    url = payload.get("result_url") or payload.get("resultUrl") or payload.get("videoUrl")
    return [str(url)] if url else []


def _job_status(raw: Any) -> JobStatus:
    try:
        return JobStatus(str(raw))
    except ValueError:
        # queued/processing/generating and friends are all still in flight
        return JobStatus.PENDING


class MediaJobTracker:
    """Chat-inline media generation for one conversation view."""

    def __init__(
        self,
        dispatch: MediaDispatch,
        transcript: TranscriptSink,
        *,
        interval: float = 5.0,
    ) -> None:
        self.dispatch = dispatch
        self.transcript = transcript
        self.poller = JobPoller(interval, name="media")
        self._jobs: Dict[str, MediaJob] = {}
        self._failed: Dict[str, MediaJob] = {}

    def job(self, job_id: str) -> Optional[MediaJob]:
        return self._jobs.get(job_id)

    @property
    def active_job_ids(self) -> List[str]:
        return list(self._jobs)

    async def submit(
        self,
        kind: MediaKind,
        prompt: str,
        model_id: str,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Optional[str]:
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required")
        if self.poller.closed:
            logger.info("Media view disposed; dropping %s request", kind.value)
            return None

        placeholder = Turn(
            role=Role.ASSISTANT,
            text=f"Generating {kind.value}...",
            model_id=model_id,
            status=TurnStatus.PENDING,
        )
        self.transcript.append_turn(placeholder)
        job = MediaJob(
            id="",
            kind=kind,
            prompt=prompt,
            model_id=model_id,
            placeholder_turn_id=placeholder.id,
            params=dict(params or {}),
        )

        try:
            if kind is MediaKind.IMAGE:
                job_id = await self.dispatch.submit_image_job(prompt, model_id, job.params)
            else:
                job_id = await self.dispatch.submit_video_job(prompt, model_id, job.params)
        except Exception as exc:
            logger.warning("Dispatch of %s job failed: %s", kind.value, exc)
            job.status = JobStatus.FAILED
            job.error = str(exc) or "dispatch failed"
            self._settle(job)
            return None

        if self.poller.closed:
            logger.info("Media view disposed while dispatching %s; not polling", job_id)
            return job_id
        if job_id in self._jobs:
            logger.info("Duplicate submission for job %s ignored", job_id)
            self.transcript.remove_turn(placeholder.id)
            return job_id

        job.id = job_id
        self._jobs[job_id] = job
        self.poller.track(job_id, lambda: self._check(job))
        logger.info("Submitted %s job %s with model %s", kind.value, job_id, model_id)
        return job_id

    async def retry(self, failed_turn_id: str) -> Optional[str]:
        """Resubmit the job behind a failed media turn."""
        job = self._failed.pop(failed_turn_id, None)
        if job is None:
            raise KeyError(f"No failed media turn '{failed_turn_id}'")
        self.transcript.remove_turn(failed_turn_id)
        return await self.submit(job.kind, job.prompt, job.model_id, job.params)

    def forget_missing(self) -> None:
        """Drop retry records whose failed turn is no longer in the transcript."""
        present = {turn.id for turn in self.transcript.turns}
        for turn_id in [t for t in self._failed if t not in present]:
            del self._failed[turn_id]

    def close(self) -> None:
        self.poller.close()
        self._jobs.clear()
        self._failed.clear()

    async def _check(self, job: MediaJob) -> bool:
        payload = await self.dispatch.status_of(job.id)
        status = _job_status(payload.get("status"))
        if not status.is_terminal:
            return False
        if self.poller.closed:
            return True
        job.status = status
        job.result_urls = _result_urls(payload)
        job.error = payload.get("error")
        if status is JobStatus.COMPLETED and not job.result_urls:
            job.status = JobStatus.FAILED
            job.error = job.error or "job completed without a result"
        self._settle(job)
        self._jobs.pop(job.id, None)
        return True

    def _settle(self, job: MediaJob) -> None:
        if job.status is JobStatus.COMPLETED:
            turn = Turn(
                role=Role.ASSISTANT,
                text=job.prompt,
                media=tuple(job.result_urls),
                model_id=job.model_id,
            )
            logger.info("Media job %s completed with %d result(s)", job.id, len(job.result_urls))
        else:
            label = "cancelled" if job.status is JobStatus.CANCELLED else "failed"
            turn = Turn(
                role=Role.ASSISTANT,
                text=f"{job.kind.value.capitalize()} generation {label}: {job.error or 'unknown error'}",
                model_id=job.model_id,
                status=TurnStatus.FAILED,
                error=job.error,
            )
            self._failed[turn.id] = job
            logger.warning("Media job %s %s: %s", job.id or "(undispatched)", label, job.error)
        try:
            self.transcript.replace_turn(job.placeholder_turn_id, turn)
        except KeyError:
            # placeholder was rewound away; the result still lands at the end
            self.transcript.append_turn(turn)


class StudioJobTracker:
    """Creative studio job list: flat, keyed by job id, newest first."""

    def __init__(
        self,
        dispatch: StudioDispatch,
        *,
        interval: float = 3.0,
        on_change: Optional[Callable[[StudioJob], None]] = None,
    ) -> None:
        self.dispatch = dispatch
        self.on_change = on_change
        self.poller = JobPoller(interval, name="studio")
        self.jobs: List[StudioJob] = []

    def get(self, job_id: str) -> Optional[StudioJob]:
        for job in self.jobs:
            if job.job_id == job_id:
                return job
        return None

    @property
    def active_jobs(self) -> List[StudioJob]:
        return [job for job in self.jobs if not job.status.is_terminal]

    async def generate(
        self,
        prompt: str,
        *,
        mode: StudioMode = StudioMode.IMAGE,
        model: Optional[str] = None,
        aspect_ratio: str = "16:9",
        image_url: Optional[str] = None,
        end_image_url: Optional[str] = None,
    ) -> StudioJob:
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required")
        request: Dict[str, Any] = {
            "prompt": prompt.strip(),
            "mode": mode.value,
            "model": model,
            "aspect_ratio": aspect_ratio,
        }
        if mode in (StudioMode.FRAME_TO_VIDEO, StudioMode.VIDEO_MIX) and image_url:
            request["image_url"] = image_url
        if mode is StudioMode.FRAME_TO_VIDEO and end_image_url:
            request["end_image_url"] = end_image_url

        try:
            payload = await self.dispatch.create_job(request)
        except Exception as exc:
            logger.warning("Studio generation request failed: %s", exc)
            raise MediaDispatchError(str(exc) or "Generation failed") from exc

        job = StudioJob.from_payload(payload)
        self.track(job)
        return job

    def track(self, job: StudioJob) -> bool:
        if self.get(job.job_id) is not None:
            logger.info("Studio job %s is already tracked", job.job_id)
            return False
        self.jobs.insert(0, job)
        self._changed(job)
        if not job.status.is_terminal:
            self.poller.track(job.job_id, lambda: self._check(job.job_id))
        return True

    def retry_request(self, job_id: str) -> Dict[str, Any]:
        """Form values for a user-initiated retry of ``job_id``."""
        job = self.get(job_id)
        if job is None:
            raise KeyError(f"No studio job '{job_id}'")
        return {"prompt": job.prompt, "mode": job.mode, "model": job.model}

    def close(self) -> None:
        self.poller.close()

    async def _check(self, job_id: str) -> bool:
        payload = await self.dispatch.get_job(job_id)
        current = self.get(job_id)
        if current is None:
            return True
        merged = StudioJob.from_payload({**current.to_dict(), **payload, "job_id": job_id})
        self.jobs[self.jobs.index(current)] = merged
        if merged.status is not current.status:
            logger.info("Studio job %s: %s -> %s", job_id, current.status.value, merged.status.value)
        self._changed(merged)
        return merged.status.is_terminal

    def _changed(self, job: StudioJob) -> None:
        if self.on_change is not None:
            self.on_change(job)
