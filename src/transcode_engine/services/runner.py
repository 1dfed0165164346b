"""Job runners executing downloads and transcodes with progress broadcast."""
from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Generic, Optional, TypeVar

import httpx

from transcode_engine.core.config import Settings, get_settings
from transcode_engine.domain.errors import AcquisitionError, EngineError, TranscodeCancelled
from transcode_engine.domain.jobs import Job, JobManager, JobStatus
from transcode_engine.domain.transcode import TranscodeProgress
from transcode_engine.services.acquisition import download_runtime
from transcode_engine.services.executor import TranscodeExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CHANNEL_SIZE: int = 64


class ProgressChannel(Generic[T]):
    """Bounded single-consumer channel between a synchronous producer and an async consumer.

    Notes
    -----
    - ``publish`` never blocks: when the buffer is full the oldest pending item
      is dropped, so a slow consumer cannot stall the subprocess pipes feeding
      the producer.
    - ``close`` ends ``stream`` after the items already buffered.
    """

    _CLOSED: object = object()

    def __init__(self, maxsize: int = DEFAULT_CHANNEL_SIZE) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue(maxsize=maxsize)
        self.dropped: int = 0

    def publish(self, item: T) -> None:
        self._put(item)

    def close(self) -> None:
        self._put(self._CLOSED)

    def _put(self, item: object) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            self.dropped += 1
        self._queue.put_nowait(item)

    async def stream(self) -> AsyncIterator[T]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item  # type: ignore[misc]


_TERMINAL_EVENTS: dict[JobStatus, str] = {
    JobStatus.SUCCEEDED: "complete",
    JobStatus.FAILED: "error",
    JobStatus.CANCELLED: "cancelled",
}


async def _final(job: Job, manager: JobManager) -> None:
    logger.info(
        "Job finished",
        extra={"jobId": job.id, "kind": job.kind.value, "status": job.status.value, "error": job.error},
    )
    await manager.broadcast(
        job.id,
        {
            "type": _TERMINAL_EVENTS.get(job.status, "error"),
            **job.snapshot().model_dump(mode="json"),
            "result": job.envelope().model_dump(mode="json"),
        },
    )


async def run_transcode_job(job: Job, manager: JobManager, executor: TranscodeExecutor) -> None:
    """Run a transcode job and stream its progress to subscribers.

    Parameters
    ----------
    job: Job
        A ``TRANSCODE`` job carrying the input path and decision.
    manager: JobManager
        In-memory job manager to broadcast progress.
    executor: TranscodeExecutor
        Executor owning the transcode session.

    Notes
    -----
    - Broadcast messages:
      - ``{"type":"status","status": <JobStatus>}`` upon job start.
      - ``{"type":"progress", "progress": float, "time": str, "fps": str, "bitrate": str, "speed": str}``
        during the transcode.
      - ``{"type":"complete"|"error"|"cancelled", ...snapshot, "result": {success, error, outputPath, cancelled}}``
        once a terminal state is reached.
    - Progress flows through a bounded ``ProgressChannel``; the executor's
      callback only enqueues.
    - A user cancellation is a terminal ``CANCELLED`` state, not a failure; its
      error keeps the ``[CANCELLED]`` prefix.
    """

    if job.input_path is None or job.decision is None:
        raise ValueError("Transcode job requires an input path and a decision")

    channel: ProgressChannel[TranscodeProgress] = ProgressChannel()

    async def relay() -> None:
        async for progress in channel.stream():
            job.last_progress = progress
            job.progress_percent = progress.progress
            await manager.broadcast(job.id, {"type": "progress", **progress.model_dump()})

    job.status = JobStatus.RUNNING
    await manager.broadcast(job.id, {"type": "status", "status": job.status})
    relay_task: asyncio.Task[None] = asyncio.create_task(relay())

    try:
        job.result_path = await executor.start(
            job.input_path,
            job.decision,
            output_path=job.output_path,
            on_progress=channel.publish,
        )
        job.status = JobStatus.SUCCEEDED
        job.progress_percent = 100.0
    except TranscodeCancelled as ex:
        job.status = JobStatus.CANCELLED
        job.error = str(ex)
    except EngineError as ex:
        job.status = JobStatus.FAILED
        job.error = str(ex)
    except asyncio.CancelledError:
        job.status = JobStatus.CANCELLED
        job.error = str(TranscodeCancelled())
        raise
    finally:
        channel.close()
        await relay_task
        await _final(job, manager)


async def run_download_job(
    job: Job,
    manager: JobManager,
    settings: Optional[Settings] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> None:
    """Acquire the transcoding runtime and stream download progress.

    Notes
    -----
    - ``progressPercent`` is monotonic: it only reports byte progress of the
      archive download, which never regresses.
    - Failures keep the ``AcquisitionError`` category in ``errorCategory`` so
      the UI can offer the right remediation.
    """

    settings = settings or get_settings()
    channel: ProgressChannel[float] = ProgressChannel()

    async def relay() -> None:
        async for percent in channel.stream():
            if percent < job.progress_percent:
                continue
            job.progress_percent = percent
            await manager.broadcast(job.id, {"type": "progress", "progressPercent": percent})

    job.status = JobStatus.RUNNING
    await manager.broadcast(job.id, {"type": "status", "status": job.status})
    relay_task: asyncio.Task[None] = asyncio.create_task(relay())

    try:
        job.result_path = await download_runtime(settings, on_progress=channel.publish, client=client)
        job.status = JobStatus.SUCCEEDED
        job.progress_percent = 100.0
    except AcquisitionError as ex:
        job.status = JobStatus.FAILED
        job.error = str(ex)
        job.error_category = ex.category
    except asyncio.CancelledError:
        job.status = JobStatus.CANCELLED
        job.cancelled = True
        job.error = "Download cancelled"
        raise
    finally:
        channel.close()
        await relay_task
        await _final(job, manager)
