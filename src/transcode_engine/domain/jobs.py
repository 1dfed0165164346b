"""Domain models and in-memory job manager for long-running engine tasks.

This module defines a lightweight, process-local job system. Runtime downloads
and transcodes run as jobs observed in real time via WebSocket. Jobs are not
persisted. Concurrency is coordinated with ``asyncio.Lock`` to provide basic
consistency guarantees without external storage.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from transcode_engine.domain.decision import TranscodeDecision
from transcode_engine.domain.errors import is_cancellation_message
from transcode_engine.domain.transcode import TranscodeProgress, TranscodeResponse
from transcode_engine.infra.fs import to_file_url

logger = logging.getLogger(__name__)


class JobKind(str, Enum):
    """What a job does."""

    DOWNLOAD = "download"
    TRANSCODE = "transcode"


class JobStatus(str, Enum):
    """Enumeration of job statuses.

    Notes
    -----
    - Terminal states are ``SUCCEEDED``, ``FAILED``, and ``CANCELLED``.
    - State transitions are monotonic and managed by the job runners.
    """

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in {JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELLED}


class JobSnapshot(BaseModel):
    """Serializable snapshot of a job's current state for API responses.

    Notes
    -----
    - ``progressPercent`` is clamped to [0, 100]. It grows monotonically for
      downloads; transcode progress may jitter slightly.
    - ``outputPath`` is a ``file://`` URL, present once a job has succeeded.
    - ``errorCategory`` tells download failures apart (``network``,
      ``extraction``, ``installation``).
    """

    jobId: str = Field(description="Unique job identifier")
    kind: JobKind = Field(description="Download or transcode")
    status: JobStatus = Field(description="Current job status")
    progressPercent: float = Field(description="Progress percent [0-100]")
    progress: Optional[TranscodeProgress] = Field(default=None, description="Latest transcode progress event")
    inputPath: Optional[str] = Field(default=None, description="Transcode input path")
    outputPath: Optional[str] = Field(default=None, description="Result as a file:// URL if completed")
    error: Optional[str] = Field(default=None, description="Error message if failed or cancelled")
    errorCategory: Optional[str] = Field(default=None, description="Failure category for downloads")
    cancelled: bool = Field(default=False, description="True when the user cancelled the job")


@dataclass
class Job:
    """Internal job state tracked by the JobManager.

    Notes
    -----
    - Instances are mutated by the job runner; callers should treat fields as
      volatile and rely on snapshots or broadcast events for UI updates.
    - ``result_path`` is the installed binary for downloads and the output file
      for transcodes.
    """

    id: str
    kind: JobKind
    input_path: Optional[str] = None
    output_path: Optional[str] = None
    decision: Optional[TranscodeDecision] = None
    status: JobStatus = JobStatus.QUEUED
    progress_percent: float = 0.0
    last_progress: Optional[TranscodeProgress] = None
    result_path: Optional[Path] = None
    error: Optional[str] = None
    error_category: Optional[str] = None
    cancelled: bool = False
    task: Optional[asyncio.Task[Any]] = None

    @property
    def was_cancelled(self) -> bool:
        """Cancelled either explicitly or through a ``[CANCELLED]`` error message."""

        return self.cancelled or is_cancellation_message(self.error)

    def snapshot(self) -> JobSnapshot:
        """Return a serializable snapshot of the job state."""

        return JobSnapshot(
            jobId=self.id,
            kind=self.kind,
            status=self.status,
            progressPercent=self.progress_percent,
            progress=self.last_progress,
            inputPath=self.input_path,
            outputPath=to_file_url(self.result_path) if self.result_path else None,
            error=self.error,
            errorCategory=self.error_category,
            cancelled=self.was_cancelled,
        )

    def envelope(self) -> TranscodeResponse:
        """Uniform result envelope for a terminal job."""

        return TranscodeResponse(
            success=self.status is JobStatus.SUCCEEDED,
            error=self.error,
            outputPath=to_file_url(self.result_path) if self.result_path else None,
            cancelled=self.was_cancelled,
        )


class JobManager:
    """Simple in-memory job registry and coordination layer.

    Notes
    -----
    - Process-local only: no persistence, no cross-process coordination.
    - Uses an ``asyncio.Lock`` to serialize concurrent access to maps.
    - Maintains best-effort subscriber sets per job for WebSocket fan-out.
    """

    def __init__(self) -> None:
        self._jobs: Dict[str, Job] = {}
        self._lock: asyncio.Lock = asyncio.Lock()
        self._subscribers: Dict[str, set[Any]] = {}
        self._tasks: Dict[str, asyncio.Task[Any]] = {}

    async def create_job(
        self,
        kind: JobKind,
        input_path: Optional[str] = None,
        output_path: Optional[str] = None,
        decision: Optional[TranscodeDecision] = None,
    ) -> Job:
        """Create and register a new job with QUEUED status.

        Notes
        -----
        - Generates a UUIDv4 identifier.
        - Initializes subscriber tracking for the job.
        """

        job_id: str = uuid.uuid4().hex
        job: Job = Job(id=job_id, kind=kind, input_path=input_path, output_path=output_path, decision=decision)
        async with self._lock:
            self._jobs[job_id] = job
            self._subscribers.setdefault(job_id, set())
        return job

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Retrieve a job by id.

        Returns
        -------
        Optional[Job]
            The job if present; otherwise ``None``.
        """

        async with self._lock:
            return self._jobs.get(job_id)

    async def active_job(self, kind: JobKind) -> Optional[Job]:
        """Return a non-terminal job of ``kind``, if one exists."""

        async with self._lock:
            for job in self._jobs.values():
                if job.kind is kind and not job.status.is_terminal:
                    return job
        return None

    async def set_task(self, job_id: str, task: asyncio.Task[Any]) -> None:
        """Associate an asyncio task with a job for cancellation and tracking."""

        async with self._lock:
            self._tasks[job_id] = task
            job = self._jobs.get(job_id)
            if job is not None:
                job.task = task

    async def cancel(self, job_id: str) -> bool:
        """Cancel a running job if possible.

        Returns
        -------
        bool
            ``True`` if a pending task was found and cancellation was requested; otherwise ``False``.
        """

        async with self._lock:
            task = self._tasks.get(job_id)
        if task and not task.done():
            task.cancel()
            return True
        return False

    async def subscribe(self, job_id: str, ws: Any) -> None:
        """Register a websocket subscriber for a job."""

        async with self._lock:
            self._subscribers.setdefault(job_id, set()).add(ws)

    async def unsubscribe(self, job_id: str, ws: Any) -> None:
        """Unregister a websocket subscriber.

        Notes
        -----
        - No-op if the subscriber was not registered.
        """

        async with self._lock:
            subs = self._subscribers.get(job_id)
            if subs and ws in subs:
                subs.remove(ws)

    async def broadcast(self, job_id: str, message: dict[str, Any]) -> None:
        """Send a message to all subscribers of a job.

        Notes
        -----
        - Best-effort fan-out: a subscriber whose send fails is dropped so it
          cannot block the others.
        - Payloads are expected to be JSON-serializable.
        """

        async with self._lock:
            subscribers = list(self._subscribers.get(job_id, set()))
        for ws in subscribers:
            try:
                await ws.send_json(message)
            except Exception as ex:  # noqa: BLE001 - subscriber likely disconnected
                logger.debug("Dropping job subscriber", extra={"jobId": job_id, "error": str(ex)})
                await self.unsubscribe(job_id, ws)


# Global manager instance for app scope
manager: JobManager = JobManager()
