"""HTTP API routes for the transcode engine command surface."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from fastapi import APIRouter, HTTPException

from transcode_engine.core.config import Settings, get_settings
from transcode_engine.domain.decision import (
    BatchDecisionEntry,
    BatchDecisionRequest,
    BatchDecisionResponse,
    DecisionRequest,
    Recommendation,
    TranscodeDecision,
    TranscodeStrategy,
)
from transcode_engine.domain.errors import ProbeError
from transcode_engine.domain.jobs import JobKind, JobSnapshot, manager
from transcode_engine.domain.probe import MediaProbeResult, VideoInfoRequest, VideoInfoResponse
from transcode_engine.domain.runtime import ExistsResponse, JobStartedResponse, PathResponse, VersionResponse
from transcode_engine.domain.transcode import ApiResponse, TranscodeRequest
from transcode_engine.services.acquisition import binary_exists, get_data_directory, get_install_path, get_version
from transcode_engine.services.decision import decision_maker, sort_by_priority, summarize
from transcode_engine.services.executor import executor
from transcode_engine.services.probe import run_probe
from transcode_engine.services.runner import run_download_job, run_transcode_job

logger = logging.getLogger(__name__)

router: APIRouter = APIRouter(prefix="/api", tags=["api"])


@router.get("/runtime/exists", response_model=ExistsResponse)
def get_exists() -> ExistsResponse:
    """Report whether the transcoding binary is installed."""

    return ExistsResponse(success=True, exists=binary_exists(get_install_path(get_settings())))


@router.get("/runtime/version", response_model=VersionResponse)
async def get_runtime_version() -> VersionResponse:
    """Return the version of the installed binary.

    Notes
    -----
    - ``success`` is false when the binary is missing or cannot be run.
    """

    binary: Path = get_install_path(get_settings())
    if not binary_exists(binary):
        return VersionResponse(success=False, error=f"Transcoding runtime is not installed at {binary}")
    version: Optional[str] = await get_version(binary)
    if version is None:
        return VersionResponse(success=False, error="Could not read the runtime version")
    return VersionResponse(success=True, version=version)


@router.get("/runtime/install-path", response_model=PathResponse)
def get_runtime_install_path() -> PathResponse:
    return PathResponse(success=True, path=str(get_install_path(get_settings())))


@router.get("/runtime/data-directory", response_model=PathResponse)
def get_runtime_data_directory() -> PathResponse:
    return PathResponse(success=True, path=str(get_data_directory(get_settings())))


@router.post("/runtime/download", response_model=JobStartedResponse)
async def post_download() -> JobStartedResponse:
    """Start acquiring the runtime and return the job id.

    Notes
    -----
    - Spawns an asyncio task; clients observe progress via WebSocket
      ``/ws/jobs/{job_id}`` or poll ``GET /api/jobs/{job_id}``.
    - Only one download runs at a time; a second request is rejected with the
      id of the running job.
    """

    active = await manager.active_job(JobKind.DOWNLOAD)
    if active is not None:
        return JobStartedResponse(success=False, error="A runtime download is already in progress", jobId=active.id)

    settings: Settings = get_settings()
    job = await manager.create_job(JobKind.DOWNLOAD)
    task = asyncio.create_task(run_download_job(job, manager, settings))
    await manager.set_task(job.id, task)
    return JobStartedResponse(success=True, jobId=job.id)


@router.post("/video-info", response_model=VideoInfoResponse)
async def post_video_info(payload: VideoInfoRequest) -> VideoInfoResponse:
    """Probe a local media file and return its metadata.

    Notes
    -----
    - Probe failures are reported in the envelope with the failure reason in
      the message; they never surface as HTTP errors.
    """

    try:
        info: MediaProbeResult = await run_probe(payload.path, get_install_path(get_settings()))
    except ProbeError as ex:
        logger.warning("Video info failed", extra={"path": payload.path, "reason": ex.reason})
        return VideoInfoResponse(success=False, error=str(ex))
    return VideoInfoResponse(success=True, info=info)


@router.post("/decision", response_model=Recommendation)
async def post_decision(payload: DecisionRequest) -> Recommendation:
    """Recommend a transcode strategy for one file.

    Notes
    -----
    - Never fails: an unreadable file yields a full-transcode recommendation.
    """

    return await decision_maker.recommend(payload.path)


@router.post("/decision/batch", response_model=BatchDecisionResponse)
async def post_decision_batch(payload: BatchDecisionRequest) -> BatchDecisionResponse:
    """Classify several files concurrently, highest priority first, with a summary."""

    decisions: dict[str, TranscodeDecision] = await decision_maker.decide_batch(payload.paths)
    return BatchDecisionResponse(
        decisions=[BatchDecisionEntry(path=path, decision=decision) for path, decision in sort_by_priority(decisions)],
        summary=summarize(decisions),
    )


@router.post("/transcode", response_model=JobStartedResponse)
async def post_transcode(payload: TranscodeRequest) -> JobStartedResponse:
    """Start a transcode job and return the job id.

    Notes
    -----
    - Without a ``decision`` the input is classified first. Explicit
      ``options`` replace the decision's options.
    - Files that need no transcode and requests made while another transcode
      runs are rejected in the envelope.
    - The terminal result (``outputPath`` as a ``file://`` URL, ``cancelled``)
      is delivered on the job's WebSocket and in its snapshot.
    """

    active = await manager.active_job(JobKind.TRANSCODE)
    if active is not None or executor.is_running:
        return JobStartedResponse(
            success=False,
            error="A transcode is already running",
            jobId=active.id if active is not None else None,
        )

    decision: TranscodeDecision = payload.decision or await decision_maker.decide(payload.inputPath)
    if payload.options is not None:
        decision = decision.model_copy(
            update={
                "options": payload.options,
                "outputFormat": payload.options.outputFormat or decision.outputFormat,
            }
        )
    if decision.strategy is TranscodeStrategy.NOT_NEEDED:
        return JobStartedResponse(success=False, error="File is already compatible; no transcode needed")

    job = await manager.create_job(
        JobKind.TRANSCODE,
        input_path=payload.inputPath,
        output_path=payload.outputPath,
        decision=decision,
    )
    task = asyncio.create_task(run_transcode_job(job, manager, executor))
    await manager.set_task(job.id, task)
    return JobStartedResponse(success=True, jobId=job.id)


@router.post("/transcode/cancel", response_model=ApiResponse)
async def post_transcode_cancel() -> ApiResponse:
    """Request cancellation of the running transcode.

    Notes
    -----
    - Returns once the termination signal is sent; the job reaches its
      ``cancelled`` state when the process exits.
    """

    if await executor.cancel():
        return ApiResponse(success=True)
    return ApiResponse(success=False, error="No transcode is running")


@router.get("/jobs/{job_id}", response_model=JobSnapshot)
async def get_job(job_id: str) -> JobSnapshot:
    """Return a snapshot of the job status.

    Notes
    -----
    - Returns 404 if the job id is unknown or expired (in-memory only).
    """

    job = await manager.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.snapshot()


@router.post("/jobs/{job_id}/cancel")
async def post_cancel(job_id: str) -> dict[str, Any]:
    """Attempt to cancel a running job.

    Notes
    -----
    - Best-effort: returns ``{"ok": true}`` if the background task was found and cancellation was requested
      before completion; otherwise ``{"ok": false}``.
    - Cancelling a transcode job this way kills its process immediately; use
      ``/api/transcode/cancel`` for a graceful stop.
    """

    ok: bool = await manager.cancel(job_id)
    return {"ok": ok}
