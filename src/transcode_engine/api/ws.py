"""WebSocket routes for streaming job progress events."""
from __future__ import annotations

import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from transcode_engine.domain.jobs import manager

router: APIRouter = APIRouter()

POLL_INTERVAL_SECONDS: float = 0.5


@router.websocket("/ws/jobs/{job_id}")
async def ws_job_progress(websocket: WebSocket, job_id: str) -> None:
    """WebSocket endpoint to stream job progress events.

    Parameters
    ----------
    websocket: WebSocket
        The websocket connection.
    job_id: str
        The job identifier to subscribe to.

    Notes
    -----
    - Message types and payloads:
      - ``{"type":"status", ...snapshot}`` initial snapshot.
      - ``{"type":"progress", ...}`` during the download or transcode.
      - ``{"type":"complete"|"error"|"cancelled", ...}`` from the job runner.
      - ``{"type":"final", ...snapshot, "result": {...}}`` once a terminal state is
        observed (SUCCEEDED/FAILED/CANCELLED).
    - Lifecycle: the socket is kept open by a lightweight loop until a terminal
      state is reached or the client disconnects. Subscribers are automatically
      registered/unregistered against the in-memory manager.
    """

    await websocket.accept()
    await manager.subscribe(job_id, websocket)

    try:
        job = await manager.get_job(job_id)
        if job is not None:
            await websocket.send_json({"type": "status", **job.snapshot().model_dump(mode="json")})

        # Keep the socket open until job reaches a terminal state or disconnect
        while True:
            await asyncio.sleep(POLL_INTERVAL_SECONDS)
            job = await manager.get_job(job_id)
            if job is None:
                break
            if job.status.is_terminal:
                await websocket.send_json(
                    {
                        "type": "final",
                        **job.snapshot().model_dump(mode="json"),
                        "result": job.envelope().model_dump(mode="json"),
                    }
                )
                break
    except WebSocketDisconnect:
        pass
    finally:
        await manager.unsubscribe(job_id, websocket)
