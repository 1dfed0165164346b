"""Domain models for transcode execution.

``TranscodeSession`` is the one piece of mutable shared state in the engine.
It is owned by the executor and only touched while the executor's lock is held.
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field

from transcode_engine.domain.decision import TranscodeDecision, TranscodeOptions

_session_ids = itertools.count(1)


class SessionState(str, Enum):
    """Lifecycle of a transcode session.

    Notes
    -----
    - ``IDLE`` → ``RUNNING`` → one of ``COMPLETED``, ``CANCELLED``, ``FAILED``.
    - Terminal states are never left.
    """

    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {SessionState.COMPLETED, SessionState.CANCELLED, SessionState.FAILED}


class TranscodeProgress(BaseModel):
    """Progress snapshot emitted repeatedly while a transcode runs.

    Notes
    -----
    - ``progress`` is clamped to [0, 100] but is not guaranteed monotonic: it is
      re-derived from two output streams and may jitter.
    """

    progress: float = Field(description="Percent complete [0-100]")
    time: str = Field(description="Elapsed media time as HH:MM:SS")
    fps: str = Field(default="0", description="Encoding frames per second")
    bitrate: str = Field(default="0kb/s", description="Current output bitrate")
    speed: str = Field(default="0x", description="Encoding speed relative to realtime")


@dataclass
class TranscodeSession:
    """Mutable record of the currently running transcode subprocess.

    Notes
    -----
    - ``process`` is owned exclusively by the session and cleared when the
      session reaches a terminal state.
    - ``force_kill`` is the armed escalation timer, if any; it is cancelled
      exactly once when the session finishes.
    """

    input_path: Path
    output_path: Path
    process: Optional[Any] = None
    cancel_requested: bool = False
    force_kill: Optional[asyncio.TimerHandle] = None
    state: SessionState = SessionState.IDLE
    id: int = field(default_factory=lambda: next(_session_ids))

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.process, "pid", None)

    def disarm(self) -> None:
        """Cancel the escalation timer if it is armed."""

        if self.force_kill is not None:
            self.force_kill.cancel()
            self.force_kill = None


class TranscodeRequest(BaseModel):
    """Request payload to start a transcode.

    Notes
    -----
    - When ``decision`` is omitted the engine decides on the fly for ``inputPath``.
    - ``options`` overrides the invocation options of the decision.
    """

    inputPath: str = Field(description="Local path or file:// URL of the input")
    outputPath: Optional[str] = Field(default=None, description="Output path; derived from the input if omitted")
    decision: Optional[TranscodeDecision] = Field(default=None, description="Previously computed decision")
    options: Optional[TranscodeOptions] = Field(default=None, description="Explicit invocation options")


class ApiResponse(BaseModel):
    """Uniform envelope returned by the command surface."""

    success: bool = Field(description="Whether the command succeeded")
    error: Optional[str] = Field(default=None, description="Error message if it failed")


class TranscodeResponse(ApiResponse):
    """Envelope describing the terminal result of a transcode."""

    outputPath: Optional[str] = Field(default=None, description="Output as a percent-encoded file:// URL")
    cancelled: bool = Field(default=False, description="True when the user cancelled the transcode")
