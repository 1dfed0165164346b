"""Domain models for transcode decisions.

A decision is built fresh per input file, is immutable once returned, and is
consumed at most once by the executor.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class TranscodeStrategy(str, Enum):
    """Minimal transcode operation needed for a file to become playable.

    Notes
    -----
    - Severity order: ``NOT_NEEDED`` < ``CONTAINER_ONLY`` < ``AUDIO_ONLY`` ≈
      ``VIDEO_ONLY`` < ``FULL_TRANSCODE``; see ``severity``.
    """

    NOT_NEEDED = "not_needed"
    AUDIO_ONLY = "audio_only"
    VIDEO_ONLY = "video_only"
    FULL_TRANSCODE = "full_transcode"
    CONTAINER_ONLY = "container_only"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @property
    def operation(self) -> str:
        """File-name suffix describing what the strategy does to the input."""

        return _OPERATION[self]


_SEVERITY: dict[TranscodeStrategy, int] = {
    TranscodeStrategy.NOT_NEEDED: 0,
    TranscodeStrategy.CONTAINER_ONLY: 1,
    TranscodeStrategy.AUDIO_ONLY: 2,
    TranscodeStrategy.VIDEO_ONLY: 2,
    TranscodeStrategy.FULL_TRANSCODE: 3,
}

_OPERATION: dict[TranscodeStrategy, str] = {
    TranscodeStrategy.NOT_NEEDED: "copy",
    TranscodeStrategy.CONTAINER_ONLY: "remuxed",
    TranscodeStrategy.AUDIO_ONLY: "audio_transcoded",
    TranscodeStrategy.VIDEO_ONLY: "video_transcoded",
    TranscodeStrategy.FULL_TRANSCODE: "transcoded",
}


class Priority(str, Enum):
    """How urgently a file should be transcoded."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {Priority.LOW: 1, Priority.MEDIUM: 2, Priority.HIGH: 3}[self]


class TranscodeOptions(BaseModel):
    """Invocation options for the transcoding binary.

    Notes
    -----
    - ``"copy"`` as a codec means the stream is passed through untouched.
    - Unset fields fall back to the command builder defaults
      (``libx264``/``aac``, CRF 23, preset ``fast``, audio ``128k``).
    """

    model_config = ConfigDict(frozen=True)

    videoCodec: Optional[str] = Field(default=None, description="Video encoder or 'copy'")
    audioCodec: Optional[str] = Field(default=None, description="Audio encoder or 'copy'")
    videoBitrate: Optional[str] = Field(default=None, description="Target video bitrate, e.g. '4M'")
    audioBitrate: Optional[str] = Field(default=None, description="Target audio bitrate, e.g. '128k'")
    crf: Optional[int] = Field(default=None, description="Constant rate factor for x264/x265")
    preset: Optional[str] = Field(default=None, description="Encoder speed/quality preset")
    outputFormat: Optional[str] = Field(default=None, description="Output container")


class TranscodeDecision(BaseModel):
    """Immutable result of classifying one input file."""

    model_config = ConfigDict(frozen=True)

    strategy: TranscodeStrategy = Field(description="Chosen strategy")
    reasons: tuple[str, ...] = Field(default=(), description="Ordered human-readable justifications")
    options: TranscodeOptions = Field(default_factory=TranscodeOptions, description="Invocation options")
    estimatedSeconds: int = Field(default=0, description="Estimated transcode time in seconds")
    priority: Priority = Field(default=Priority.LOW, description="Transcode priority")
    outputFormat: str = Field(default="mp4", description="Output container")
    sourceDuration: float = Field(default=0.0, description="Duration of the input in seconds, 0 when unknown")


class DecisionRequest(BaseModel):
    """Request payload to classify a single file."""

    path: str = Field(description="Local path or file:// URL of the media file")


class BatchDecisionRequest(BaseModel):
    """Request payload to classify several files."""

    paths: list[str] = Field(description="Local paths or file:// URLs")


class Recommendation(BaseModel):
    """Recommendation contract exposed to the UI."""

    strategy: TranscodeStrategy = Field(description="Chosen strategy")
    humanReadableRecommendation: str = Field(description="Text shown to the user")
    canExecute: bool = Field(description="False only when no transcode is needed")
    decision: TranscodeDecision = Field(description="The underlying decision")


class DecisionSummary(BaseModel):
    """Aggregate view over a batch of decisions."""

    totalFiles: int = 0
    needsTranscode: int = 0
    totalEstimatedSeconds: int = 0
    highPriorityCount: int = 0
    strategyBreakdown: dict[str, int] = Field(default_factory=dict)
    priorityBreakdown: dict[str, int] = Field(default_factory=dict)


class BatchDecisionEntry(BaseModel):
    """One file's decision in a batch result."""

    path: str = Field(description="Path as given in the request")
    decision: TranscodeDecision = Field(description="Decision for the file")


class BatchDecisionResponse(BaseModel):
    """Envelope for a batch analysis, highest priority first."""

    success: bool = Field(default=True, description="Always true: decisions never hard-fail")
    decisions: list[BatchDecisionEntry] = Field(default_factory=list, description="Decisions by priority")
    summary: DecisionSummary = Field(description="Aggregate counts over the batch")
