"""Compatibility decision maker.

Combines probe metadata with the capability matrix to pick the minimal
transcode strategy and synthesize the binary's invocation options. Decisions
never raise: when metadata cannot be obtained, or classification itself fails,
the result degrades to a high-priority full transcode.
"""
from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Awaitable, Callable, Iterable, Optional

from transcode_engine.domain.capabilities import (
    CapabilityMatrix,
    audio_family,
    get_capability_matrix,
    video_family,
)
from transcode_engine.domain.decision import (
    DecisionSummary,
    Priority,
    Recommendation,
    TranscodeDecision,
    TranscodeOptions,
    TranscodeStrategy,
)
from transcode_engine.domain.probe import MediaProbeResult, parse_dimensions
from transcode_engine.infra.fs import to_local_path
from transcode_engine.services.probe import probe_media

logger = logging.getLogger(__name__)

Prober = Callable[[str], Awaitable[Optional[MediaProbeResult]]]

METADATA_UNAVAILABLE_REASON: str = (
    "Metadata unavailable: could not read video information, "
    "a full transcode is recommended to ensure compatibility"
)
ANALYSIS_FAILED_REASON: str = "Analysis failed, falling back to a safe full transcode"
CONTAINER_ALSO_CHANGES_REASON: str = "The container will also be converted to MP4"

OUTPUT_FORMAT: str = "mp4"

# Placeholder facts used to size the options of a fallback decision.
_FALLBACK_INFO: MediaProbeResult = MediaProbeResult(
    duration=0,
    videoCodec="unknown",
    audioCodec="unknown",
    resolution="1920x1080",
    bitrate="5000000",
)

_VIDEO_NAMES: dict[str, str] = {"hevc": "H.265/HEVC", "av1": "AV1", "vp9": "VP9"}
_AUDIO_NAMES: dict[str, str] = {"ac3": "AC-3", "dts": "DTS", "truehd": "TrueHD", "pcm": "PCM"}

# (video needs transcode, audio needs transcode, container needs change) -> (strategy, priority)
# Once a stream is re-encoded the container change is folded into the encode.
STRATEGY_TABLE: dict[tuple[bool, bool, bool], tuple[TranscodeStrategy, Priority]] = {
    (False, False, False): (TranscodeStrategy.NOT_NEEDED, Priority.LOW),
    (False, False, True): (TranscodeStrategy.CONTAINER_ONLY, Priority.LOW),
    (False, True, False): (TranscodeStrategy.AUDIO_ONLY, Priority.MEDIUM),
    (False, True, True): (TranscodeStrategy.AUDIO_ONLY, Priority.MEDIUM),
    (True, False, False): (TranscodeStrategy.VIDEO_ONLY, Priority.MEDIUM),
    (True, False, True): (TranscodeStrategy.VIDEO_ONLY, Priority.MEDIUM),
    (True, True, False): (TranscodeStrategy.FULL_TRANSCODE, Priority.HIGH),
    (True, True, True): (TranscodeStrategy.FULL_TRANSCODE, Priority.HIGH),
}

_STRATEGY_REASONS: dict[TranscodeStrategy, str] = {
    TranscodeStrategy.NOT_NEEDED: "Video is fully compatible, no transcoding needed",
    TranscodeStrategy.CONTAINER_ONLY: "Codecs are compatible, only the container needs to change to MP4",
    TranscodeStrategy.AUDIO_ONLY: "Video codec is compatible, only the audio needs transcoding to AAC",
    TranscodeStrategy.VIDEO_ONLY: "Audio codec is compatible, only the video needs transcoding to H.264",
    TranscodeStrategy.FULL_TRANSCODE: "Both video and audio need transcoding to H.264 + AAC",
}

_STRATEGY_FACTORS: dict[TranscodeStrategy, float] = {
    TranscodeStrategy.NOT_NEEDED: 0.0,
    TranscodeStrategy.CONTAINER_ONLY: 0.05,
    TranscodeStrategy.AUDIO_ONLY: 0.1,
    TranscodeStrategy.VIDEO_ONLY: 0.8,
    TranscodeStrategy.FULL_TRANSCODE: 1.0,
}

_RESOLUTION_FACTORS: dict[str, float] = {"uhd": 4.0, "qhd": 2.5, "fhd": 2.0, "hd": 1.5, "sd": 1.0}
_CRF_BY_TIER: dict[str, int] = {"uhd": 20, "fhd": 23}
_DEFAULT_CRF: int = 25


@dataclass(frozen=True)
class Compatibility:
    """Per-file compatibility verdict feeding the strategy table."""

    video_supported: bool
    audio_supported: bool
    container_supported: bool
    has_audio: bool
    issues: tuple[str, ...] = ()

    @property
    def video_needs_transcode(self) -> bool:
        return not self.video_supported

    @property
    def audio_needs_transcode(self) -> bool:
        return self.has_audio and not self.audio_supported

    @property
    def container_needs_change(self) -> bool:
        return not self.container_supported


def container_of(file_path: str) -> str:
    """Lower-cased extension of ``file_path`` without the dot."""

    return Path(to_local_path(file_path)).suffix.lower().lstrip(".")


def check_compatibility(info: MediaProbeResult, file_path: str, matrix: CapabilityMatrix) -> Compatibility:
    issues: list[str] = []

    container: str = container_of(file_path)
    container_supported: bool = matrix.supports_container(container)
    if not container_supported:
        issues.append(
            f"Container {container.upper() or 'without extension'} is not supported "
            "by the playback environment, MP4 recommended"
        )

    video_supported: bool = matrix.supports_video(info.videoCodec)
    if not video_supported:
        name: str = _VIDEO_NAMES.get(video_family(info.videoCodec) or "", info.videoCodec)
        issues.append(f"{name} video is not supported by the playback environment")

    audio_supported: bool = True
    if info.has_audio:
        audio_supported = matrix.supports_audio(info.audioCodec)
        if not audio_supported:
            name = _AUDIO_NAMES.get(audio_family(info.audioCodec) or "", info.audioCodec)
            issues.append(f"{name} audio is not supported by the playback environment")

    return Compatibility(
        video_supported=video_supported,
        audio_supported=audio_supported,
        container_supported=container_supported,
        has_audio=info.has_audio,
        issues=tuple(issues),
    )


def classify(
    video_needs_transcode: bool,
    audio_needs_transcode: bool,
    container_needs_change: bool,
) -> tuple[TranscodeStrategy, Priority]:
    return STRATEGY_TABLE[(video_needs_transcode, audio_needs_transcode, container_needs_change)]


def dimension_tier(width: int, height: int) -> str:
    """Bucket a frame size into ``uhd``, ``qhd``, ``fhd``, ``hd`` or ``sd``.

    Notes
    -----
    - Orientation does not matter: the long side is compared with the landscape
      width and the short side with the landscape height, so ``1080x1920`` is
      ``fhd`` like ``1920x1080``.
    """

    long_side, short_side = max(width, height), min(width, height)
    if long_side >= 3840 or short_side >= 2160:
        return "uhd"
    if long_side >= 2560 or short_side >= 1440:
        return "qhd"
    if long_side >= 1920 or short_side >= 1080:
        return "fhd"
    if long_side >= 1280 or short_side >= 720:
        return "hd"
    return "sd"


def resolution_tier(resolution: str) -> str:
    return dimension_tier(*parse_dimensions(resolution))


def audio_bitrate_for(info: MediaProbeResult) -> str:
    bps: int = info.bitrate_bps
    if bps > 10_000_000:
        return "192k"
    if bps > 5_000_000:
        return "128k"
    return "96k"


def crf_for(info: MediaProbeResult) -> int:
    return _CRF_BY_TIER.get(dimension_tier(*info.dimensions), _DEFAULT_CRF)


def preset_for(info: MediaProbeResult) -> str:
    if info.duration > 7200:
        return "slow"
    if info.duration > 3600:
        return "medium"
    return "fast"


def build_options(strategy: TranscodeStrategy, info: MediaProbeResult) -> TranscodeOptions:
    """Synthesize invocation options; they depend only on the strategy and the facts.

    Notes
    -----
    - ``FULL_TRANSCODE`` is the union of the ``VIDEO_ONLY`` and ``AUDIO_ONLY`` sets.
    """

    if strategy is TranscodeStrategy.NOT_NEEDED:
        return TranscodeOptions()

    if strategy is TranscodeStrategy.CONTAINER_ONLY:
        return TranscodeOptions(videoCodec="copy", audioCodec="copy", outputFormat=OUTPUT_FORMAT)

    video_encode: bool = strategy in {TranscodeStrategy.VIDEO_ONLY, TranscodeStrategy.FULL_TRANSCODE}
    audio_encode: bool = strategy in {TranscodeStrategy.AUDIO_ONLY, TranscodeStrategy.FULL_TRANSCODE}
    return TranscodeOptions(
        videoCodec="libx264" if video_encode else "copy",
        crf=crf_for(info) if video_encode else None,
        preset=preset_for(info) if video_encode else None,
        audioCodec="aac" if audio_encode else "copy",
        audioBitrate=audio_bitrate_for(info) if audio_encode else None,
        outputFormat=OUTPUT_FORMAT,
    )


def estimate_seconds(duration: float, strategy: TranscodeStrategy, resolution: str) -> int:
    """``ceil(duration / 60 × resolution factor × strategy factor)``."""

    raw: float = duration / 60 * _RESOLUTION_FACTORS[resolution_tier(resolution)] * _STRATEGY_FACTORS[strategy]
    # Rounding first keeps float noise (e.g. 16.000000000000004) from bumping the ceiling.
    return int(math.ceil(round(raw, 6)))


def fallback_decision(reason: str) -> TranscodeDecision:
    """Most conservative plan, used whenever the facts are unavailable."""

    return TranscodeDecision(
        strategy=TranscodeStrategy.FULL_TRANSCODE,
        reasons=(reason,),
        options=build_options(TranscodeStrategy.FULL_TRANSCODE, _FALLBACK_INFO),
        estimatedSeconds=0,
        priority=Priority.HIGH,
        outputFormat=OUTPUT_FORMAT,
        sourceDuration=0.0,
    )


def build_decision(file_path: str, info: MediaProbeResult, matrix: CapabilityMatrix) -> TranscodeDecision:
    compat: Compatibility = check_compatibility(info, file_path, matrix)
    strategy, priority = classify(
        compat.video_needs_transcode,
        compat.audio_needs_transcode,
        compat.container_needs_change,
    )

    reasons: list[str] = list(compat.issues)
    reasons.append(_STRATEGY_REASONS[strategy])
    if compat.container_needs_change and strategy.severity > TranscodeStrategy.CONTAINER_ONLY.severity:
        reasons.append(CONTAINER_ALSO_CHANGES_REASON)

    options: TranscodeOptions = build_options(strategy, info)
    return TranscodeDecision(
        strategy=strategy,
        reasons=tuple(reasons),
        options=options,
        estimatedSeconds=estimate_seconds(info.duration, strategy, info.resolution),
        priority=priority,
        outputFormat=options.outputFormat or OUTPUT_FORMAT,
        sourceDuration=info.duration,
    )


def format_duration(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds} s"
    if seconds < 3600:
        return f"{seconds // 60} min {seconds % 60} s"
    return f"{seconds // 3600} h {seconds % 3600 // 60} min"


def recommendation_text(decision: TranscodeDecision) -> str:
    eta: str = format_duration(decision.estimatedSeconds)
    headline: str = {
        TranscodeStrategy.NOT_NEEDED: "This video is fully compatible and plays directly, no transcoding needed.",
        TranscodeStrategy.CONTAINER_ONLY: f"Only the container needs to change, which is fast. Estimated time {eta}.",
        TranscodeStrategy.AUDIO_ONLY: f"The picture is compatible but the audio must be transcoded. Estimated time {eta}.",
        TranscodeStrategy.VIDEO_ONLY: f"The audio is compatible but the video must be transcoded. Estimated time {eta}.",
        TranscodeStrategy.FULL_TRANSCODE: f"This video needs a full transcode (video + audio). Estimated time {eta}.",
    }[decision.strategy]
    if not decision.reasons:
        return headline
    return headline + "\n\nDetails:\n" + "\n".join(f"• {reason}" for reason in decision.reasons)


class TranscodeDecisionMaker:
    """Decide transcode strategies for files.

    Notes
    -----
    - The capability matrix is resolved lazily so the process-wide matrix is
      built on first use; tests may inject their own.
    - ``prober`` obtains metadata when the caller does not supply it.
    """

    def __init__(self, matrix: Optional[CapabilityMatrix] = None, prober: Optional[Prober] = None) -> None:
        self._matrix: Optional[CapabilityMatrix] = matrix
        self._prober: Prober = prober or probe_media

    @property
    def matrix(self) -> CapabilityMatrix:
        return self._matrix or get_capability_matrix()

    async def decide(self, file_path: str, info: Optional[MediaProbeResult] = None) -> TranscodeDecision:
        """Classify ``file_path``; never raises.

        Notes
        -----
        - Probes the file when ``info`` is omitted; a failed probe yields the
          metadata-unavailable fallback.
        """

        if info is None:
            try:
                info = await self._prober(file_path)
            except Exception:  # noqa: BLE001 - decisions degrade instead of failing
                logger.exception("Probe raised, using fallback decision", extra={"path": file_path})
                return fallback_decision(ANALYSIS_FAILED_REASON)
        if info is None:
            logger.warning("No metadata, using fallback decision", extra={"path": file_path})
            return fallback_decision(METADATA_UNAVAILABLE_REASON)

        try:
            decision: TranscodeDecision = build_decision(file_path, info, self.matrix)
        except Exception:  # noqa: BLE001 - decisions degrade instead of failing
            logger.exception("Decision failed, using fallback decision", extra={"path": file_path})
            return fallback_decision(ANALYSIS_FAILED_REASON)

        logger.info(
            "Transcode decision",
            extra={"path": file_path, "strategy": decision.strategy.value, "priority": decision.priority.value},
        )
        return decision

    async def decide_batch(self, file_paths: Iterable[str]) -> dict[str, TranscodeDecision]:
        """Classify files concurrently; one failure only degrades its own entry."""

        paths: list[str] = list(dict.fromkeys(file_paths))
        results = await asyncio.gather(*(self.decide(path) for path in paths), return_exceptions=True)

        decisions: dict[str, TranscodeDecision] = {}
        for path, result in zip(paths, results):
            if isinstance(result, TranscodeDecision):
                decisions[path] = result
            elif isinstance(result, Exception):
                logger.error("Batch entry failed", extra={"path": path, "error": str(result)})
                decisions[path] = fallback_decision(ANALYSIS_FAILED_REASON)
            else:
                raise result
        return decisions

    async def recommend(self, file_path: str) -> Recommendation:
        decision: TranscodeDecision = await self.decide(file_path)
        return Recommendation(
            strategy=decision.strategy,
            humanReadableRecommendation=recommendation_text(decision),
            canExecute=decision.strategy is not TranscodeStrategy.NOT_NEEDED,
            decision=decision,
        )


def summarize(decisions: dict[str, TranscodeDecision]) -> DecisionSummary:
    summary: DecisionSummary = DecisionSummary(
        totalFiles=len(decisions),
        strategyBreakdown={strategy.value: 0 for strategy in TranscodeStrategy},
        priorityBreakdown={priority.value: 0 for priority in Priority},
    )
    for decision in decisions.values():
        summary.strategyBreakdown[decision.strategy.value] += 1
        summary.priorityBreakdown[decision.priority.value] += 1
        if decision.strategy is not TranscodeStrategy.NOT_NEEDED:
            summary.needsTranscode += 1
            summary.totalEstimatedSeconds += decision.estimatedSeconds
        if decision.priority is Priority.HIGH:
            summary.highPriorityCount += 1
    return summary


def sort_by_priority(decisions: dict[str, TranscodeDecision]) -> list[tuple[str, TranscodeDecision]]:
    """Order entries high → medium → low, keeping input order within a priority."""

    return sorted(decisions.items(), key=lambda item: -item[1].priority.rank)


# Global decision maker for app scope
decision_maker: TranscodeDecisionMaker = TranscodeDecisionMaker()
