"""Capability matrix of the playback environment.

The matrix lists which video codec families, audio codec families and
containers the environment renders without transcoding. It is built once per
process from settings and is read-only afterwards, so decisions can consult it
without locking.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterable, Optional

from transcode_engine.core.config import Settings, get_settings

logger = logging.getLogger(__name__)

VIDEO_FAMILIES: frozenset[str] = frozenset(
    {"h264_baseline", "h264_main", "h264_high", "hevc", "av1", "vp9"}
)
AUDIO_FAMILIES: frozenset[str] = frozenset({"aac", "ac3", "dts", "truehd", "pcm"})
CONTAINERS: frozenset[str] = frozenset({"mp4", "webm", "mkv", "ogg"})

# No playback environment in the matrix renders TrueHD.
NEVER_SUPPORTED_AUDIO: frozenset[str] = frozenset({"truehd"})


def _normalize(values: Iterable[str], known: frozenset[str], kind: str) -> frozenset[str]:
    normalized: set[str] = set()
    for value in values:
        token: str = value.strip().lower()
        if token not in known:
            logger.warning("Ignoring unknown %s capability %r", kind, value)
            continue
        normalized.add(token)
    return frozenset(normalized)


def video_family(codec: str) -> Optional[str]:
    """Map a probed video codec token to a gated family, or ``None`` if ungated.

    Notes
    -----
    - Matching is substring-based because encoders report variants such as
      ``hevc``, ``h265`` or ``libx265``.
    """

    token: str = codec.lower()
    if "hevc" in token or "h265" in token or "265" in token:
        return "hevc"
    if "av1" in token:
        return "av1"
    if "vp9" in token:
        return "vp9"
    return None


def audio_family(codec: str) -> Optional[str]:
    """Map a probed audio codec token to a gated family, or ``None`` if ungated."""

    token: str = codec.lower()
    if "ac-3" in token or "ac3" in token:
        return "ac3"
    if "dts" in token:
        return "dts"
    if "truehd" in token or "mlp" in token:
        return "truehd"
    if "pcm" in token:
        return "pcm"
    return None


@dataclass(frozen=True)
class CapabilityMatrix:
    """Read-only table of natively supported codecs and containers."""

    video_codecs: frozenset[str] = field(default_factory=frozenset)
    audio_codecs: frozenset[str] = field(default_factory=frozenset)
    containers: frozenset[str] = field(default_factory=frozenset)

    def __post_init__(self) -> None:
        object.__setattr__(self, "video_codecs", _normalize(self.video_codecs, VIDEO_FAMILIES, "video"))
        object.__setattr__(
            self,
            "audio_codecs",
            _normalize(self.audio_codecs, AUDIO_FAMILIES, "audio") - NEVER_SUPPORTED_AUDIO,
        )
        object.__setattr__(self, "containers", _normalize(self.containers, CONTAINERS, "container"))

    @classmethod
    def from_settings(cls, settings: Settings) -> "CapabilityMatrix":
        """Build the matrix from the configured playback profile."""

        return cls(
            video_codecs=frozenset(settings.supported_video_codecs),
            audio_codecs=frozenset(settings.supported_audio_codecs),
            containers=frozenset(settings.supported_containers),
        )

    def supports_video(self, codec: str) -> bool:
        """Whether the probed video codec plays natively."""

        family: Optional[str] = video_family(codec)
        return family is None or family in self.video_codecs

    def supports_audio(self, codec: str) -> bool:
        """Whether the probed audio codec plays natively."""

        family: Optional[str] = audio_family(codec)
        return family is None or family in self.audio_codecs

    def supports_container(self, extension: str) -> bool:
        """Whether the container extension (without dot) opens natively."""

        return extension.lower().lstrip(".") in self.containers


@lru_cache(maxsize=1)
def get_capability_matrix() -> CapabilityMatrix:
    """Return the process-wide capability matrix, built on first use."""

    matrix: CapabilityMatrix = CapabilityMatrix.from_settings(get_settings())
    logger.info(
        "Capability matrix initialized",
        extra={
            "video": sorted(matrix.video_codecs),
            "audio": sorted(matrix.audio_codecs),
            "containers": sorted(matrix.containers),
        },
    )
    return matrix
