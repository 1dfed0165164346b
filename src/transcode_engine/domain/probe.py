"""Domain models for probing media metadata.

These models define the fact sheet produced by the media probe and the request
payload used by the probe API.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

NO_AUDIO: str = "none"
UNKNOWN_CODEC: str = "unknown"


def parse_dimensions(resolution: str) -> tuple[int, int]:
    """Parse a ``WxH`` string into ``(width, height)``; ``(0, 0)`` when malformed."""

    width, _, height = resolution.lower().partition("x")
    try:
        return int(width), int(height)
    except ValueError:
        return 0, 0


class MediaProbeResult(BaseModel):
    """Immutable fact sheet about an input media file.

    Notes
    -----
    - Codec tokens are lower-cased as reported by the transcoding binary
      (e.g., ``h264``, ``hevc``, ``ac3``).
    - ``audioCodec`` is ``"none"`` when the file has no audio track and
      ``"unknown"`` when the diagnostic output did not mention one.
    - ``bitrate`` is bits/second as a decimal string (``"8000000"``).
    """

    model_config = ConfigDict(frozen=True)

    duration: float = Field(default=0.0, ge=0, description="Duration in seconds")
    videoCodec: str = Field(description="Video codec token, lower-cased")
    audioCodec: str = Field(default=UNKNOWN_CODEC, description="Audio codec token or 'none'")
    resolution: str = Field(default="0x0", description="Frame size as 'WxH'")
    bitrate: str = Field(default="0", description="Overall bitrate in bits/second")

    @property
    def has_audio(self) -> bool:
        """Whether the file carries an audio track."""

        return bool(self.audioCodec) and self.audioCodec != NO_AUDIO

    @property
    def dimensions(self) -> tuple[int, int]:
        """Parse ``resolution`` into ``(width, height)``; ``(0, 0)`` when malformed."""

        return parse_dimensions(self.resolution)

    @property
    def bitrate_bps(self) -> int:
        """Bitrate as an integer, 0 when unknown or malformed."""

        try:
            return int(self.bitrate)
        except ValueError:
            return 0


class VideoInfoRequest(BaseModel):
    """Request payload to probe a local media file."""

    path: str = Field(description="Local path or file:// URL of the media file")


class VideoInfoResponse(BaseModel):
    """Envelope returned by the probe API."""

    success: bool = Field(description="Whether metadata could be read")
    info: Optional[MediaProbeResult] = Field(default=None, description="Probe result if available")
    error: Optional[str] = Field(default=None, description="Error message if probing failed")
