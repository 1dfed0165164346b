"""Application configuration utilities.

This module defines engine settings loaded from environment variables and
ensures required directories exist at startup.
"""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed engine settings loaded from the environment.

    Notes
    -----
    - Environment variables are read with the ``TCE_`` prefix (e.g., ``TCE_DATA_DIRECTORY``).
    - ``data_directory`` is the user data directory; the transcoding binary is
      installed under ``<data_directory>/ffmpeg``.
    - The ``supported_*`` lists describe the playback environment and seed the
      process-wide capability matrix. List values are given as JSON in the
      environment (e.g., ``TCE_SUPPORTED_VIDEO_CODECS='["h264_high","hevc"]'``).
    """

    model_config = SettingsConfigDict(env_prefix="TCE_", env_file=".env", extra="ignore")

    app_name: str = Field(default="Transcode Engine", description="Application display name")
    debug: bool = Field(default=False, description="Enable debug mode")
    data_directory: Path = Field(
        default=Path.home() / ".transcode-engine" / "data",
        description="User data directory holding the installed transcoding binary",
    )

    download_timeout_seconds: float = Field(
        default=30 * 60,
        description="Wall-clock ceiling for the whole runtime download",
    )
    connect_timeout_seconds: float = Field(
        default=30,
        description="Deadline for establishing the download connection",
    )
    max_redirects: int = Field(default=5, description="Maximum 301/302 hops followed while downloading")
    user_agent: str = Field(
        default="transcode-engine/0.1 (runtime downloader)",
        description="User-Agent header sent when downloading the runtime",
    )

    kill_grace_seconds: float = Field(
        default=5.0,
        description="Seconds between the graceful termination signal and the forced kill",
    )
    diagnostic_tail_chars: int = Field(
        default=500,
        description="Number of trailing diagnostic characters attached to execution failures",
    )

    supported_video_codecs: list[str] = Field(
        default_factory=lambda: ["h264_baseline", "h264_main", "h264_high", "vp9", "av1"],
        description="Video codec families the playback environment renders natively",
    )
    supported_audio_codecs: list[str] = Field(
        default_factory=lambda: ["aac", "pcm"],
        description="Audio codec families the playback environment renders natively",
    )
    supported_containers: list[str] = Field(
        default_factory=lambda: ["mp4", "webm", "mkv", "ogg"],
        description="Container extensions the playback environment opens natively",
    )


def ensure_directories(settings: Settings) -> None:
    """Create required directories if they do not exist.

    Notes
    -----
    - Idempotent: safe to call multiple times.
    - Only ensures the runtime install directory exists; output directories for
      transcodes are created by the executor right before spawning.
    """

    directory: Path = settings.data_directory.expanduser() / "ffmpeg"
    directory.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load and cache engine settings.

    Notes
    -----
    - Cached with ``functools.lru_cache(maxsize=1)`` to provide a single settings instance
      across the process. Subsequent calls return the same object.
    - Applies ``ensure_directories`` once to guarantee a sane startup state.
    """

    settings: Settings = Settings()
    ensure_directories(settings)
    return settings
