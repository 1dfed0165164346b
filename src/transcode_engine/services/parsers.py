"""Parsers for the transcoding binary's textual output.

Every pattern that depends on the binary's output format lives here, so a
change in that format is handled in one place. All functions are total: input
they do not recognise yields ``None`` (or a default), never an exception.
"""
from __future__ import annotations

import re
from typing import Optional

from transcode_engine.domain.probe import UNKNOWN_CODEC, MediaProbeResult
from transcode_engine.domain.transcode import TranscodeProgress

# Probe (diagnostic stream of ``ffmpeg -i <file>``)
VIDEO_STREAM_RE = re.compile(r"Stream #\d+:\d+.*?: Video: (\w+).*?, (\d+x\d+)")
AUDIO_STREAM_RE = re.compile(r"Stream #\d+:\d+.*?: Audio: (\w+)")
DURATION_RE = re.compile(r"Duration: (\d{2}):(\d{2}):(\d{2})\.(\d{2})")
BITRATE_RE = re.compile(r"bitrate: (\d+) kb/s")

# Version banner, first line of ``ffmpeg -version``
VERSION_RE = re.compile(r"^(\S+) version (\S+)")

# Progress (stats lines on the diagnostic stream, key=value blocks on stdout)
PROGRESS_TIME_RE = re.compile(r"time=(\d{2}):(\d{2}):(\d{2})\.(\d{2})")
PROGRESS_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
PROGRESS_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+\w+/s)")
PROGRESS_SPEED_RE = re.compile(r"speed=\s*([\d.]+x)")

_LINE_BREAK_RE = re.compile(r"\r\n|\r|\n")

# Keys of a ``-progress`` block that feed the status-line parser.
_PROGRESS_BLOCK_KEYS: tuple[str, ...] = ("fps", "out_time", "bitrate", "speed")


def _clock_seconds(hours: str, minutes: str, seconds: str, centiseconds: str) -> float:
    return int(hours) * 3600 + int(minutes) * 60 + int(seconds) + int(centiseconds) / 100


def parse_probe_output(output: str) -> Optional[MediaProbeResult]:
    """Parse the diagnostic text of a probe invocation.

    Parameters
    ----------
    output: str
        Full diagnostic stream collected from the binary.

    Returns
    -------
    Optional[MediaProbeResult]
        ``None`` when no video stream is described; otherwise the fact sheet.

    Notes
    -----
    - Four independent patterns are applied: video stream ``(codec, WxH)``,
      audio stream ``(codec)``, duration ``(HH, MM, SS, cs)`` and bitrate ``(kbps)``.
    - Audio, duration and bitrate are optional and default to ``"unknown"``,
      ``0`` and ``"0"``.
    - Bitrate is normalized from kb/s to bits/second by appending ``"000"``.
    """

    video_match = VIDEO_STREAM_RE.search(output)
    if video_match is None:
        return None

    audio_match = AUDIO_STREAM_RE.search(output)
    duration_match = DURATION_RE.search(output)
    bitrate_match = BITRATE_RE.search(output)

    duration: float = _clock_seconds(*duration_match.groups()) if duration_match else 0.0
    bitrate: str = bitrate_match.group(1) + "000" if bitrate_match else "0"

    return MediaProbeResult(
        duration=duration,
        videoCodec=video_match.group(1).lower(),
        audioCodec=audio_match.group(1).lower() if audio_match else UNKNOWN_CODEC,
        resolution=video_match.group(2),
        bitrate=bitrate,
    )


def parse_version(output: str) -> Optional[str]:
    """Extract the version token from the first line of ``-version`` output."""

    first_line: str = output.lstrip().splitlines()[0] if output.strip() else ""
    match = VERSION_RE.match(first_line)
    return match.group(2) if match else None


def parse_progress_line(line: str, duration: Optional[float]) -> Optional[TranscodeProgress]:
    """Parse one stats line into a progress snapshot.

    Parameters
    ----------
    line: str
        A line such as ``frame=  123 fps= 25 q=28.0 size=1024kB time=00:00:04.92
        bitrate=1703.5kbits/s speed=1x``.
    duration: Optional[float]
        Total media duration in seconds; unknown or non-positive yields 0%.

    Returns
    -------
    Optional[TranscodeProgress]
        ``None`` when the line carries no ``time=HH:MM:SS.cc`` field.

    Notes
    -----
    - Percentage is ``min(100, 100 * elapsed / duration)``.
    - Pure and idempotent: the same input always yields the same output.
    """

    time_match = PROGRESS_TIME_RE.search(line)
    if time_match is None:
        return None

    hours, minutes, seconds, centiseconds = time_match.groups()
    elapsed: float = _clock_seconds(hours, minutes, seconds, centiseconds)
    percent: float = min(100.0, elapsed / duration * 100.0) if duration and duration > 0 else 0.0

    fps_match = PROGRESS_FPS_RE.search(line)
    bitrate_match = PROGRESS_BITRATE_RE.search(line)
    speed_match = PROGRESS_SPEED_RE.search(line)

    return TranscodeProgress(
        progress=percent,
        time=f"{hours}:{minutes}:{seconds}",
        fps=fps_match.group(1) if fps_match else "0",
        bitrate=bitrate_match.group(1) if bitrate_match else "0kb/s",
        speed=speed_match.group(1) if speed_match else "0x",
    )


class ProgressBlockParser:
    """Incremental parser for the machine-readable ``-progress`` stream.

    The stream is a sequence of ``key=value`` lines; each block ends with a
    ``progress=continue`` or ``progress=end`` line. A finished block is
    rendered as a stats line and handed to ``parse_progress_line``.
    """

    def __init__(self, duration: Optional[float]) -> None:
        self._duration: Optional[float] = duration
        self._fields: dict[str, str] = {}

    def feed(self, line: str) -> Optional[TranscodeProgress]:
        key, sep, value = line.strip().partition("=")
        if not sep:
            return None
        self._fields[key.strip()] = value.strip()
        if key.strip() != "progress":
            return None

        fields, self._fields = self._fields, {}
        status_line: str = " ".join(
            f"{name}={fields[name]}" for name in _PROGRESS_BLOCK_KEYS if name in fields
        )
        return parse_progress_line(status_line, self._duration)


class LineSplitter:
    """Split a chunked text stream into lines on ``\\n``, ``\\r\\n`` or ``\\r``.

    The binary redraws its stats line with carriage returns, so ``\\r`` must
    terminate a line too. A trailing partial line is kept until more data or
    ``flush`` arrives.
    """

    def __init__(self) -> None:
        self._pending: str = ""

    def feed(self, chunk: str) -> list[str]:
        data: str = self._pending + chunk
        # A lone trailing \r may be the first half of \r\n.
        hold_cr: bool = data.endswith("\r")
        if hold_cr:
            data = data[:-1]
        parts: list[str] = _LINE_BREAK_RE.split(data)
        self._pending = parts.pop() + ("\r" if hold_cr else "")
        return [part for part in parts if part]

    def flush(self) -> list[str]:
        remainder: str = self._pending.rstrip("\r")
        self._pending = ""
        return [remainder] if remainder else []
