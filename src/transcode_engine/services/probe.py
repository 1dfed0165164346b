"""Probe service invoking the transcoding binary to read media metadata."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from transcode_engine.core.config import get_settings
from transcode_engine.domain.errors import ProbeError
from transcode_engine.domain.probe import MediaProbeResult
from transcode_engine.infra.fs import to_local_path
from transcode_engine.services.acquisition import get_install_path
from transcode_engine.services.parsers import parse_probe_output

logger = logging.getLogger(__name__)

# Without an output file the binary prints its stream analysis and exits 1.
PROBE_EXIT_CODE: int = 1


async def run_probe(file_path: str, binary: Path) -> MediaProbeResult:
    """Probe ``file_path`` and return its metadata.

    Parameters
    ----------
    file_path: str
        Local path or ``file://`` URL of the media file.
    binary: Path
        Path to the transcoding binary.

    Returns
    -------
    MediaProbeResult
        Parsed metadata.

    Raises
    ------
    ProbeError
        ``reason`` is ``not_found`` for a missing input, ``spawn`` when the binary
        cannot be started, ``exit_code`` for any exit other than 1, and
        ``unparseable`` when no video stream is described.

    Notes
    -----
    - The binary is invoked with only an input argument. It writes the stream
      analysis to its diagnostic stream and exits 1 because no output was
      requested; that exit code is the success path.
    - No timeout is applied; the binary terminates on its own once the input
      header has been read.
    """

    local_path: str = to_local_path(file_path)
    if not Path(local_path).exists():
        raise ProbeError(f"Input file does not exist: {local_path}", reason="not_found")

    args: list[str] = ["-i", local_path]
    logger.debug("Probing media", extra={"binary": str(binary), "cmdArgs": args})
    try:
        process = await asyncio.create_subprocess_exec(
            str(binary),
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
    except OSError as ex:
        raise ProbeError(f"Failed to start {binary}: {ex}", reason="spawn") from ex

    output: str = stderr.decode("utf-8", errors="replace") if stderr else ""
    if process.returncode != PROBE_EXIT_CODE:
        raise ProbeError(
            f"Probe exited with code {process.returncode}: {output[-500:]}",
            reason="exit_code",
            exit_code=process.returncode,
        )

    info: Optional[MediaProbeResult] = parse_probe_output(output)
    if info is None:
        raise ProbeError("No video stream found in probe output", reason="unparseable")
    return info


async def probe_media(file_path: str, binary: Optional[Path] = None) -> Optional[MediaProbeResult]:
    """Probe ``file_path``, returning ``None`` instead of raising on failure.

    Notes
    -----
    - Defaults to the installed binary resolved from settings.
    - Failures are logged with their ``ProbeError.reason``.
    """

    resolved: Path = binary or get_install_path(get_settings())
    try:
        info: MediaProbeResult = await run_probe(file_path, resolved)
    except ProbeError as ex:
        logger.warning("Probe failed", extra={"path": file_path, "reason": ex.reason, "error": str(ex)})
        return None
    logger.info("Probe succeeded", extra={"path": file_path, "info": info.model_dump()})
    return info
