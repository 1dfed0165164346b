"""Runtime acquisition: locate, download, extract and install the transcoding binary."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import httpx

from transcode_engine.core.config import Settings
from transcode_engine.domain.errors import (
    DownloadError,
    DownloadTimeoutError,
    ExecutableNotFoundError,
    ExtractionError,
    InstallationError,
    RedirectLimitError,
    UnsupportedPlatformError,
)
from transcode_engine.services.parsers import parse_version

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]

INSTALL_DIR_NAME: str = "ffmpeg"
REDIRECT_STATUSES: frozenset[int] = frozenset({301, 302})
EXECUTABLE_MODE: int = 0o755


@dataclass(frozen=True)
class RuntimeSource:
    """Where to fetch the runtime for one platform and what the archive holds."""

    url: str
    executable: str
    archive: str


RUNTIME_SOURCES: dict[str, RuntimeSource] = {
    "win32": RuntimeSource(
        url="https://github.com/BtbN/FFmpeg-Builds/releases/download/latest/ffmpeg-master-latest-win64-gpl.zip",
        executable="ffmpeg.exe",
        archive="zip",
    ),
    "darwin": RuntimeSource(
        url="https://evermeet.cx/ffmpeg/ffmpeg-6.1.zip",
        executable="ffmpeg",
        archive="zip",
    ),
    "linux": RuntimeSource(
        url="https://johnvansickle.com/ffmpeg/releases/ffmpeg-release-amd64-static.tar.xz",
        executable="ffmpeg",
        archive="tar.xz",
    ),
}


def platform_key(platform: str = sys.platform) -> str:
    """Normalize a ``sys.platform`` value to a ``RUNTIME_SOURCES`` key.

    Raises
    ------
    UnsupportedPlatformError
        If no runtime is published for ``platform``.
    """

    if platform.startswith("linux"):
        return "linux"
    if platform in RUNTIME_SOURCES:
        return platform
    raise UnsupportedPlatformError(f"Unsupported platform: {platform}")


def resolve_source(platform: str = sys.platform) -> RuntimeSource:
    return RUNTIME_SOURCES[platform_key(platform)]


def resolve_install_path(platform: str, data_dir: Path) -> Path:
    """Return where the binary lives for ``platform`` under ``data_dir``.

    Notes
    -----
    - Pure: depends only on its arguments.
    - Shape: ``<data_dir>/ffmpeg/<executable>``.
    """

    return data_dir / INSTALL_DIR_NAME / resolve_source(platform).executable


def get_data_directory(settings: Settings) -> Path:
    return settings.data_directory.expanduser()


def get_install_path(settings: Settings) -> Path:
    """Install path of the binary for the host platform."""

    return resolve_install_path(sys.platform, get_data_directory(settings))


def binary_exists(path: Path) -> bool:
    """Whether an executable file is present at ``path``.

    Notes
    -----
    - Never raises: any filesystem error is reported as ``False``.
    """

    try:
        return path.is_file() and os.access(path, os.X_OK)
    except OSError:
        return False


async def get_version(binary: Path) -> Optional[str]:
    """Return the binary's version token, or ``None`` if it cannot be run.

    Notes
    -----
    - A zero exit whose banner does not match ``<name> version <token>``
      reports ``"unknown"``.
    """

    try:
        process = await asyncio.create_subprocess_exec(
            str(binary),
            "-version",
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.DEVNULL,
        )
        stdout, _ = await process.communicate()
    except OSError as ex:
        logger.warning("Cannot run runtime for version check", extra={"binary": str(binary), "error": str(ex)})
        return None

    if process.returncode != 0:
        return None
    return parse_version(stdout.decode("utf-8", errors="replace")) or "unknown"


async def _stream_archive(
    client: httpx.AsyncClient,
    url: str,
    destination: Path,
    max_redirects: int,
    on_progress: Optional[ProgressCallback],
) -> Path:
    current: str = url
    for _ in range(max_redirects + 1):
        async with client.stream("GET", current) as response:
            if response.status_code in REDIRECT_STATUSES:
                location: Optional[str] = response.headers.get("location")
                if not location:
                    raise DownloadError(f"HTTP {response.status_code} without a redirect location")
                target: str = str(response.url.join(location))
                logger.info("Following redirect", extra={"status": response.status_code, "from": current, "to": target})
                current = target
                continue

            if response.status_code != 200:
                raise DownloadError(f"Download failed: HTTP {response.status_code} {response.reason_phrase}")

            total: int = int(response.headers.get("content-length") or 0)
            downloaded: int = 0
            logger.info("Receiving runtime archive", extra={"url": current, "contentLength": total})
            with destination.open("wb") as fh:
                async for chunk in response.aiter_bytes():
                    fh.write(chunk)
                    downloaded += len(chunk)
                    if on_progress is not None and total > 0:
                        on_progress(min(100.0, downloaded / total * 100.0))
            logger.info("Runtime archive downloaded", extra={"bytes": downloaded, "expected": total})
            return destination

    raise RedirectLimitError(f"Download failed: more than {max_redirects} redirects")


async def download_archive(
    url: str,
    destination: Path,
    settings: Settings,
    on_progress: Optional[ProgressCallback] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> Path:
    """Stream ``url`` into ``destination``.

    Parameters
    ----------
    url: str
        Archive URL; 301/302 responses are followed up to ``settings.max_redirects`` times.
    destination: Path
        File to write; overwritten if present.
    settings: Settings
        Provides the connect deadline, the overall deadline and the User-Agent.
    on_progress: Optional[ProgressCallback]
        Called with the percent complete for every chunk when the size is known.
    client: Optional[httpx.AsyncClient]
        Client to use; one is created (and closed) when omitted.

    Raises
    ------
    DownloadTimeoutError
        If connecting takes longer than the connect deadline or the whole
        transfer exceeds the overall deadline.
    RedirectLimitError
        If the redirect bound is exceeded.
    DownloadError
        For non-200 responses, transport errors and write failures.
    """

    owns_client: bool = client is None
    http: httpx.AsyncClient = client or httpx.AsyncClient(
        timeout=httpx.Timeout(None, connect=settings.connect_timeout_seconds),
        follow_redirects=False,
        headers={"User-Agent": settings.user_agent},
    )
    try:
        return await asyncio.wait_for(
            _stream_archive(http, url, destination, settings.max_redirects, on_progress),
            timeout=settings.download_timeout_seconds,
        )
    except asyncio.TimeoutError as ex:
        raise DownloadTimeoutError(
            f"Download timed out after {settings.download_timeout_seconds:.0f}s; check the network connection"
        ) from ex
    except httpx.TimeoutException as ex:
        raise DownloadTimeoutError(f"Connection timed out: {ex}") from ex
    except httpx.HTTPError as ex:
        raise DownloadError(f"Download failed: {ex}") from ex
    except OSError as ex:
        raise DownloadError(f"Cannot write archive to {destination}: {ex}") from ex
    finally:
        if owns_client:
            await http.aclose()


def extraction_command(archive: Path, destination: Path, platform: str) -> list[str]:
    """Build the platform archive-utility invocation."""

    key: str = platform_key(platform)
    if key == "win32":
        script: str = f'Expand-Archive -Path "{archive}" -DestinationPath "{destination}" -Force'
        return ["powershell.exe", "-NoProfile", "-Command", script]
    if key == "darwin":
        return ["unzip", "-o", str(archive), "-d", str(destination)]
    return ["tar", "-xJf", str(archive), "-C", str(destination)]


async def extract_archive(archive: Path, destination: Path, platform: str = sys.platform) -> None:
    """Expand ``archive`` into ``destination`` with the platform utility.

    Raises
    ------
    ExtractionError
        If the utility cannot be started or exits non-zero.
    """

    cmd: list[str] = extraction_command(archive, destination, platform)
    logger.info("Extracting runtime archive", extra={"cmd": cmd})
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
    except OSError as ex:
        raise ExtractionError(f"Cannot start {cmd[0]}: {ex}") from ex

    if process.returncode != 0:
        message: str = f"Extraction failed with exit code {process.returncode}"
        if stderr:
            message += ": " + stderr.decode("utf-8", errors="replace")[-500:].strip()
        raise ExtractionError(message)


def find_executable(root: Path, name: str) -> Optional[Path]:
    """Return the first regular file called ``name`` below ``root``."""

    for candidate in sorted(root.rglob(name)):
        if candidate.is_file():
            return candidate
    return None


def install_executable(source: Path, target: Path) -> Path:
    """Copy ``source`` to ``target`` (overwriting) and mark it executable.

    Raises
    ------
    InstallationError
        If the copy or the mode change fails.
    """

    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(source, target)
        os.chmod(target, EXECUTABLE_MODE)
    except OSError as ex:
        raise InstallationError(f"Cannot install runtime to {target}: {ex}") from ex
    logger.info("Runtime installed", extra={"source": str(source), "target": str(target)})
    return target


async def download_runtime(
    settings: Settings,
    on_progress: Optional[ProgressCallback] = None,
    client: Optional[httpx.AsyncClient] = None,
    platform: str = sys.platform,
) -> Path:
    """Acquire the runtime: download, extract, locate and install it.

    Returns
    -------
    Path
        The installed executable.

    Notes
    -----
    - Every step is fallible and aborts the acquisition with a single
      ``AcquisitionError`` subclass.
    - Retrying overwrites the archive, wipes the previous extraction directory
      and replaces the installed binary.
    """

    source: RuntimeSource = resolve_source(platform)
    install_dir: Path = get_data_directory(settings) / INSTALL_DIR_NAME
    try:
        install_dir.mkdir(parents=True, exist_ok=True)
    except OSError as ex:
        raise InstallationError(f"Cannot create {install_dir}: {ex}") from ex

    archive_path: Path = install_dir / f"ffmpeg-download.{source.archive}"
    extract_dir: Path = install_dir / "extract"

    logger.info("Downloading runtime", extra={"url": source.url, "archive": str(archive_path)})
    await download_archive(source.url, archive_path, settings, on_progress=on_progress, client=client)

    try:
        if extract_dir.exists():
            shutil.rmtree(extract_dir)
        extract_dir.mkdir(parents=True)
    except OSError as ex:
        raise ExtractionError(f"Cannot prepare extraction directory {extract_dir}: {ex}") from ex
    await extract_archive(archive_path, extract_dir, platform)

    found: Optional[Path] = find_executable(extract_dir, source.executable)
    if found is None:
        raise ExecutableNotFoundError(f"Executable {source.executable} not found in extracted archive")

    target: Path = install_executable(found, resolve_install_path(platform, get_data_directory(settings)))

    shutil.rmtree(extract_dir, ignore_errors=True)
    archive_path.unlink(missing_ok=True)
    return target
