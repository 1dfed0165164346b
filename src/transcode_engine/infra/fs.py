"""Filesystem helpers for media paths, file URLs and transcode outputs."""
from __future__ import annotations

import re
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote, urlparse

from transcode_engine.domain.decision import TranscodeStrategy

FILE_SCHEME: str = "file://"

# Printable ASCII outside the URL path percent-encode set; browsers leave these unescaped.
_URL_PATH_SAFE: str = "/:@!$&'()*+,;=[]^|"

_UNSAFE_TIMESTAMP_CHARS = re.compile(r"[:.+]")


def to_local_path(path_or_url: str, platform: str = sys.platform) -> str:
    """Convert a ``file://`` URL into a local filesystem path.

    Parameters
    ----------
    path_or_url: str
        A plain local path or a ``file://`` URL.
    platform: str
        ``sys.platform`` value of the host the path is meant for.

    Returns
    -------
    str
        The percent-decoded local path. Plain paths are returned unchanged.

    Notes
    -----
    - On Windows the URL path looks like ``/C:/dir/file``; the leading separator
      introduced by the URL form is stripped.
    """

    if not path_or_url.startswith(FILE_SCHEME):
        return path_or_url

    local: str = unquote(urlparse(path_or_url).path, encoding="utf-8")
    if platform == "win32" and local.startswith("/"):
        local = local[1:]
    return local


def to_file_url(local_path: str | Path) -> str:
    """Convert a local path into a ``file://`` URL with percent-encoded segments.

    Notes
    -----
    - Non-ASCII names (e.g., Chinese file names) are UTF-8 percent-encoded with
      upper-case hex, so a URL produced by a browser round-trips byte-identically
      through ``to_local_path`` and back.
    - Windows separators are normalized to ``/`` and the drive letter keeps its colon.
    """

    normalized: str = str(local_path).replace("\\", "/")
    normalized = "/" + normalized.lstrip("/")
    return FILE_SCHEME + quote(normalized, safe=_URL_PATH_SAFE, encoding="utf-8")


def _timestamp(now: datetime) -> str:
    stamp: str = now.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    stamp = stamp.replace("+00:00", "Z")
    return _UNSAFE_TIMESTAMP_CHARS.sub("-", stamp)


def default_output_path(
    input_path: Path,
    strategy: TranscodeStrategy,
    output_format: str = "mp4",
    now: Optional[datetime] = None,
) -> Path:
    """Derive an output path next to the input file.

    Notes
    -----
    - Shape: ``<dir>/<stem>_<operation>_<timestamp>.<format>`` where the
      timestamp is an ISO-8601 UTC instant with ``:`` ``.`` and ``+`` replaced by
      ``-`` so it is safe on every filesystem.
    """

    moment: datetime = now or datetime.now(timezone.utc)
    name: str = f"{input_path.stem}_{strategy.operation}_{_timestamp(moment)}.{output_format}"
    return input_path.parent / name


def ensure_output_dir(output_path: Path) -> Path:
    """Create the parent directory of ``output_path`` and return it.

    Raises
    ------
    OSError
        If the directory cannot be created or is not a directory.
    """

    directory: Path = output_path.parent
    directory.mkdir(parents=True, exist_ok=True)
    if not directory.is_dir():
        raise NotADirectoryError(f"Output location is not a directory: {directory}")
    return directory
