"""Error taxonomy for runtime acquisition, probing and execution.

Decision making has no error type of its own: any failure there degrades to
the most conservative strategy instead of propagating.
"""
from __future__ import annotations

from typing import Optional

CANCELLED_MARKER: str = "[CANCELLED]"


class EngineError(Exception):
    """Base exception for all engine errors."""


class AcquisitionError(EngineError):
    """Raised when the transcoding runtime cannot be acquired.

    Notes
    -----
    - ``category`` is one of ``network``, ``extraction`` or ``installation`` so
      callers can offer the right remediation.
    """

    category: str = "network"


class UnsupportedPlatformError(AcquisitionError):
    """Raised when no runtime archive is published for the host platform."""

    category = "installation"


class DownloadError(AcquisitionError):
    """Raised when the archive download fails (HTTP status, connection, write)."""


class RedirectLimitError(DownloadError):
    """Raised when the download is redirected more times than allowed."""


class DownloadTimeoutError(DownloadError):
    """Raised when the connect deadline or the overall download deadline expires."""


class ExtractionError(AcquisitionError):
    """Raised when the platform archive utility fails."""

    category = "extraction"


class ExecutableNotFoundError(AcquisitionError):
    """Raised when the extracted archive holds no file with the expected name."""

    category = "installation"


class InstallationError(AcquisitionError):
    """Raised when copying the executable or setting its mode fails."""

    category = "installation"


class ProbeError(EngineError):
    """Raised when a probe invocation cannot produce metadata.

    Notes
    -----
    - ``reason`` is one of ``not_found``, ``spawn``, ``exit_code`` or ``unparseable``.
    """

    def __init__(self, message: str, reason: str, exit_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.reason: str = reason
        self.exit_code: Optional[int] = exit_code


class ExecutionError(EngineError):
    """Raised when a transcode fails to spawn, exits non-zero, or its streams break.

    Notes
    -----
    - ``diagnostics`` carries the trailing diagnostic output of the process
      (about 500 characters) for operator debugging.
    """

    def __init__(
        self,
        message: str,
        exit_code: Optional[int] = None,
        diagnostics: str = "",
    ) -> None:
        super().__init__(message)
        self.exit_code: Optional[int] = exit_code
        self.diagnostics: str = diagnostics

    def __str__(self) -> str:
        base: str = super().__str__()
        if self.diagnostics:
            return f"{base}\n{self.diagnostics}"
        return base


class TranscodeBusyError(ExecutionError):
    """Raised when a transcode is requested while another one is running."""


class TranscodeCancelled(EngineError):
    """Terminal outcome of a transcode stopped at the user's request.

    Not a failure: the message carries the ``[CANCELLED]`` prefix so callers
    across the API boundary can tell it apart from genuine errors.
    """

    def __init__(self, exit_code: Optional[int] = None) -> None:
        super().__init__(f"{CANCELLED_MARKER} Transcode cancelled by user")
        self.exit_code: Optional[int] = exit_code


def is_cancellation_message(message: Optional[str]) -> bool:
    """Return ``True`` when an error message denotes a user cancellation."""

    return bool(message) and message.startswith(CANCELLED_MARKER)  # type: ignore[union-attr]
