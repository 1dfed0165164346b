"""Transcode executor supervising one transcoding subprocess at a time.

The executor owns the single ``TranscodeSession``. Starting, cancelling and
finishing a session all happen under one ``asyncio.Lock`` so concurrent event
handlers can call ``start`` and ``cancel`` without corrupting it.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from transcode_engine.core.config import get_settings
from transcode_engine.domain.decision import TranscodeDecision, TranscodeOptions, TranscodeStrategy
from transcode_engine.domain.errors import ExecutionError, TranscodeBusyError, TranscodeCancelled
from transcode_engine.domain.transcode import SessionState, TranscodeProgress, TranscodeSession
from transcode_engine.infra.fs import default_output_path, ensure_output_dir, to_local_path
from transcode_engine.services.acquisition import get_install_path
from transcode_engine.services.parsers import LineSplitter, ProgressBlockParser, parse_progress_line

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[TranscodeProgress], None]
Spawner = Callable[..., Awaitable[Any]]

READ_CHUNK_SIZE: int = 4096

DEFAULT_VIDEO_CODEC: str = "libx264"
DEFAULT_AUDIO_CODEC: str = "aac"
DEFAULT_CRF: int = 23
DEFAULT_PRESET: str = "fast"
DEFAULT_AUDIO_BITRATE: str = "128k"
CRF_ENCODERS: frozenset[str] = frozenset({"libx264", "libx265"})

# 255: the binary's own exit after a handled SIGTERM/SIGINT; 130/143/137: shell
# conventions for SIGINT/SIGTERM/SIGKILL; negatives: asyncio's "killed by signal N".
CANCELLATION_EXIT_CODES: frozenset[int] = frozenset({255, 130, 143, 137, -2, -9, -15})
if sys.platform == "win32":
    # TerminateProcess exits with 1.
    CANCELLATION_EXIT_CODES = CANCELLATION_EXIT_CODES | {1}


def build_command(binary: Path, input_path: Path, output_path: Path, options: TranscodeOptions) -> list[str]:
    """Assemble the argument vector for a transcode.

    Notes
    -----
    - ``-progress pipe:1`` makes the binary write machine-readable key=value
      progress blocks to stdout; human stats keep going to the diagnostic stream.
    - Unset options fall back to ``libx264``/``aac``, CRF 23, preset ``fast``
      and audio ``128k``.
    """

    args: list[str] = [str(binary), "-i", str(input_path), "-y"]

    video_codec: str = options.videoCodec or DEFAULT_VIDEO_CODEC
    if video_codec == "copy":
        args += ["-c:v", "copy"]
    else:
        args += ["-c:v", video_codec]
        if video_codec in CRF_ENCODERS:
            args += ["-crf", str(options.crf if options.crf is not None else DEFAULT_CRF)]
            args += ["-preset", options.preset or DEFAULT_PRESET]
        if options.videoBitrate:
            args += ["-b:v", options.videoBitrate]

    audio_codec: str = options.audioCodec or DEFAULT_AUDIO_CODEC
    if audio_codec == "copy":
        args += ["-c:a", "copy"]
    else:
        args += ["-c:a", audio_codec, "-b:a", options.audioBitrate or DEFAULT_AUDIO_BITRATE]

    args += ["-progress", "pipe:1", str(output_path)]
    return args


def classify_exit(exit_code: Optional[int], cancel_requested: bool, stream_error: Optional[BaseException]) -> SessionState:
    """Map how the subprocess ended to a terminal session state.

    Notes
    -----
    - A stream error is always a failure, whatever the exit code or cancel flag.
    - A clean exit wins even if a cancel was requested: the process finished
      before the signal landed.
    - Cancellation needs both the requested flag and a termination exit code;
      any other non-zero exit is a failure.
    """

    if stream_error is not None:
        return SessionState.FAILED
    if exit_code == 0:
        return SessionState.COMPLETED
    if cancel_requested and exit_code in CANCELLATION_EXIT_CODES:
        return SessionState.CANCELLED
    return SessionState.FAILED


class _DiagnosticTail:
    """Keeps the last ``limit`` characters of the diagnostic stream."""

    def __init__(self, limit: int) -> None:
        self._limit: int = limit
        self._text: str = ""

    def append(self, text: str) -> None:
        self._text = (self._text + text)[-self._limit :]

    @property
    def text(self) -> str:
        return self._text.strip()


class TranscodeExecutor:
    """Run transcodes one at a time with progress reporting and cancellation.

    Notes
    -----
    - State machine per session: ``IDLE`` → ``RUNNING`` → ``COMPLETED`` |
      ``CANCELLED`` | ``FAILED``.
    - ``cancel`` sends a graceful termination signal and arms a timer that
      force-kills the process after ``kill_grace_seconds``.
    - Session teardown (clearing the process handle, disarming the timer)
      happens exactly once, whichever exit path fires first.
    """

    def __init__(
        self,
        binary_path: Optional[Path] = None,
        kill_grace_seconds: Optional[float] = None,
        diagnostic_tail_chars: Optional[int] = None,
        spawn: Optional[Spawner] = None,
    ) -> None:
        self._binary_path: Optional[Path] = binary_path
        self._kill_grace_seconds: Optional[float] = kill_grace_seconds
        self._diagnostic_tail_chars: Optional[int] = diagnostic_tail_chars
        self._spawn: Spawner = spawn or asyncio.create_subprocess_exec
        self._lock: asyncio.Lock = asyncio.Lock()
        self._session: Optional[TranscodeSession] = None

    @property
    def current_session(self) -> Optional[TranscodeSession]:
        """The running session, if any; callers use it to check for activity."""

        return self._session

    @property
    def is_running(self) -> bool:
        return self._session is not None

    def _grace(self) -> float:
        if self._kill_grace_seconds is not None:
            return self._kill_grace_seconds
        return get_settings().kill_grace_seconds

    def _tail_limit(self) -> int:
        if self._diagnostic_tail_chars is not None:
            return self._diagnostic_tail_chars
        return get_settings().diagnostic_tail_chars

    async def start(
        self,
        input_path: str,
        decision: TranscodeDecision,
        output_path: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Path:
        """Run a transcode to completion.

        Parameters
        ----------
        input_path: str
            Local path or ``file://`` URL of the input.
        decision: TranscodeDecision
            Plan to execute; its options shape the command and its
            ``sourceDuration`` scales the progress percentage.
        output_path: Optional[str]
            Output path or ``file://`` URL; derived from the input when omitted.
        on_progress: Optional[ProgressCallback]
            Called synchronously for every parsed progress line. It must return
            quickly: a slow callback stalls the subprocess's output pipes.

        Returns
        -------
        Path
            The local output path.

        Raises
        ------
        TranscodeBusyError
            If another transcode is running.
        TranscodeCancelled
            If the transcode was cancelled through ``cancel``.
        ExecutionError
            If the process cannot be spawned, exits non-zero, or its streams fail.
        """

        if decision.strategy is TranscodeStrategy.NOT_NEEDED:
            raise ExecutionError("Decision does not require a transcode")

        local_input: Path = Path(to_local_path(input_path))
        target: Path = (
            Path(to_local_path(output_path))
            if output_path
            else default_output_path(local_input, decision.strategy, decision.outputFormat)
        )
        binary: Path = self._binary_path or get_install_path(get_settings())
        cmd: list[str] = build_command(binary, local_input, target, decision.options)

        async with self._lock:
            if self._session is not None:
                raise TranscodeBusyError(f"A transcode is already running (pid {self._session.pid})")
            try:
                ensure_output_dir(target)
            except OSError as ex:
                raise ExecutionError(f"Cannot create output directory {target.parent}: {ex}") from ex
            try:
                process = await self._spawn(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except OSError as ex:
                raise ExecutionError(f"Failed to start transcoder {binary}: {ex}") from ex
            session: TranscodeSession = TranscodeSession(
                input_path=local_input,
                output_path=target,
                process=process,
                state=SessionState.RUNNING,
            )
            self._session = session

        logger.info("Transcode started", extra={"session": session.id, "pid": session.pid, "cmd": cmd})

        tail: _DiagnosticTail = _DiagnosticTail(self._tail_limit())
        duration: float = decision.sourceDuration
        exit_code: Optional[int] = None
        stream_error: Optional[BaseException] = None
        try:
            out_error, err_error = await asyncio.gather(
                self._pump(session, process.stdout, ProgressBlockParser(duration).feed, on_progress, None),
                self._pump(session, process.stderr, lambda line: parse_progress_line(line, duration), on_progress, tail),
            )
            stream_error = out_error or err_error
            exit_code = await process.wait()
        except asyncio.CancelledError:
            self._abandon(session)
            raise
        finally:
            state: SessionState = await self._finish(session, exit_code, stream_error)

        if state is SessionState.COMPLETED:
            logger.info("Transcode completed", extra={"session": session.id, "output": str(target)})
            return target
        if state is SessionState.CANCELLED:
            logger.info("Transcode cancelled by user", extra={"session": session.id, "exitCode": exit_code})
            raise TranscodeCancelled(exit_code)

        message: str = (
            f"Transcode stream error: {stream_error}"
            if stream_error is not None
            else f"Transcode failed with exit code {exit_code}"
        )
        logger.error(message, extra={"session": session.id, "diagnostics": tail.text})
        raise ExecutionError(message, exit_code=exit_code, diagnostics=tail.text)

    async def cancel(self) -> bool:
        """Request cancellation of the running transcode.

        Returns
        -------
        bool
            ``True`` once the termination signal is dispatched; ``False`` when
            nothing is running. Does not wait for the process to exit.
        """

        async with self._lock:
            session: Optional[TranscodeSession] = self._session
            process = session.process if session is not None else None
            if session is None or process is None or process.returncode is not None:
                logger.warning("No running transcode to cancel")
                return False

            session.cancel_requested = True
            session.disarm()
            try:
                process.terminate()
            except ProcessLookupError:
                # Exited between the check and the signal; exit handling classifies it.
                return False
            except OSError:
                logger.exception("Failed to signal transcode process", extra={"pid": session.pid})
                session.cancel_requested = False
                return False

            grace: float = self._grace()
            session.force_kill = asyncio.get_running_loop().call_later(grace, self._escalate, session)
            logger.info("Transcode cancellation requested", extra={"pid": session.pid, "graceSeconds": grace})
            return True

    def _escalate(self, session: TranscodeSession) -> None:
        session.force_kill = None
        if self._session is not session:
            return
        if self._kill(session):
            logger.warning("Graceful termination timed out, killed transcode", extra={"pid": session.pid})

    def _abandon(self, session: TranscodeSession) -> None:
        """Kill the process of a session whose supervising task was cancelled."""

        if self._kill(session):
            session.cancel_requested = True

    @staticmethod
    def _kill(session: TranscodeSession) -> bool:
        """Kill the session's process if it is still alive; ``True`` when signalled."""

        process = session.process
        if process is None or process.returncode is not None:
            return False
        try:
            process.kill()
        except ProcessLookupError:
            return False
        return True

    async def _finish(
        self,
        session: TranscodeSession,
        exit_code: Optional[int],
        stream_error: Optional[BaseException],
    ) -> SessionState:
        async with self._lock:
            if session.state.is_terminal:
                return session.state
            session.disarm()
            session.state = classify_exit(exit_code, session.cancel_requested, stream_error)
            session.process = None
            if self._session is session:
                self._session = None
            return session.state

    async def _pump(
        self,
        session: TranscodeSession,
        stream: Optional[asyncio.StreamReader],
        parse: Callable[[str], Optional[TranscodeProgress]],
        on_progress: Optional[ProgressCallback],
        tail: Optional[_DiagnosticTail],
    ) -> Optional[BaseException]:
        """Read ``stream`` to EOF, feeding lines to ``parse``; return the stream error, if any.

        A failed stream is no longer drained, so the process is killed to keep it
        from blocking on a full pipe.
        """

        if stream is None:
            return None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        splitter: LineSplitter = LineSplitter()
        try:
            while True:
                chunk: bytes = await stream.read(READ_CHUNK_SIZE)
                text: str = decoder.decode(chunk, final=not chunk)
                if tail is not None and text:
                    tail.append(text)
                lines: list[str] = splitter.feed(text)
                if not chunk:
                    lines += splitter.flush()
                for line in lines:
                    self._emit(parse(line), on_progress)
                if not chunk:
                    return None
        except (OSError, ValueError, asyncio.LimitOverrunError) as ex:
            logger.error("Transcode output stream failed", extra={"error": str(ex)})
            self._kill(session)
            return ex

    @staticmethod
    def _emit(progress: Optional[TranscodeProgress], on_progress: Optional[ProgressCallback]) -> None:
        if progress is None or on_progress is None:
            return
        try:
            on_progress(progress)
        except Exception:  # noqa: BLE001 - a faulty consumer must not stop the transcode
            logger.exception("Progress callback failed")


# Global executor instance for app scope
executor: TranscodeExecutor = TranscodeExecutor()
