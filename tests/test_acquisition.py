"""Tests for runtime acquisition: paths, download, extraction and installation.

Network access is replaced by ``httpx.MockTransport`` and subprocesses by mocks,
so no test needs the internet or a real transcoding binary.
"""
from __future__ import annotations

import asyncio
import os
import stat
import tempfile
import unittest
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import httpx

from transcode_engine.core.config import Settings
from transcode_engine.domain.errors import (
    DownloadError,
    DownloadTimeoutError,
    ExecutableNotFoundError,
    ExtractionError,
    RedirectLimitError,
    UnsupportedPlatformError,
)
from transcode_engine.services.acquisition import (
    RUNTIME_SOURCES,
    binary_exists,
    download_archive,
    download_runtime,
    extract_archive,
    extraction_command,
    find_executable,
    get_version,
    install_executable,
    resolve_install_path,
)

_SUBPROCESS = "transcode_engine.services.acquisition.asyncio.create_subprocess_exec"


def _process(returncode: int, stdout: bytes = b"", stderr: bytes = b"") -> MagicMock:
    process = MagicMock()
    process.returncode = returncode
    process.communicate = AsyncMock(return_value=(stdout, stderr))
    return process


class TestInstallPaths(unittest.TestCase):
    """``resolve_install_path`` is a pure function of its arguments."""

    def test_one_executable_per_platform(self) -> None:
        data_dir = Path("/data")
        self.assertEqual(resolve_install_path("win32", data_dir), Path("/data/ffmpeg/ffmpeg.exe"))
        self.assertEqual(resolve_install_path("darwin", data_dir), Path("/data/ffmpeg/ffmpeg"))
        self.assertEqual(resolve_install_path("linux", data_dir), Path("/data/ffmpeg/ffmpeg"))
        self.assertEqual(resolve_install_path("linux2", data_dir), Path("/data/ffmpeg/ffmpeg"))
        self.assertEqual(resolve_install_path("linux", data_dir), resolve_install_path("linux", data_dir))

    def test_unsupported_platform(self) -> None:
        with self.assertRaises(UnsupportedPlatformError) as ctx:
            resolve_install_path("sunos5", Path("/data"))
        self.assertEqual(ctx.exception.category, "installation")

    def test_archive_kinds(self) -> None:
        self.assertEqual(RUNTIME_SOURCES["win32"].archive, "zip")
        self.assertEqual(RUNTIME_SOURCES["darwin"].archive, "zip")
        self.assertEqual(RUNTIME_SOURCES["linux"].archive, "tar.xz")


class TestLocalFiles(unittest.TestCase):
    """Tests for binary_exists, find_executable and install_executable."""

    def test_binary_exists_requires_execute_bit(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            binary = Path(td) / "ffmpeg"
            self.assertFalse(binary_exists(binary))
            binary.write_bytes(b"#!/bin/sh\n")
            os.chmod(binary, 0o644)
            self.assertFalse(binary_exists(binary))
            os.chmod(binary, 0o755)
            self.assertTrue(binary_exists(binary))
            self.assertFalse(binary_exists(Path(td)))

    def test_find_and_install(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            root = Path(td)
            nested = root / "extract" / "ffmpeg-6.1-amd64-static"
            nested.mkdir(parents=True)
            (nested / "ffmpeg").write_bytes(b"binary")
            (nested / "ffprobe").write_bytes(b"other")

            found = find_executable(root / "extract", "ffmpeg")
            self.assertEqual(found, nested / "ffmpeg")
            self.assertIsNone(find_executable(root / "extract", "ffmpeg.exe"))

            assert found is not None
            target = install_executable(found, root / "ffmpeg" / "ffmpeg")
            self.assertEqual(target.read_bytes(), b"binary")
            self.assertTrue(target.stat().st_mode & stat.S_IXUSR)


class TestExtraction(unittest.IsolatedAsyncioTestCase):
    """Tests for the platform archive utility invocation."""

    def test_commands(self) -> None:
        archive, dest = Path("/d/a.zip"), Path("/d/out")
        self.assertEqual(extraction_command(archive, dest, "darwin"), ["unzip", "-o", "/d/a.zip", "-d", "/d/out"])
        self.assertEqual(extraction_command(Path("/d/a.tar.xz"), dest, "linux"), ["tar", "-xJf", "/d/a.tar.xz", "-C", "/d/out"])
        win = extraction_command(archive, dest, "win32")
        self.assertEqual(win[0], "powershell.exe")
        self.assertIn("Expand-Archive", win[-1])

    async def test_non_zero_exit_raises(self) -> None:
        with patch(_SUBPROCESS, AsyncMock(return_value=_process(2, stderr=b"xz: File format not recognized"))):
            with self.assertRaises(ExtractionError) as ctx:
                await extract_archive(Path("/d/a.tar.xz"), Path("/d/out"), "linux")
        self.assertIn("exit code 2", str(ctx.exception))
        self.assertIn("File format not recognized", str(ctx.exception))
        self.assertEqual(ctx.exception.category, "extraction")

    async def test_missing_tool_raises(self) -> None:
        with patch(_SUBPROCESS, AsyncMock(side_effect=FileNotFoundError("tar"))):
            with self.assertRaises(ExtractionError):
                await extract_archive(Path("/d/a.tar.xz"), Path("/d/out"), "linux")


class TestVersion(unittest.IsolatedAsyncioTestCase):
    """Tests for get_version."""

    async def test_parses_banner(self) -> None:
        process = _process(0, stdout=b"ffmpeg version 6.1-static Copyright (c) 2000-2023\n")
        with patch(_SUBPROCESS, AsyncMock(return_value=process)):
            self.assertEqual(await get_version(Path("/bin/ffmpeg")), "6.1-static")

    async def test_unknown_banner(self) -> None:
        with patch(_SUBPROCESS, AsyncMock(return_value=_process(0, stdout=b"weird output"))):
            self.assertEqual(await get_version(Path("/bin/ffmpeg")), "unknown")

    async def test_failures_return_none(self) -> None:
        with patch(_SUBPROCESS, AsyncMock(side_effect=FileNotFoundError("nope"))):
            self.assertIsNone(await get_version(Path("/missing/ffmpeg")))
        with patch(_SUBPROCESS, AsyncMock(return_value=_process(1))):
            self.assertIsNone(await get_version(Path("/bin/ffmpeg")))


class TestDownload(unittest.IsolatedAsyncioTestCase):
    """Tests for download_archive and download_runtime over a mock transport."""

    PAYLOAD: bytes = b"x" * 10_000

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.settings = Settings(data_directory=self.root / "data")

    async def asyncTearDown(self) -> None:
        self._tmp.cleanup()

    def _client(self, handler: Any) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)

    async def test_streams_with_progress(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=self.PAYLOAD)

        seen: list[float] = []
        async with self._client(handler) as client:
            dest = await download_archive(
                "https://example.test/a.zip", self.root / "a.zip", self.settings, on_progress=seen.append, client=client
            )
        self.assertEqual(dest.read_bytes(), self.PAYLOAD)
        self.assertTrue(seen)
        self.assertEqual(seen[-1], 100.0)
        self.assertEqual(seen, sorted(seen))

    async def test_follows_redirects(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/start":
                return httpx.Response(301, headers={"location": "https://mirror.test/middle"})
            if request.url.path == "/middle":
                return httpx.Response(302, headers={"location": "/final"})
            return httpx.Response(200, content=b"archive")

        async with self._client(handler) as client:
            dest = await download_archive("https://example.test/start", self.root / "a.zip", self.settings, client=client)
        self.assertEqual(dest.read_bytes(), b"archive")

    async def test_redirect_limit(self) -> None:
        hops: list[str] = []

        def handler(request: httpx.Request) -> httpx.Response:
            hops.append(str(request.url))
            return httpx.Response(302, headers={"location": f"/hop{len(hops)}"})

        async with self._client(handler) as client:
            with self.assertRaises(RedirectLimitError) as ctx:
                await download_archive("https://example.test/start", self.root / "a.zip", self.settings, client=client)
        self.assertEqual(len(hops), self.settings.max_redirects + 1)
        self.assertEqual(ctx.exception.category, "network")

    async def test_non_200_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404)

        async with self._client(handler) as client:
            with self.assertRaises(DownloadError) as ctx:
                await download_archive("https://example.test/a.zip", self.root / "a.zip", self.settings, client=client)
        self.assertIn("404", str(ctx.exception))

    async def test_transport_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with self._client(handler) as client:
            with self.assertRaises(DownloadError):
                await download_archive("https://example.test/a.zip", self.root / "a.zip", self.settings, client=client)

    async def test_overall_deadline(self) -> None:
        async def handler(request: httpx.Request) -> httpx.Response:
            await asyncio.sleep(1.0)
            return httpx.Response(200, content=self.PAYLOAD)

        settings = Settings(data_directory=self.root / "data", download_timeout_seconds=0.05)
        async with self._client(handler) as client:
            with self.assertRaises(DownloadTimeoutError) as ctx:
                await download_archive("https://example.test/a.zip", self.root / "a.zip", settings, client=client)
        self.assertEqual(ctx.exception.category, "network")
        self.assertIn("timed out", str(ctx.exception))

    async def test_connect_deadline(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("connect timed out", request=request)

        async with self._client(handler) as client:
            with self.assertRaises(DownloadTimeoutError) as ctx:
                await download_archive("https://example.test/a.zip", self.root / "a.zip", self.settings, client=client)
        self.assertEqual(ctx.exception.category, "network")

    async def test_download_runtime_installs_binary(self) -> None:
        """Download, extract, locate and install; temporary files are cleaned up."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"tarball")

        async def fake_extract(archive: Path, destination: Path, platform: str) -> None:
            self.assertEqual(archive.read_bytes(), b"tarball")
            folder = destination / "ffmpeg-6.1-amd64-static"
            folder.mkdir()
            (folder / "ffmpeg").write_bytes(b"elf")

        with patch("transcode_engine.services.acquisition.extract_archive", fake_extract):
            async with self._client(handler) as client:
                installed = await download_runtime(self.settings, client=client, platform="linux")

        self.assertEqual(installed, self.root / "data" / "ffmpeg" / "ffmpeg")
        self.assertTrue(binary_exists(installed))
        self.assertFalse((self.root / "data" / "ffmpeg" / "extract").exists())
        self.assertFalse((self.root / "data" / "ffmpeg" / "ffmpeg-download.tar.xz").exists())

    async def test_download_runtime_missing_executable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"tarball")

        async def empty_extract(archive: Path, destination: Path, platform: str) -> None:
            (destination / "README").write_text("nothing here")

        with patch("transcode_engine.services.acquisition.extract_archive", empty_extract):
            async with self._client(handler) as client:
                with self.assertRaises(ExecutableNotFoundError) as ctx:
                    await download_runtime(self.settings, client=client, platform="linux")
        self.assertEqual(ctx.exception.category, "installation")


if __name__ == "__main__":
    unittest.main()
