"""Envelopes for runtime and job commands of the API."""
from __future__ import annotations

from typing import Optional

from pydantic import Field

from transcode_engine.domain.transcode import ApiResponse


class ExistsResponse(ApiResponse):
    exists: bool = Field(description="Whether the transcoding binary is installed and executable")


class VersionResponse(ApiResponse):
    version: Optional[str] = Field(default=None, description="Version token reported by the binary")


class PathResponse(ApiResponse):
    path: Optional[str] = Field(default=None, description="Resolved filesystem path")


class JobStartedResponse(ApiResponse):
    """Envelope returned when a background job is started.

    Notes
    -----
    - ``jobId`` is also set on a busy rejection, pointing at the job that is
      already running.
    """

    jobId: Optional[str] = Field(default=None, description="Identifier of the background job")
