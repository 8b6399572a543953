"""
Artifact spec — which proxy binary to fetch and from where.

Computed fresh each run, never persisted.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict


class ArtifactSpec(BaseModel):
    """A resolved, platform-specific download."""

    model_config = ConfigDict(frozen=True)

    version_tag: str                         # e.g. "v3.0.0"
    platform_arch: Literal["amd64", "arm64"]
    primary_url: str
    fallback_url: str = ""                   # mirror; empty = no mirror
    version_source: Literal["redirect", "api", "pinned"] = "pinned"

    @property
    def version(self) -> str:
        """Version without the leading ``v``."""
        return self.version_tag.removeprefix("v")

    @property
    def tarball_name(self) -> str:
        return self.primary_url.rsplit("/", 1)[-1]
