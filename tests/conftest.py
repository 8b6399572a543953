"""
Shared test fixtures and configuration.
"""

import io
import tarfile
from pathlib import Path

import pytest

from natsocks.adapters.mock import MockHost, MockHttpClient
from natsocks.core.models import CommandResult, Settings

GOST_TAG = "v3.0.0"
LATEST_URL = "https://github.com/go-gost/gost/releases/latest"
RELEASE_URL = f"https://github.com/go-gost/gost/releases/tag/{GOST_TAG}"
ASSET_URL = (
    f"https://github.com/go-gost/gost/releases/download/{GOST_TAG}/gost_3.0.0_linux_amd64.tar.gz"
)
MIRROR_URL = f"https://ghproxy.net/{ASSET_URL}"


def make_tarball(members: dict[str, tuple[bytes, int]]) -> bytes:
    """Build a .tar.gz in memory from ``{name: (content, mode)}``."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, (content, mode) in members.items():
            info = tarfile.TarInfo(name)
            info.size = len(content)
            info.mode = mode
            tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


@pytest.fixture
def gost_tarball() -> bytes:
    """A release archive shaped like the real one."""
    return make_tarball({
        "README.md": (b"gost\n", 0o644),
        "LICENSE": (b"MIT\n", 0o644),
        "gost": (b"#!/bin/sh\necho gost 3.0.0\n", 0o755),
    })


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Default settings with the audit ledger under tmp_path."""
    return Settings(audit_path=tmp_path / "audit" / "audit.ndjson")


@pytest.fixture
def host() -> MockHost:
    """A bare mock host: root, systemd, every tool, no default routes."""
    return MockHost()


@pytest.fixture
def online_host() -> MockHost:
    """Mock host with IPv4 egress, a gost binary that reports its
    version, and proxy processes that bind 1080/1081 on start."""
    h = MockHost()
    h.set_response(
        ["ip", "-4", "route", "show", "default"],
        CommandResult.success([], stdout="default via 10.0.0.1 dev ens3 proto dhcp metric 100\n"),
    )
    h.set_response(["ip", "-6", "route", "show", "default"], CommandResult.success([]))
    h.set_response(["gost", "-V"], CommandResult.success([], stdout="gost v3.0.0 (go1.22.0 linux/amd64)\n"))
    h.set_response(
        ["curl", "-4", "-fsS", "--max-time"],
        CommandResult.success([], stdout="203.0.113.10\n"),
    )
    h.ports_on_start = {1080, 1081}
    return h


@pytest.fixture
def http(gost_tarball: bytes) -> MockHttpClient:
    """HTTP double serving the latest-release redirect and the asset."""
    client = MockHttpClient()
    client.redirects[LATEST_URL] = RELEASE_URL
    client.downloads[ASSET_URL] = gost_tarball
    return client
