"""
Settings — operator-tunable knobs for a deployment run.

Everything that used to be a hard-coded constant in the shell scripts
(paths, endpoints, the "last known good" gost version, retry budgets)
lives here so it can be overridden from settings.yml or the environment.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator


class Settings(BaseModel):
    """Validated settings with defaults matching a stock Debian host."""

    service_name: str = "nat-socks"

    # ── Fixed well-known paths ──────────────────────────────────
    config_dir: Path = Path("/etc/nat-socks")
    binary_path: Path = Path("/usr/local/bin/gost")
    dante_binary_path: Path = Path("/usr/sbin/danted")
    unit_dir: Path = Path("/etc/systemd/system")
    log_path: Path = Path("/var/log/nat-socks.log")
    pid_path: Path = Path("/run/nat-socks.pid")
    audit_path: Path = Path("/var/lib/nat-socks/audit.ndjson")

    # ── Artifact source ─────────────────────────────────────────
    gost_repo: str = "go-gost/gost"
    # Fallback when GitHub is unreachable; refresh alongside new releases
    pinned_version: str = "v3.0.0"
    mirror_prefix: str = "https://ghproxy.net/"

    # ── Network endpoints ───────────────────────────────────────
    nameservers: list[str] = Field(
        default_factory=lambda: ["udp://1.1.1.1:53", "udp://8.8.8.8:53"]
    )
    ping_target_ipv4: str = "1.1.1.1"
    ping_target_ipv6: str = "2606:4700:4700::1111"
    egress_url_ipv4: str = "https://api.ipify.org"
    egress_url_ipv6: str = "https://ipv6.icanhazip.com"
    probe_url_ipv4: str = "https://api.ipify.org"
    probe_url_ipv6: str = "https://api6.ipify.org"
    public_ip_urls_ipv4: list[str] = Field(
        default_factory=lambda: ["https://ipinfo.io/ip", "https://api.ipify.org"]
    )
    public_ip_urls_ipv6: list[str] = Field(
        default_factory=lambda: ["https://ipv6.icanhazip.com"]
    )
    prefer_ipv6: bool = True

    # ── Timeouts (seconds) and retry budgets ────────────────────
    command_timeout: int = 30
    apt_timeout: int = 600
    version_timeout: int = 10
    connect_timeout: int = 10
    download_timeout: int = 120
    mirror_timeout: int = 300
    download_attempts: int = Field(default=3, ge=1)
    retry_delay: float = 1.0
    ping_timeout: int = 2
    egress_probe_timeout: int = 6
    probe_timeout: int = 8

    listen_attempts: int = Field(default=8, ge=1)
    listen_interval: float = 0.5
    listen_budget: float = 4.0

    start_confirm_attempts: int = Field(default=5, ge=1)
    start_confirm_interval: float = 1.0

    teardown_attempts: int = Field(default=10, ge=1)
    teardown_interval: float = 0.3

    @field_validator("pinned_version")
    @classmethod
    def _tag_prefix(cls, v: str) -> str:
        v = v.strip()
        return v if v.startswith("v") else f"v{v}"

    def config_path(self, backend: Literal["gost", "dante"]) -> Path:
        """Rendered proxy config location for ``backend``."""
        name = "gost.yaml" if backend == "gost" else "danted.conf"
        return self.config_dir / name

    @property
    def unit_path(self) -> Path:
        return self.unit_dir / f"{self.service_name}.service"
