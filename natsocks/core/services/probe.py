"""
Environment probe — routes, egress and platform facts.

Read-only. A missing route or a dead uplink is a valid answer, never an
error: ``probe()`` always returns a NetworkProfile.

Egress per family is a two-tier check because a default route does not
guarantee working egress (common on virtualised NAT hosts) and a single
probe is subject to transient loss:

    default route?  →  ICMP echo to an anycast address
                    →  one bounded HTTPS probe pinned to that family
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Literal
from urllib.parse import urlsplit

from natsocks.adapters.base import Host
from natsocks.core.errors import ConfigurationError
from natsocks.core.models.network import IPFamily, NetworkProfile
from natsocks.core.models.settings import Settings

logger = logging.getLogger(__name__)

_ARCH_MAP: dict[str, Literal["amd64", "arm64"]] = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}

# Kernel routing tables, read when iproute2 is not installed yet
PROC_ROUTE = {
    IPFamily.IPV4: Path("/proc/net/route"),
    IPFamily.IPV6: Path("/proc/net/ipv6_route"),
}
_RTF_UP = 0x0001
_RTF_REJECT = 0x0200


def parse_proc_route(text: str) -> list[str]:
    """Interfaces carrying an IPv4 default route in /proc/net/route format."""
    devices = []
    for line in text.splitlines()[1:]:
        fields = line.split()
        if len(fields) < 8:
            continue
        try:
            flags = int(fields[3], 16)
        except ValueError:
            continue
        if fields[1] == "00000000" and fields[7] == "00000000" and flags & _RTF_UP:
            devices.append(fields[0])
    return devices


def parse_proc_ipv6_route(text: str) -> list[str]:
    """Interfaces carrying an IPv6 default route in /proc/net/ipv6_route format.

    The kernel's unreachable ::/0 entry on ``lo`` is skipped.
    """
    devices = []
    for line in text.splitlines():
        fields = line.split()
        if len(fields) < 10:
            continue
        try:
            prefix_len = int(fields[1], 16)
            flags = int(fields[8], 16)
        except ValueError:
            continue
        if (
            fields[0] == "0" * 32 and prefix_len == 0
            and flags & _RTF_UP and not flags & _RTF_REJECT
            and fields[9] != "lo"
        ):
            devices.append(fields[9])
    return devices


def proc_default_routes(host: Host, family: IPFamily) -> list[str]:
    content = host.read_text(PROC_ROUTE[family]) or ""
    if family is IPFamily.IPV4:
        return parse_proc_route(content)
    return parse_proc_ipv6_route(content)


def choose_preferred_family(
    ipv4_egress: bool,
    ipv6_egress: bool,
    prefer_ipv6: bool = True,
) -> IPFamily:
    """IPv6 iff it has egress and IPv4 is either absent or deprioritised."""
    if ipv6_egress and (not ipv4_egress or prefer_ipv6):
        return IPFamily.IPV6
    return IPFamily.IPV4


class EnvironmentProbe:
    """Derives the NetworkProfile for one deployment run."""

    def __init__(self, host: Host, settings: Settings):
        self._host = host
        self._settings = settings

    def probe(self) -> NetworkProfile:
        ipv4_route = self.has_default_route(IPFamily.IPV4)
        ipv6_route = self.has_default_route(IPFamily.IPV6)
        ipv4_egress = ipv4_route and self.check_egress(IPFamily.IPV4)
        ipv6_egress = ipv6_route and self.check_egress(IPFamily.IPV6)

        profile = NetworkProfile(
            ipv4_route=ipv4_route,
            ipv6_route=ipv6_route,
            ipv4_egress=ipv4_egress,
            ipv6_egress=ipv6_egress,
            ipv6_stack=self._host.has_ipv6_stack(),
            preferred_family=choose_preferred_family(
                ipv4_egress, ipv6_egress, self._settings.prefer_ipv6,
            ),
        )

        logger.info(
            "Network profile: ipv4 route=%s egress=%s, ipv6 route=%s egress=%s, prefer %s",
            ipv4_route, ipv4_egress, ipv6_route, ipv6_egress, profile.preferred_family,
        )
        if not profile.has_egress:
            logger.warning("No egress detected on either family; functional probes will fail")
        return profile

    def has_default_route(self, family: IPFamily) -> bool:
        r = self._host.run(["ip", family.flag, "route", "show", "default"], timeout=5)
        if r.ok:
            return any(line.startswith("default") for line in r.stdout.splitlines())
        logger.debug("ip %s route failed (%s); reading %s", family.flag, r.error, PROC_ROUTE[family])
        return bool(proc_default_routes(self._host, family))

    def check_egress(self, family: IPFamily) -> bool:
        s = self._settings
        target = s.ping_target_ipv4 if family is IPFamily.IPV4 else s.ping_target_ipv6
        ping = self._host.run(
            ["ping", family.flag, "-c", "1", "-W", str(s.ping_timeout), target],
            timeout=s.ping_timeout + 3,
        )
        if ping.ok:
            return True
        logger.debug("ping %s %s failed, trying HTTPS", family.flag, target)

        url = s.egress_url_ipv4 if family is IPFamily.IPV4 else s.egress_url_ipv6
        return self.https_probe(url, family, s.egress_probe_timeout)

    def https_probe(self, url: str, family: IPFamily, timeout: int) -> bool:
        """One HTTPS request pinned to ``family``.

        Uses curl when available, otherwise a bare TCP connect to port 443
        over the same family.
        """
        if self._host.which("curl"):
            r = self._host.run(
                ["curl", family.flag, "-fsS", "-o", "/dev/null", "--max-time", str(timeout), url],
                timeout=timeout + 5,
            )
            return r.ok
        hostname = urlsplit(url).hostname or url
        return self._host.tcp_connect(hostname, 443, family, float(timeout))


def detect_arch(host: Host) -> Literal["amd64", "arm64"]:
    """Map ``uname -m`` to a release asset architecture.

    Raises:
        ConfigurationError: For anything other than amd64/arm64.
    """
    machine = host.machine().lower()
    arch = _ARCH_MAP.get(machine)
    if arch is None:
        raise ConfigurationError(
            f"Unsupported architecture: {machine or 'unknown'} (only amd64/arm64)"
        )
    return arch


def default_interface(host: Host, fallback: str = "eth0") -> str:
    """Name of the interface carrying the IPv4 default route."""
    r = host.run(["ip", "-4", "route", "show", "default"], timeout=5)
    if r.ok:
        for line in r.stdout.splitlines():
            fields = line.split()
            if fields[:1] == ["default"] and "dev" in fields:
                idx = fields.index("dev")
                if idx + 1 < len(fields):
                    return fields[idx + 1]
        return fallback
    devices = proc_default_routes(host, IPFamily.IPV4)
    return devices[0] if devices else fallback


def management_origin(env: Mapping[str, str] | None = None) -> str | None:
    """Source address of the current SSH session, if any."""
    env = os.environ if env is None else env
    for var in ("SSH_CONNECTION", "SSH_CLIENT"):
        value = env.get(var, "").split()
        if value:
            return value[0]
    return None
