"""
Result reporter — public addresses and ready-to-paste connection strings.
"""

from __future__ import annotations

import ipaddress
import logging
from dataclasses import dataclass, field
from urllib.parse import quote

from natsocks.adapters.base import Host
from natsocks.core.models.network import IPFamily, NetworkProfile
from natsocks.core.models.policy import Credentials
from natsocks.core.models.service import ListenSpec, ServiceConfig, ServiceInstance, SupervisionMode
from natsocks.core.models.settings import Settings

logger = logging.getLogger(__name__)


def connection_string(
    scheme: str,
    address: str,
    port: int,
    credentials: Credentials | None = None,
) -> str:
    """``scheme://[user:pass@]host:port``; IPv6 hosts are bracketed."""
    host = f"[{address}]" if ":" in address else address
    auth = ""
    if credentials:
        auth = f"{quote(credentials.username, safe='')}:{quote(credentials.password, safe='')}@"
    return f"{scheme}://{auth}{host}:{port}"


@dataclass
class ConnectionReport:
    public_ipv4: str | None = None
    public_ipv6: str | None = None
    endpoints: list[str] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)
    commands: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "public_ipv4": self.public_ipv4,
            "public_ipv6": self.public_ipv6,
            "endpoints": self.endpoints,
            "notices": self.notices,
            "commands": self.commands,
            "warnings": self.warnings,
        }


class ResultReporter:
    def __init__(self, host: Host, settings: Settings):
        self._host = host
        self._settings = settings

    def public_ip(self, family: IPFamily) -> str | None:
        """First address of ``family`` any lookup endpoint returns."""
        if not self._host.which("curl"):
            return None
        s = self._settings
        urls = s.public_ip_urls_ipv4 if family is IPFamily.IPV4 else s.public_ip_urls_ipv6
        for url in urls:
            r = self._host.run(
                ["curl", family.flag, "-fsS", "--max-time", str(s.egress_probe_timeout), url],
                timeout=s.egress_probe_timeout + 5,
            )
            candidate = r.stdout.strip() if r.ok else ""
            try:
                ip = ipaddress.ip_address(candidate)
            except ValueError:
                logger.debug("No %s address from %s (%r)", family, url, candidate[:60])
                continue
            if (ip.version == 4) == (family is IPFamily.IPV4):
                return str(ip)
        return None

    def report(
        self,
        config: ServiceConfig,
        profile: NetworkProfile,
        instance: ServiceInstance,
        machine_type: str = "nat",
    ) -> ConnectionReport:
        report = ConnectionReport()
        report.public_ipv4 = self.public_ip(IPFamily.IPV4)
        if profile.ipv6_egress:
            report.public_ipv6 = self.public_ip(IPFamily.IPV6)

        if not report.public_ipv4 and not report.public_ipv6:
            report.warnings.append("Could not determine any public address")

        for spec in config.listen_specs:
            for address in (report.public_ipv4, report.public_ipv6):
                if address and _accepts(spec, address):
                    report.endpoints.append(
                        connection_string(spec.scheme, address, spec.port, config.credentials)
                    )

        primary = config.primary
        if report.public_ipv4 and machine_type == "nat":
            report.notices.append(
                f"NAT host: map an external port on {report.public_ipv4} to this host's "
                f"port {primary.port} in the provider panel, then use the external port"
            )
        if report.public_ipv6 and _accepts(primary, report.public_ipv6):
            report.notices.append(
                "IPv6 usually needs no port mapping; clients must write the address in brackets"
            )

        report.commands = self._commands(instance, primary.port)
        return report

    def _commands(self, instance: ServiceInstance, port: int) -> list[str]:
        s = self._settings
        if instance.supervision_mode is SupervisionMode.PRIMARY:
            commands = [
                f"systemctl status {instance.unit_name} --no-pager -l",
                f"systemctl restart {instance.unit_name}",
                f"journalctl -u {instance.unit_name} -n 50 --no-pager",
            ]
        else:
            commands = [
                f"tail -n 50 {s.log_path}",
                f"cat {s.pid_path}",
            ]
        commands.append(f"ss -lntp | grep :{port}")
        return commands


def _accepts(spec: ListenSpec, address: str) -> bool:
    """An IPv4-only bind cannot serve IPv6 clients."""
    return ":" not in address or ":" in spec.address


def format_report(report: ConnectionReport) -> str:
    lines = []
    if report.public_ipv4:
        lines.append(f"Public IPv4: {report.public_ipv4}")
    if report.public_ipv6:
        lines.append(f"Public IPv6: {report.public_ipv6}")
    if report.endpoints:
        lines.append("")
        lines.append("Connection strings:")
        lines += [f"  {e}" for e in report.endpoints]
    if report.notices:
        lines.append("")
        lines += [f"! {n}" for n in report.notices]
    if report.commands:
        lines.append("")
        lines.append("Useful commands:")
        lines += [f"  {c}" for c in report.commands]
    return "\n".join(lines)
