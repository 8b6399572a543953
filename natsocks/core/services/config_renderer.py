"""
Config renderer — DeploymentRequest + NetworkProfile → ServiceConfig.

``render`` is pure: it validates and decides, it never touches the host.
The serialisers below turn a ServiceConfig into the files the supervisor
writes:

    to_gost_yaml      →  /etc/nat-socks/gost.yaml
    to_dante_conf     →  /etc/nat-socks/danted.conf
    to_systemd_unit   →  /etc/systemd/system/nat-socks.service
"""

from __future__ import annotations

import ipaddress
import logging
from collections.abc import Sequence
from pathlib import Path

import yaml

from natsocks.core.errors import ConfigurationError
from natsocks.core.models.network import IPFamily, NetworkProfile
from natsocks.core.models.policy import CredentialedPolicy, WhitelistPolicy
from natsocks.core.models.request import DeploymentRequest
from natsocks.core.models.service import AccessRule, ListenSpec, ServiceConfig

logger = logging.getLogger(__name__)

PORT_MIN = 1
PORT_MAX = 65535

ALLOW_ALL = (AccessRule(cidr="0.0.0.0/0"), AccessRule(cidr="::/0"))

# Always admitted under a whitelist so the local readiness probe gets through
LOOPBACK = ("127.0.0.1/32", "::1/128")


# ── Validation helpers ─────────────────────────────────────────


def check_port(port: int, label: str = "port") -> int:
    """Reject anything outside 1–65535."""
    if isinstance(port, bool) or not isinstance(port, int) or not PORT_MIN <= port <= PORT_MAX:
        raise ConfigurationError(f"Invalid {label} {port!r}: must be {PORT_MIN}-{PORT_MAX}")
    return port


def normalize_cidr(entry: str) -> str:
    """Bare IPv4 → /32, bare IPv6 → /128, CIDR → canonical network.

    Raises:
        ConfigurationError: If ``entry`` is neither an address nor a network.
    """
    text = entry.strip()
    try:
        if "/" not in text:
            ip = ipaddress.ip_address(text)
            return f"{ip}/{ip.max_prefixlen}"
        return str(ipaddress.ip_network(text, strict=False))
    except ValueError as e:
        raise ConfigurationError(f"Invalid whitelist entry {entry!r}: {e}") from e


def parse_whitelist(raw: str | Sequence[str]) -> list[str]:
    """Split a comma/whitespace separated list, dropping blanks."""
    if isinstance(raw, str):
        raw = raw.replace(",", " ").split()
    return [e.strip() for e in raw if e.strip()]


# ── Rendering ──────────────────────────────────────────────────


def render(
    request: DeploymentRequest,
    profile: NetworkProfile,
    *,
    service_name: str = "nat-socks",
    nameservers: Sequence[str] = ("udp://1.1.1.1:53", "udp://8.8.8.8:53"),
    external_interface: str = "eth0",
) -> ServiceConfig:
    """Build the ServiceConfig for ``request``.

    Raises:
        ConfigurationError: Invalid or overflowing port, colliding
            listeners, bad whitelist entry, empty whitelist.
    """
    warnings: list[str] = []
    listeners = _listeners(request, profile)

    rules: list[AccessRule] = list(ALLOW_ALL)
    credentials = None
    whitelist = False

    policy = request.policy
    if isinstance(policy, CredentialedPolicy):
        credentials = policy.credentials
    elif isinstance(policy, WhitelistPolicy):
        rules = _whitelist_rules(policy, request.management_origin, warnings)
        whitelist = True

    for w in warnings:
        logger.warning(w)

    try:
        return ServiceConfig(
            service_name=service_name,
            backend=request.backend,
            listen_specs=listeners,
            resolver_preference=profile.preferred_family,
            nameservers=list(nameservers),
            access_rules=rules,
            whitelist=whitelist,
            credentials=credentials,
            external_interface=external_interface,
            warnings=warnings,
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid service configuration: {e}") from e


def _listeners(request: DeploymentRequest, profile: NetworkProfile) -> list[ListenSpec]:
    port = check_port(request.port)

    # dante only binds IPv4 here; gost takes [::] when the kernel has IPv6
    address = "::" if request.backend == "gost" and profile.ipv6_stack else "0.0.0.0"
    listeners = [ListenSpec(address=address, port=port, handler="socks5")]

    if request.http_listener == "none":
        return listeners
    if request.backend == "dante":
        raise ConfigurationError("The dante backend serves SOCKS5 only; drop the HTTP listener")

    if request.http_listener == "derived":
        http_port = port + 1
        if http_port > PORT_MAX:
            raise ConfigurationError(
                f"Derived HTTP port {http_port} overflows {PORT_MAX}; choose a lower SOCKS5 port"
            )
    else:
        if request.http_port is None:
            raise ConfigurationError("An explicit HTTP listener needs http_port")
        http_port = check_port(request.http_port, "HTTP port")
        if http_port == port:
            raise ConfigurationError(f"HTTP port {http_port} collides with the SOCKS5 port")

    listeners.append(ListenSpec(address=address, port=http_port, handler="http"))
    return listeners


def _whitelist_rules(
    policy: WhitelistPolicy,
    origin: str | None,
    warnings: list[str],
) -> list[AccessRule]:
    cidrs: list[str] = []
    for entry in policy.rules:
        cidr = normalize_cidr(entry)
        if cidr not in cidrs:
            cidrs.append(cidr)
    if not cidrs:
        raise ConfigurationError("Whitelist mode needs at least one allowed IP or CIDR")

    rules = [AccessRule(cidr=c) for c in cidrs]
    rules += [AccessRule(cidr=c) for c in LOOPBACK if c not in cidrs]
    if not origin:
        return rules

    try:
        ip = ipaddress.ip_address(origin)
    except ValueError:
        warnings.append(f"Cannot parse management origin {origin!r}; lockout check skipped")
        return rules
    if ip.version == 6 and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    if any(r.matches(str(ip)) for r in rules):
        return rules

    if policy.allow_lockout:
        warnings.append(
            f"Management origin {ip} is not whitelisted; this session will be locked out of the proxy"
        )
        return rules

    host_rule = AccessRule(cidr=f"{ip}/{ip.max_prefixlen}")
    warnings.append(f"Management origin {ip} was not whitelisted; added {host_rule.cidr}")
    return [host_rule, *rules]


# ── Serialisers ────────────────────────────────────────────────


def to_gost_yaml(config: ServiceConfig) -> str:
    """gost v3 YAML: services, one resolver, optional admission whitelist."""
    services = []
    for spec in config.listen_specs:
        handler: dict = {"type": spec.handler}
        if config.credentials:
            handler["auth"] = {
                "username": config.credentials.username,
                "password": config.credentials.password,
            }
        name = config.service_name if spec.handler == "socks5" else f"{config.service_name}-{spec.handler}"
        service = {
            "name": name,
            "addr": spec.bind,
            "handler": handler,
            "listener": {"type": spec.transport},
            "resolver": "resolver-0",
        }
        if config.whitelist:
            service["admission"] = "admission-0"
        services.append(service)

    doc: dict = {
        "services": services,
        "resolvers": [{
            "name": "resolver-0",
            "nameservers": [
                {"addr": ns, "prefer": config.resolver_preference.value}
                for ns in config.nameservers
            ],
        }],
    }
    if config.whitelist:
        doc["admissions"] = [{
            "name": "admission-0",
            "whitelist": True,
            "matchers": [r.cidr for r in config.access_rules if r.action == "allow"],
        }]
    return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)


def to_dante_conf(config: ServiceConfig) -> str:
    """danted.conf: one client rule per access rule, then a block-all tail."""
    spec = config.primary
    lines = [
        f"# {config.service_name}: generated, changes are overwritten on redeploy",
        "logoutput: syslog",
        f"internal: {spec.address} port = {spec.port}",
        f"external: {config.external_interface}",
        f"socksmethod: {'username' if config.credentials else 'none'}",
        "user.privileged: root",
        "user.unprivileged: nobody",
        "",
    ]
    for rule in config.access_rules:
        verb = "pass" if rule.action == "allow" else "block"
        to = "0.0.0.0/0" if rule.family is IPFamily.IPV4 else "::/0"
        lines += [
            f"client {verb} {{",
            f"  from: {rule.cidr} to: {to}",
            "  log: error",
            "}",
            "",
        ]
    lines += [
        "client block {",
        "  from: 0.0.0.0/0 to: 0.0.0.0/0",
        "  log: connect error",
        "}",
        "",
        "socks pass {",
        "  from: 0.0.0.0/0 to: 0.0.0.0/0",
        "  protocol: tcp udp",
        "  log: error",
        "}",
        "",
    ]
    return "\n".join(lines)


def render_backend_config(config: ServiceConfig) -> str:
    if config.backend == "dante":
        return to_dante_conf(config)
    return to_gost_yaml(config)


def exec_command(config: ServiceConfig, binary_path: Path, config_path: Path) -> list[str]:
    """Foreground command line for the proxy process."""
    if config.backend == "dante":
        return [str(binary_path), "-f", str(config_path)]
    return [str(binary_path), "-C", str(config_path)]


def to_systemd_unit(config: ServiceConfig, command: Sequence[str]) -> str:
    """Service descriptor: start after network-online, restart on failure."""
    handlers = "+".join(dict.fromkeys(s.handler.upper() for s in config.listen_specs))
    return "\n".join([
        "[Unit]",
        f"Description={config.service_name} ({handlers} proxy via {config.backend})",
        "After=network-online.target",
        "Wants=network-online.target",
        "",
        "[Service]",
        "Type=simple",
        f"ExecStart={' '.join(command)}",
        "Restart=on-failure",
        "RestartSec=1",
        "LimitNOFILE=1048576",
        "",
        "NoNewPrivileges=true",
        "PrivateTmp=true",
        "ProtectSystem=full",
        "ProtectHome=true",
        "",
        "[Install]",
        "WantedBy=multi-user.target",
        "",
    ])
