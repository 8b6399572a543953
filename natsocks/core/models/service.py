"""
Service models — the rendered proxy configuration and the running instance.
"""

from __future__ import annotations

import ipaddress
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from natsocks.core.models.network import IPFamily
from natsocks.core.models.policy import Credentials

# Wildcard binds overlap each other: [::] is dual-stack with bindv6only=0
_WILDCARDS = {"::", "0.0.0.0", ""}


class ListenSpec(BaseModel):
    """One listener: bind address, port and protocol handler."""

    model_config = ConfigDict(frozen=True)

    address: str = "::"
    port: int = Field(ge=1, le=65535)
    handler: Literal["socks5", "http"] = "socks5"
    transport: Literal["tcp"] = "tcp"

    @property
    def bind(self) -> str:
        """Bind literal, IPv6 bracketed: ``[::]:1080`` / ``0.0.0.0:1080``."""
        if ":" in self.address:
            return f"[{self.address}]:{self.port}"
        return f"{self.address}:{self.port}"

    @property
    def scheme(self) -> str:
        return self.handler

    def _bind_key(self) -> tuple[str, int]:
        addr = "*" if self.address in _WILDCARDS else self.address
        return addr, self.port


class AccessRule(BaseModel):
    """A single ordered access rule (first match wins)."""

    model_config = ConfigDict(frozen=True)

    cidr: str
    action: Literal["allow", "deny"] = "allow"

    @property
    def network(self) -> ipaddress.IPv4Network | ipaddress.IPv6Network:
        return ipaddress.ip_network(self.cidr, strict=False)

    @property
    def family(self) -> IPFamily:
        return IPFamily.IPV4 if self.network.version == 4 else IPFamily.IPV6

    def matches(self, address: str) -> bool:
        ip = ipaddress.ip_address(address)
        # ::ffff:a.b.c.d reaches a dual-stack listener from an IPv4 client
        if ip.version == 6 and ip.ipv4_mapped is not None:
            ip = ip.ipv4_mapped
        net = self.network
        return ip.version == net.version and ip in net


class ServiceConfig(BaseModel):
    """Everything a backend needs to render its config file.

    Invariants:
        - no two listeners share an (address, port) pair
        - access rules evaluate first-match; the implicit tail is
          deny-all when any explicit rule exists, allow-all otherwise
    """

    model_config = ConfigDict(frozen=True)

    service_name: str = "nat-socks"
    backend: Literal["gost", "dante"] = "gost"
    listen_specs: list[ListenSpec]
    resolver_preference: IPFamily = IPFamily.IPV4
    nameservers: list[str] = Field(default_factory=list)
    access_rules: list[AccessRule] = Field(default_factory=list)
    whitelist: bool = False
    credentials: Credentials | None = None
    external_interface: str = "eth0"
    warnings: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _check_listeners(self) -> ServiceConfig:
        if not self.listen_specs:
            raise ValueError("at least one listener is required")
        seen: set[tuple[str, int]] = set()
        for spec in self.listen_specs:
            key = spec._bind_key()
            if key in seen:
                raise ValueError(f"listeners overlap on {spec.bind}")
            seen.add(key)
        return self

    @property
    def ports(self) -> list[int]:
        return [s.port for s in self.listen_specs]

    @property
    def primary(self) -> ListenSpec:
        return self.listen_specs[0]

    @property
    def default_action(self) -> Literal["allow", "deny"]:
        return "deny" if self.access_rules else "allow"

    def evaluate(self, address: str) -> Literal["allow", "deny"]:
        """First-match evaluation of ``address`` against the access rules."""
        for rule in self.access_rules:
            if rule.matches(address):
                return rule.action
        return self.default_action


class SupervisionMode(StrEnum):
    PRIMARY = "primary"      # systemd unit
    FALLBACK = "fallback"    # detached process + @reboot relaunch


class ServiceInstance(BaseModel):
    """A running proxy, as left behind by the supervisor."""

    model_config = ConfigDict(frozen=True)

    binary_path: str
    config_path: str
    supervision_mode: SupervisionMode
    unit_name: str
    pid: int | None = None

    @property
    def ref(self) -> str:
        """Unit name in primary mode, ``pid:N`` in fallback mode."""
        if self.supervision_mode is SupervisionMode.PRIMARY:
            return f"{self.unit_name}.service"
        return f"pid:{self.pid}"
