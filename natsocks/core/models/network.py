"""
Network profile — what the host can reach, derived once per run.
"""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict


class IPFamily(StrEnum):
    """IP address family."""

    IPV4 = "ipv4"
    IPV6 = "ipv6"

    @property
    def flag(self) -> str:
        """Family selector for ip/ping/curl (``-4`` / ``-6``)."""
        return "-4" if self is IPFamily.IPV4 else "-6"


class NetworkProfile(BaseModel):
    """Egress capabilities of the host.

    A profile with no egress at all is valid: the deployment still runs
    for local verification and the functional probes degrade to warnings.
    """

    model_config = ConfigDict(frozen=True)

    ipv4_route: bool = False
    ipv6_route: bool = False
    ipv4_egress: bool = False
    ipv6_egress: bool = False
    ipv6_stack: bool = True          # kernel has IPv6 enabled (can bind [::])
    preferred_family: IPFamily = IPFamily.IPV4

    @property
    def has_egress(self) -> bool:
        return self.ipv4_egress or self.ipv6_egress

    def egress(self, family: IPFamily) -> bool:
        """Whether outbound connections work over ``family``."""
        return self.ipv4_egress if family is IPFamily.IPV4 else self.ipv6_egress

    @property
    def egress_families(self) -> list[IPFamily]:
        """Families with egress, preferred family first."""
        families = [f for f in (IPFamily.IPV4, IPFamily.IPV6) if self.egress(f)]
        return sorted(families, key=lambda f: f is not self.preferred_family)

    def to_dict(self) -> dict:
        data = self.model_dump(mode="json")
        data["has_egress"] = self.has_egress
        return data
