"""
Readiness verifier — is the proxy listening, and does it actually proxy?

    1. poll the socket table until every listen port is bound
       (bounded by attempts × interval and a wall-clock budget)
    2. SOCKS5 method negotiation against 127.0.0.1
    3. one end-to-end request through the proxy per egress family

``verify`` only observes; ``assert_ready`` applies the failure policy:
fatal when a port never listens, or when the host has egress but no
family's end-to-end probe succeeded. Everything else is a warning.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from urllib.parse import quote

from natsocks.adapters.base import Host
from natsocks.core.errors import ReadinessError
from natsocks.core.models.network import IPFamily, NetworkProfile
from natsocks.core.models.policy import Credentials
from natsocks.core.models.readiness import ReadinessResult
from natsocks.core.models.service import ServiceInstance
from natsocks.core.models.settings import Settings
from natsocks.core.reliability.retry import poll_until

logger = logging.getLogger(__name__)

LOCALHOST = "127.0.0.1"


def proxy_url(port: int, credentials: Credentials | None = None, host: str = LOCALHOST) -> str:
    """``socks5h://[user:pass@]host:port`` with credentials percent-encoded."""
    auth = ""
    if credentials:
        auth = f"{quote(credentials.username, safe='')}:{quote(credentials.password, safe='')}@"
    return f"socks5h://{auth}{host}:{port}"


class ReadinessVerifier:
    def __init__(self, host: Host, settings: Settings):
        self._host = host
        self._settings = settings

    def verify(
        self,
        instance: ServiceInstance,
        listen_ports: Iterable[int],
        profile: NetworkProfile,
        credentials: Credentials | None = None,
        socks_port: int | None = None,
    ) -> ReadinessResult:
        """Observe the freshly started proxy. Never raises."""
        s = self._settings
        host = self._host
        ports = set(listen_ports)
        socks_port = socks_port if socks_port is not None else min(ports)

        outcome = poll_until(
            lambda: ports <= host.listening_ports(),
            attempts=s.listen_attempts,
            interval=s.listen_interval,
            budget=s.listen_budget,
            label=f"ports {sorted(ports)} listening",
            sleep=host.sleep,
            clock=host.clock,
        )
        result = ReadinessResult(elapsed_attempts=outcome.attempts)
        if not outcome.ok:
            result.missing_ports = sorted(ports - host.listening_ports())
            logger.error(
                "%s: ports %s not listening after %d attempt(s)",
                instance.ref, result.missing_ports, outcome.attempts,
            )
            return result
        result.listening = True
        logger.info("%s: listening on %s", instance.ref, sorted(ports))

        result.handshake_ok = host.socks5_handshake(
            LOCALHOST,
            socks_port,
            username=credentials.username if credentials else None,
            password=credentials.password if credentials else None,
            timeout=float(s.connect_timeout),
        )
        if not result.handshake_ok:
            result.warnings.append(f"SOCKS5 handshake on {LOCALHOST}:{socks_port} failed")

        if not profile.has_egress:
            result.warnings.append("No egress on either family; end-to-end probe skipped")
            return result

        if not host.which("curl"):
            result.warnings.append("curl unavailable; end-to-end probe replaced by the SOCKS5 handshake")
            result.functional_probe_ok = bool(result.handshake_ok)
            return result

        for family in profile.egress_families:
            ok = self.probe_family(family, socks_port, credentials)
            result.family_results[family] = ok
            if not ok:
                which = "preferred" if family is profile.preferred_family else "secondary"
                result.warnings.append(f"End-to-end probe over {family} ({which}) failed")

        result.functional_probe_ok = any(result.family_results.values())
        logger.info(
            "%s: end-to-end probe %s",
            instance.ref,
            ", ".join(f"{f}={'ok' if ok else 'failed'}" for f, ok in result.family_results.items()),
        )
        return result

    def probe_family(
        self,
        family: IPFamily,
        port: int,
        credentials: Credentials | None = None,
    ) -> bool:
        """One request through the proxy to an endpoint reachable only over ``family``."""
        s = self._settings
        url = s.probe_url_ipv4 if family is IPFamily.IPV4 else s.probe_url_ipv6
        r = self._host.run(
            [
                "curl", "-fsS", "-o", "/dev/null",
                "--max-time", str(s.probe_timeout),
                "-x", proxy_url(port, credentials),
                url,
            ],
            timeout=s.probe_timeout + 5,
        )
        if not r.ok:
            logger.debug("Probe via %s over %s failed: %s", port, family, r.error)
        return r.ok


def assert_ready(result: ReadinessResult, profile: NetworkProfile) -> None:
    """Raise ReadinessError if ``result`` is a deployment failure."""
    if not result.listening:
        raise ReadinessError(
            f"Proxy never started listening on {result.missing_ports} "
            f"({result.elapsed_attempts} attempt(s))"
        )
    if profile.has_egress and not result.functional_probe_ok:
        raise ReadinessError(
            "Proxy is listening but no end-to-end probe succeeded: "
            + "; ".join(result.warnings)
        )
