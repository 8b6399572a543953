"""
Deploy use case — the whole pipeline for one run.

    root check → probe → render (validation only) → dependencies
    → artifact (gost) / package (dante) → teardown → write + start
    → verify → report

Strictly sequential. Anything that can be rejected without touching the
host (bad port, bad whitelist, unsupported architecture) is rejected
before the first mutation. Every run, successful or not, appends one
entry to the audit ledger.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field

from natsocks.adapters.base import Host
from natsocks.adapters.net.http import HttpClient
from natsocks.core.errors import ConfigurationError, DeploymentError, ReadinessError
from natsocks.core.models.network import NetworkProfile
from natsocks.core.models.readiness import ReadinessResult
from natsocks.core.models.request import DeploymentRequest
from natsocks.core.models.service import ServiceConfig, ServiceInstance
from natsocks.core.models.settings import Settings
from natsocks.core.observability.logging_config import operation_context
from natsocks.core.persistence.audit import AuditEntry, AuditWriter
from natsocks.core.services.artifact_fetcher import ArtifactFetcher, FetchResult
from natsocks.core.services.config_renderer import render
from natsocks.core.services.dependencies import DependencyReport, DependencyResolver
from natsocks.core.services.probe import (
    EnvironmentProbe,
    default_interface,
    detect_arch,
    management_origin,
)
from natsocks.core.services.readiness import ReadinessVerifier, assert_ready
from natsocks.core.services.reporter import ConnectionReport, ResultReporter
from natsocks.core.services.supervisor import ServiceSupervisor, TeardownReport

logger = logging.getLogger(__name__)

# tool → needed for; the critical subset aborts the run when missing
_GOST_TOOLS = {"curl", "ip", "ping", "ss", "crontab", "update-ca-certificates"}
_GOST_CRITICAL = {"curl", "update-ca-certificates"}
_DANTE_TOOLS = {"curl", "ip", "ping", "ss", "crontab", "danted"}
_DANTE_CRITICAL = {"danted"}
_ACCOUNT_TOOLS = {"useradd", "chpasswd"}


def required_tools(request: DeploymentRequest) -> tuple[set[str], set[str]]:
    """``(required, critical)`` tool sets for ``request``."""
    if request.backend == "dante":
        required, critical = set(_DANTE_TOOLS), set(_DANTE_CRITICAL)
        if request.policy.mode == "credentialed":
            required |= _ACCOUNT_TOOLS
            critical |= _ACCOUNT_TOOLS
        return required, critical
    return set(_GOST_TOOLS), set(_GOST_CRITICAL)


@dataclass
class DeploymentReport:
    """Everything one successful run produced."""

    operation_id: str
    status: str = "ok"                  # ok, degraded
    profile: NetworkProfile | None = None
    dependencies: DependencyReport | None = None
    artifact: FetchResult | None = None
    teardown: TeardownReport | None = None
    config: ServiceConfig | None = None
    instance: ServiceInstance | None = None
    readiness: ReadinessResult | None = None
    connection: ConnectionReport | None = None
    warnings: list[str] = field(default_factory=list)
    duration_ms: int = 0

    def to_dict(self) -> dict:
        result: dict = {
            "operation_id": self.operation_id,
            "status": self.status,
            "duration_ms": self.duration_ms,
            "warnings": self.warnings,
        }
        if self.profile:
            result["network"] = self.profile.to_dict()
        if self.dependencies:
            result["dependencies"] = self.dependencies.to_dict()
        if self.artifact:
            result["artifact"] = {
                "version": self.artifact.spec.version_tag,
                "source": self.artifact.spec.version_source,
                "url": self.artifact.spec.primary_url,
                "binary": str(self.artifact.binary_path),
                "version_output": self.artifact.version_output,
            }
        if self.config:
            result["service"] = {
                "name": self.config.service_name,
                "backend": self.config.backend,
                "listeners": [
                    {"bind": s.bind, "handler": s.handler} for s in self.config.listen_specs
                ],
                "access_rules": [r.cidr for r in self.config.access_rules],
                "whitelist": self.config.whitelist,
                "auth": bool(self.config.credentials),
            }
        if self.instance:
            result["instance"] = {
                "supervision_mode": self.instance.supervision_mode.value,
                "ref": self.instance.ref,
                "config_path": self.instance.config_path,
            }
        if self.readiness:
            result["readiness"] = self.readiness.model_dump(mode="json")
        if self.connection:
            result["connection"] = self.connection.to_dict()
        return result


def _new_operation_id() -> str:
    return uuid.uuid4().hex[:12]


def _audit(settings: Settings, entry: AuditEntry) -> None:
    AuditWriter(settings.audit_path).write(entry)


def run_deployment(
    request: DeploymentRequest,
    settings: Settings,
    host: Host,
    http: HttpClient | None = None,
    *,
    env: Mapping[str, str] | None = None,
) -> DeploymentReport:
    """Deploy the proxy described by ``request``.

    Raises:
        ConfigurationError: Invalid input; the host was not modified.
        FatalDeploymentError: A stage failed after its own retries.
    """
    start = time.monotonic()
    report = DeploymentReport(operation_id=_new_operation_id())
    logger.info("Deployment %s: %s on port %d", report.operation_id, request.backend, request.port)

    try:
        with operation_context(report.operation_id):
            _deploy(request, settings, host, http, env, report)
    except DeploymentError as e:
        report.duration_ms = int((time.monotonic() - start) * 1000)
        logger.error("Deployment %s failed: %s", report.operation_id, e)
        _audit(settings, AuditEntry(
            operation_id=report.operation_id,
            operation_type="deploy",
            backend=request.backend,
            ports=report.config.ports if report.config else [request.port],
            supervision_mode=(
                report.instance.supervision_mode.value if report.instance else None
            ),
            status="failed",
            duration_ms=report.duration_ms,
            warnings=report.warnings,
            errors=[f"{type(e).__name__}: {e}"],
        ))
        raise

    report.duration_ms = int((time.monotonic() - start) * 1000)
    report.status = "degraded" if report.warnings else "ok"
    _audit(settings, AuditEntry(
        operation_id=report.operation_id,
        operation_type="deploy",
        backend=request.backend,
        ports=report.config.ports if report.config else [],
        supervision_mode=report.instance.supervision_mode.value if report.instance else None,
        status=report.status,
        duration_ms=report.duration_ms,
        warnings=report.warnings,
        context={
            "version": report.artifact.spec.version_tag if report.artifact else None,
            "preferred_family": report.profile.preferred_family.value if report.profile else None,
            "machine_type": request.machine_type,
            "policy": request.policy.mode,
        },
    ))
    logger.info("Deployment %s finished: %s", report.operation_id, report.status)
    return report


def _deploy(
    request: DeploymentRequest,
    settings: Settings,
    host: Host,
    http: HttpClient | None,
    env: Mapping[str, str] | None,
    report: DeploymentReport,
) -> None:
    if not host.is_root():
        raise ConfigurationError("nat-socks deploy must run as root")

    if request.management_origin is None:
        request = request.model_copy(update={"management_origin": management_origin(env)})
    arch = detect_arch(host) if request.backend == "gost" else None

    # ── Probe + validate (read-only) ────────────────────────────
    profile = EnvironmentProbe(host, settings).probe()
    report.profile = profile
    if not profile.has_egress:
        report.warnings.append("No egress detected on either IP family")
    elif not profile.ipv6_egress:
        report.warnings.append("No IPv6 egress; IPv6 endpoints will not be offered")

    config = render(
        request,
        profile,
        service_name=settings.service_name,
        nameservers=settings.nameservers,
        external_interface=default_interface(host),
    )
    report.config = config
    report.warnings += config.warnings

    # ── Dependencies + artifact ─────────────────────────────────
    required, critical = required_tools(request)
    deps = DependencyResolver(host, settings).ensure(required, critical)
    report.dependencies = deps
    if deps.degraded:
        report.warnings.append(f"Optional tools unavailable: {', '.join(sorted(deps.missing))}")

    if arch is not None:
        report.artifact = ArtifactFetcher(host, settings, http).fetch(arch)
        binary = settings.binary_path
    else:
        binary = settings.dante_binary_path

    # ── Teardown + start ────────────────────────────────────────
    supervisor = ServiceSupervisor(host, settings)
    report.teardown = supervisor.teardown()
    try:
        instance = supervisor.deploy(config, binary)
    finally:
        report.warnings += supervisor.warnings
    report.instance = instance

    # ── Verify + report ─────────────────────────────────────────
    readiness = ReadinessVerifier(host, settings).verify(
        instance, config.ports, profile, config.credentials, socks_port=config.primary.port,
    )
    report.readiness = readiness
    report.warnings += readiness.warnings
    try:
        assert_ready(readiness, profile)
    except ReadinessError as e:
        e.diagnostics = supervisor.diagnostics()
        raise

    connection = ResultReporter(host, settings).report(
        config, profile, instance, request.machine_type,
    )
    report.connection = connection
    report.warnings += connection.warnings


def run_teardown(settings: Settings, host: Host) -> TeardownReport:
    """Remove the deployed proxy and everything it installed at fixed paths.

    The downloaded binary and apt packages are left in place.
    """
    if not host.is_root():
        raise ConfigurationError("nat-socks teardown must run as root")

    start = time.monotonic()
    operation_id = _new_operation_id()
    try:
        with operation_context(operation_id):
            result = ServiceSupervisor(host, settings).teardown()
    except DeploymentError as e:
        _audit(settings, AuditEntry(
            operation_id=operation_id,
            operation_type="teardown",
            status="failed",
            duration_ms=int((time.monotonic() - start) * 1000),
            errors=[f"{type(e).__name__}: {e}"],
        ))
        raise

    _audit(settings, AuditEntry(
        operation_id=operation_id,
        operation_type="teardown",
        status="ok",
        duration_ms=int((time.monotonic() - start) * 1000),
        context=result.to_dict(),
    ))
    return result


def get_status(settings: Settings, host: Host) -> dict:
    """Current deployment as seen on the host, plus the last audit entry."""
    status = ServiceSupervisor(host, settings).observe()
    ledger = AuditWriter(settings.audit_path)
    last = ledger.last()
    last_deploy = ledger.last("deploy")
    status["last_operation"] = last.model_dump(mode="json") if last else None
    status["last_deploy"] = last_deploy.model_dump(mode="json") if last_deploy else None
    return status
