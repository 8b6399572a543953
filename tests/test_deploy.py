"""
Tests for the deploy use case — the whole pipeline against the mock host.
"""

import json
from pathlib import Path

import pytest

from natsocks.adapters.mock import DEFAULT_TOOLS, MockHost, MockHttpClient
from natsocks.core.errors import (
    ArtifactError,
    ConfigurationError,
    DependencyError,
    ReadinessError,
)
from natsocks.core.models import (
    CommandResult,
    CredentialedPolicy,
    Credentials,
    DeploymentRequest,
    Settings,
    SupervisionMode,
    WhitelistPolicy,
)
from natsocks.core.persistence.audit import AuditWriter
from natsocks.core.use_cases.deploy import (
    get_status,
    required_tools,
    run_deployment,
    run_teardown,
)


PROC_ROUTE = (
    "Iface\tDestination\tGateway \tFlags\tRefCnt\tUse\tMetric\tMask\t\tMTU\tWindow\tIRTT\n"
    "ens3\t00000000\t0100000A\t0003\t0\t0\t100\t00000000\t0\t0\t0\n"
)


def _audit(settings: Settings):
    return AuditWriter(settings.audit_path).read_all()


def _marker_lines(host: MockHost) -> list[str]:
    return [ln for ln in (host.crontab or "").splitlines() if ln.endswith("# nat-socks")]


# ── Tool sets ──────────────────────────────────────────────────


class TestRequiredTools:
    def test_gost(self):
        required, critical = required_tools(DeploymentRequest())
        assert "danted" not in required
        assert critical == {"curl", "update-ca-certificates"}

    def test_dante(self):
        required, critical = required_tools(DeploymentRequest(backend="dante"))
        assert critical == {"danted"}
        assert "useradd" not in required

    def test_dante_credentialed(self):
        policy = CredentialedPolicy(credentials=Credentials(username="proxy", password="pw"))
        required, critical = required_tools(DeploymentRequest(backend="dante", policy=policy))
        assert {"useradd", "chpasswd"} <= critical <= required


# ── Happy path ─────────────────────────────────────────────────


class TestDeploy:
    def test_full_run(self, online_host: MockHost, http: MockHttpClient, settings: Settings):
        report = run_deployment(DeploymentRequest(), settings, online_host, http, env={})

        assert report.artifact.spec.version_tag == "v3.0.0"
        assert report.instance.supervision_mode is SupervisionMode.PRIMARY
        assert report.readiness.listening
        assert report.readiness.functional_probe_ok
        assert report.connection.endpoints == ["socks5://203.0.113.10:1080"]
        assert report.status == "degraded"
        assert any("IPv6" in w for w in report.warnings)
        assert len(online_host.live("gost")) == 1
        assert online_host.calls("apt-get") == []
        json.dumps(report.to_dict())

        entries = _audit(settings)
        assert len(entries) == 1
        assert entries[0].operation_type == "deploy"
        assert entries[0].status == "degraded"
        assert entries[0].context["version"] == "v3.0.0"

    def test_external_interface_in_dante_conf(self, online_host: MockHost, settings: Settings):
        online_host.tools.add("danted")
        run_deployment(DeploymentRequest(backend="dante"), settings, online_host, env={})
        assert "external: ens3" in online_host.files[settings.config_path("dante")]

    def test_redeploy_is_idempotent(self, online_host: MockHost, http: MockHttpClient,
                                    settings: Settings):
        request = DeploymentRequest(http_listener="derived")
        first = run_deployment(request, settings, online_host, http, env={})
        config_after_first = online_host.files[settings.config_path("gost")]
        second = run_deployment(request, settings, online_host, http, env={})

        assert len(online_host.live("gost")) == 1
        assert online_host.files[settings.config_path("gost")] == config_after_first
        assert first.connection.endpoints == second.connection.endpoints
        assert second.connection.endpoints == [
            "socks5://203.0.113.10:1080", "http://203.0.113.10:1081",
        ]
        assert len(_audit(settings)) == 2

    def test_fallback_supervision(self, online_host: MockHost, http: MockHttpClient,
                                  settings: Settings):
        online_host.systemd = False
        for _ in range(2):
            report = run_deployment(DeploymentRequest(), settings, online_host, http, env={})
        assert report.instance.supervision_mode is SupervisionMode.FALLBACK
        assert len(online_host.live("gost")) == 1
        assert len(_marker_lines(online_host)) == 1
        assert f"tail -n 50 {settings.log_path}" in report.connection.commands

    def test_dante_skips_download(self, online_host: MockHost, http: MockHttpClient,
                                  settings: Settings):
        online_host.tools.add("danted")
        report = run_deployment(DeploymentRequest(backend="dante"), settings, online_host, http,
                                env={})
        assert report.artifact is None
        assert http.requests == []
        assert len(online_host.live("danted")) == 1

    def test_switching_backend_removes_the_other(self, online_host: MockHost,
                                                 http: MockHttpClient, settings: Settings):
        online_host.tools.add("danted")
        run_deployment(DeploymentRequest(), settings, online_host, http, env={})
        run_deployment(DeploymentRequest(backend="dante"), settings, online_host, http, env={})

        assert online_host.live("gost") == []
        assert len(online_host.live("danted")) == 1
        assert not online_host.exists(settings.config_path("gost"))

    def test_credentialed_endpoint(self, online_host: MockHost, http: MockHttpClient,
                                   settings: Settings):
        policy = CredentialedPolicy(credentials=Credentials(username="proxy", password="pw"))
        report = run_deployment(DeploymentRequest(policy=policy), settings, online_host, http,
                                env={})
        assert report.connection.endpoints == ["socks5://proxy:pw@203.0.113.10:1080"]

    def test_whitelist_keeps_ssh_session(self, online_host: MockHost, http: MockHttpClient,
                                         settings: Settings):
        request = DeploymentRequest(policy=WhitelistPolicy(rules=["10.0.0.0/8"]))
        env = {"SSH_CONNECTION": "198.51.100.20 50022 10.0.0.5 22"}
        report = run_deployment(request, settings, online_host, http, env=env)
        assert report.config.access_rules[0].cidr == "198.51.100.20/32"
        assert any("198.51.100.20" in w for w in report.warnings)


class TestFreshHost:
    """A minimal image: iproute2 only arrives with the dependency install."""

    @pytest.fixture
    def fresh_host(self) -> MockHost:
        h = MockHost(tools=DEFAULT_TOOLS - {"ip"})
        h.files[Path("/proc/net/route")] = PROC_ROUTE
        h.files[Path("/proc/net/ipv6_route")] = ""

        def apt_install(cmd, _input):
            h.tools.add("ip")
            return CommandResult.success(cmd)

        h.set_response(["apt-get", "install"], apt_install)
        h.set_response(["gost", "-V"], CommandResult.success([], stdout="gost v3.0.0\n"))
        h.set_response(["curl", "-4", "-fsS", "--max-time"],
                       CommandResult.success([], stdout="203.0.113.10\n"))
        h.ports_on_start = {1080, 1081}
        return h

    def test_egress_seen_before_iproute2_installed(self, fresh_host: MockHost,
                                                    http: MockHttpClient, settings: Settings):
        report = run_deployment(DeploymentRequest(), settings, fresh_host, http, env={})

        assert "ip" in report.dependencies.installed
        assert report.profile.ipv4_route
        assert report.profile.ipv4_egress
        assert report.readiness.functional_probe_ok
        assert any("socks5h://127.0.0.1:1080" in c for c in fresh_host.calls("curl"))
        assert report.connection.endpoints == ["socks5://203.0.113.10:1080"]

    def test_dante_external_interface_from_kernel_table(self, fresh_host: MockHost,
                                                        settings: Settings):
        fresh_host.tools.add("danted")
        report = run_deployment(DeploymentRequest(backend="dante"), settings, fresh_host, env={})
        assert report.config.external_interface == "ens3"
        assert "external: ens3" in fresh_host.files[settings.config_path("dante")]


# ── Failures ───────────────────────────────────────────────────


class TestDeployFailures:
    def test_requires_root(self, http: MockHttpClient, settings: Settings):
        host = MockHost(root=False)
        with pytest.raises(ConfigurationError, match="root"):
            run_deployment(DeploymentRequest(), settings, host, http, env={})
        assert host.call_log == []
        assert _audit(settings)[0].status == "failed"

    def test_invalid_port_touches_nothing(self, online_host: MockHost, http: MockHttpClient,
                                          settings: Settings):
        with pytest.raises(ConfigurationError, match="Invalid port"):
            run_deployment(DeploymentRequest(port=70000), settings, online_host, http, env={})
        assert online_host.files == {}
        assert online_host.calls("systemctl") == []
        assert online_host.calls("apt-get") == []
        assert http.requests == []

    def test_unsupported_arch(self, http: MockHttpClient, settings: Settings):
        host = MockHost(machine="armv7l")
        with pytest.raises(ConfigurationError, match="Unsupported architecture"):
            run_deployment(DeploymentRequest(), settings, host, http, env={})
        assert host.call_log == []

    def test_missing_critical_tool(self, online_host: MockHost, settings: Settings):
        with pytest.raises(DependencyError) as exc_info:
            run_deployment(DeploymentRequest(backend="dante"), settings, online_host, env={})
        assert exc_info.value.missing == {"danted"}
        assert online_host.calls("systemctl") == []

    def test_download_failure_leaves_host_untouched(self, online_host: MockHost,
                                                    settings: Settings):
        previous = online_host.start_process("gost")
        with pytest.raises(ArtifactError):
            run_deployment(DeploymentRequest(), settings, online_host, MockHttpClient(), env={})
        assert online_host.live("gost") == [previous]
        assert online_host.calls("systemctl") == []

    def test_never_listening(self, online_host: MockHost, http: MockHttpClient,
                             settings: Settings):
        online_host.ports_on_start = set()
        with pytest.raises(ReadinessError) as exc_info:
            run_deployment(DeploymentRequest(), settings, online_host, http, env={})
        assert "systemctl status nat-socks" in exc_info.value.diagnostics
        entry = _audit(settings)[-1]
        assert entry.status == "failed"
        assert entry.supervision_mode == "primary"
        assert entry.errors[0].startswith("ReadinessError")


# ── Teardown + status ──────────────────────────────────────────


class TestTeardownAndStatus:
    def test_teardown_after_deploy(self, online_host: MockHost, http: MockHttpClient,
                                   settings: Settings):
        run_deployment(DeploymentRequest(), settings, online_host, http, env={})
        result = run_teardown(settings, online_host)

        assert "nat-socks" in result.stopped_units
        assert online_host.live("gost") == []
        assert not online_host.exists(settings.unit_path)
        assert online_host.exists(settings.binary_path)
        assert _audit(settings)[-1].operation_type == "teardown"

        status = get_status(settings, online_host)
        assert status["last_operation"]["operation_type"] == "teardown"
        assert status["last_deploy"]["backend"] == "gost"

    def test_teardown_requires_root(self, settings: Settings):
        with pytest.raises(ConfigurationError):
            run_teardown(settings, MockHost(root=False))

    def test_status(self, online_host: MockHost, http: MockHttpClient, settings: Settings):
        assert get_status(settings, online_host)["last_operation"] is None

        run_deployment(DeploymentRequest(), settings, online_host, http, env={})
        status = get_status(settings, online_host)
        assert status["backend"] == "gost"
        assert status["unit_state"] == "active"
        assert status["listening_ports"] == [1080, 1081]
        assert status["last_operation"]["operation_type"] == "deploy"
