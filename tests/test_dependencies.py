"""
Tests for the dependency resolver — short-circuit, targeted install, degradation.
"""

import pytest

from natsocks.adapters.mock import MockHost
from natsocks.core.errors import DependencyError, FatalDeploymentError
from natsocks.core.models import CommandResult, Settings
from natsocks.core.services.dependencies import DependencyResolver


def _installs(host: MockHost, *tools: str):
    """apt-get install that puts ``tools`` on PATH."""
    def respond(cmd, _input):
        host.tools.update(tools)
        return CommandResult.success(cmd)
    return respond


class TestDependencyResolver:
    def test_all_present_never_calls_apt(self, host: MockHost):
        report = DependencyResolver(host, Settings()).ensure({"curl", "ip"})
        assert report.status == "ready"
        assert not report.degraded
        assert host.calls("apt-get") == []

    def test_installs_only_missing_packages(self):
        host = MockHost(tools={"apt-get", "ip"})
        host.set_response(["apt-get", "install"], _installs(host, "curl", "ss"))
        report = DependencyResolver(host, Settings()).ensure({"curl", "ip", "ss"})

        install = host.calls("apt-get", "install")
        assert len(install) == 1
        assert install[0][-2:] == ["curl", "iproute2"]
        assert report.status == "ready"
        assert report.installed == {"curl", "ss"}
        assert report.package_manager_used

    def test_update_failure_is_tolerated(self):
        host = MockHost(tools={"apt-get"})
        host.set_failure(["apt-get", "update"], error="Temporary failure resolving")
        host.set_response(["apt-get", "install"], _installs(host, "curl"))
        report = DependencyResolver(host, Settings()).ensure({"curl"})
        assert report.status == "ready"

    def test_failed_install_degrades_when_critical_present(self):
        host = MockHost(tools={"apt-get", "curl"})
        host.set_failure(["apt-get", "install"], error="E: Unable to locate package")
        report = DependencyResolver(host, Settings()).ensure(
            {"curl", "ss", "ping"}, critical={"curl"},
        )
        assert report.status == "degraded"
        assert report.missing == {"ss", "ping"}

    def test_critical_missing_is_fatal(self):
        host = MockHost(tools={"apt-get"})
        host.set_failure(["apt-get", "install"], error="dpkg lock held")
        with pytest.raises(DependencyError) as exc_info:
            DependencyResolver(host, Settings()).ensure({"curl", "ss"}, critical={"curl"})
        assert exc_info.value.missing == {"curl"}
        assert isinstance(exc_info.value, FatalDeploymentError)

    def test_no_package_manager(self):
        host = MockHost(tools={"curl"})
        report = DependencyResolver(host, Settings()).ensure({"curl", "ss"}, critical={"curl"})
        assert report.degraded
        assert not report.package_manager_used

    def test_dante_package(self):
        host = MockHost(tools={"apt-get"})

        def respond(cmd, _input):
            host.tools.add("danted")
            return CommandResult.success(cmd)

        host.set_response(["apt-get", "install"], respond)
        DependencyResolver(host, Settings()).ensure({"danted"})
        install = host.calls("apt-get", "install")[0]
        assert "dante-server" in install
        assert "-y" in install
