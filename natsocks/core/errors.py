"""
Error taxonomy for a deployment run.

    ConfigurationError   — bad input, raised before any host mutation
    FatalDeploymentError — a stage exhausted its retries and fallbacks

Environment degradation (missing optional tool, no IPv6 egress) is not an
exception: it is recorded as a warning and the run continues.
"""

from __future__ import annotations


class DeploymentError(Exception):
    """Base class for everything that aborts a deployment run.

    ``diagnostics`` carries captured host output (unit status, log tail)
    for the operator.  It is never part of ``str(exc)``.
    """

    def __init__(self, message: str, *, diagnostics: str = ""):
        super().__init__(message)
        self.diagnostics = diagnostics


class ConfigurationError(DeploymentError):
    """Invalid port, overflowed derived port, invalid CIDR, bad settings file."""


class FatalDeploymentError(DeploymentError):
    """A stage failed after exhausting its own retries and fallbacks."""


class DependencyError(FatalDeploymentError):
    """Critical tools are still missing after the install attempt."""

    def __init__(self, message: str, *, missing: set[str], diagnostics: str = ""):
        super().__init__(message, diagnostics=diagnostics)
        self.missing = set(missing)


class ArtifactError(FatalDeploymentError):
    """The proxy binary could not be downloaded, unpacked or executed.

    ``cause`` is one of ``unreachable``, ``not_found``, ``invalid``,
    ``install``.
    """

    def __init__(self, message: str, *, cause: str, diagnostics: str = ""):
        super().__init__(message, diagnostics=diagnostics)
        self.cause = cause


class SupervisionError(FatalDeploymentError):
    """Neither the service manager nor the detached fallback kept the proxy up."""


class ReadinessError(FatalDeploymentError):
    """The proxy never bound its port, or no functional probe succeeded."""
