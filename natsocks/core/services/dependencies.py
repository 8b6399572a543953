"""
Dependency resolver — make sure the OS tools a run needs are on PATH.

Presence is checked by PATH lookup. When everything is there the package
manager is never touched. Otherwise only the packages providing the
missing tools are installed, and a failed install is tolerated as long
as the critical subset ends up present.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from natsocks.adapters.base import Host
from natsocks.core.errors import DependencyError
from natsocks.core.models.settings import Settings

logger = logging.getLogger(__name__)

# Tool on PATH → Debian package that provides it
TOOL_PACKAGES: dict[str, str] = {
    "curl": "curl",
    "wget": "wget",
    "tar": "tar",
    "ip": "iproute2",
    "ss": "iproute2",
    "ping": "iputils-ping",
    "update-ca-certificates": "ca-certificates",
    "crontab": "cron",
    "danted": "dante-server",
    "useradd": "passwd",
    "chpasswd": "passwd",
}

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


@dataclass
class DependencyReport:
    """Outcome of ``ensure`` when the run can continue."""

    status: Literal["ready", "degraded"] = "ready"
    missing: set[str] = field(default_factory=set)
    installed: set[str] = field(default_factory=set)
    package_manager_used: bool = False

    @property
    def degraded(self) -> bool:
        return self.status == "degraded"

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "missing": sorted(self.missing),
            "installed": sorted(self.installed),
            "package_manager_used": self.package_manager_used,
        }


class DependencyResolver:
    """Installs missing tools with apt-get, tolerating partial failure."""

    def __init__(self, host: Host, settings: Settings):
        self._host = host
        self._settings = settings

    def missing(self, tools: set[str]) -> set[str]:
        return {t for t in tools if not self._host.which(t)}

    def ensure(
        self,
        required: set[str],
        critical: set[str] | None = None,
    ) -> DependencyReport:
        """Ensure ``required`` tools exist.

        Args:
            required: Tools the run would like to have.
            critical: Subset the run cannot proceed without
                (default: all of ``required``).

        Returns:
            DependencyReport — ``ready`` or ``degraded`` (optional tools
            still missing).

        Raises:
            DependencyError: If any critical tool is still missing.
        """
        critical = set(required if critical is None else critical)
        missing = self.missing(required)
        if not missing:
            logger.info("All required tools present: %s", ", ".join(sorted(required)))
            return DependencyReport(status="ready")

        packages = sorted({TOOL_PACKAGES.get(t, t) for t in missing})
        logger.info("Missing tools %s → installing %s", sorted(missing), packages)

        diagnostics = ""
        if not self._host.which("apt-get"):
            diagnostics = "apt-get not found; cannot install packages"
            logger.warning(diagnostics)
        else:
            t = self._settings.apt_timeout
            update = self._host.run(["apt-get", "update", "-y"], timeout=t, env=_APT_ENV)
            if not update.ok:
                # Stale indexes often still install fine
                logger.warning("apt-get update failed (%s); continuing", update.error)

            install = self._host.run(
                ["apt-get", "install", "-y", "--no-install-recommends", *packages],
                timeout=t,
                env=_APT_ENV,
            )
            if not install.ok:
                diagnostics = install.output or install.error or ""
                logger.warning("apt-get install failed: %s", install.error)

        still_missing = self.missing(required)
        report = DependencyReport(
            missing=still_missing,
            installed=missing - still_missing,
            package_manager_used=bool(self._host.which("apt-get")),
        )

        fatal = still_missing & critical
        if fatal:
            raise DependencyError(
                f"Required tools still missing after install: {', '.join(sorted(fatal))}",
                missing=fatal,
                diagnostics=diagnostics,
            )

        if still_missing:
            report.status = "degraded"
            logger.warning(
                "Optional tools unavailable, related checks will be skipped: %s",
                ", ".join(sorted(still_missing)),
            )
        return report
