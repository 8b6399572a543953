"""
Service supervisor — clean-slate teardown, then start under systemd or
as a detached process with an @reboot relaunch.

States:

    Absent → Cleaning → Configured → Starting → RunningPrimary
                                              → RunningFallback
                                              → Failed

Every run starts from Cleaning: there is no incremental update path.
Teardown removes everything a previous run (of either backend, in either
supervision mode) could have left behind.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from natsocks.adapters.base import Host
from natsocks.core.errors import FatalDeploymentError, SupervisionError
from natsocks.core.models.service import ServiceConfig, ServiceInstance, SupervisionMode
from natsocks.core.models.settings import Settings
from natsocks.core.reliability.retry import poll_until
from natsocks.core.services.config_renderer import (
    exec_command,
    render_backend_config,
    to_systemd_unit,
)

logger = logging.getLogger(__name__)

# Units other installers register for the same job
LEGACY_UNITS = ("danted",)


class SupervisorState(StrEnum):
    ABSENT = "absent"
    CLEANING = "cleaning"
    CONFIGURED = "configured"
    STARTING = "starting"
    RUNNING_PRIMARY = "running_primary"
    RUNNING_FALLBACK = "running_fallback"
    FAILED = "failed"


@dataclass
class TeardownReport:
    """What teardown found and removed."""

    stopped_units: list[str] = field(default_factory=list)
    killed_pids: list[int] = field(default_factory=list)
    removed_files: list[str] = field(default_factory=list)
    cron_cleaned: bool = False

    def to_dict(self) -> dict:
        return {
            "stopped_units": self.stopped_units,
            "killed_pids": self.killed_pids,
            "removed_files": self.removed_files,
            "cron_cleaned": self.cron_cleaned,
        }


class ServiceSupervisor:
    """Owns the named service and every file at its fixed paths."""

    def __init__(self, host: Host, settings: Settings):
        self._host = host
        self._settings = settings
        self.state = SupervisorState.ABSENT
        self.warnings: list[str] = []

    # ── State ───────────────────────────────────────────────────

    def _transition(self, new: SupervisorState) -> None:
        if new is not self.state:
            logger.info("Supervisor: %s → %s", self.state, new)
            self.state = new

    @property
    def unit_name(self) -> str:
        return self._settings.service_name

    @property
    def process_names(self) -> list[str]:
        """Executable names a previous run may have left running."""
        s = self._settings
        return list(dict.fromkeys([s.binary_path.name, s.dante_binary_path.name]))

    # ── Teardown ────────────────────────────────────────────────

    def teardown(self) -> TeardownReport:
        """Remove any prior instance.

        Raises:
            FatalDeploymentError: If a proxy process survives the sweep.
        """
        self._transition(SupervisorState.CLEANING)
        s = self._settings
        host = self._host
        report = TeardownReport()

        if host.has_systemd():
            for unit in (self.unit_name, *LEGACY_UNITS):
                stop = host.run(["systemctl", "disable", "--now", unit], timeout=s.command_timeout)
                if stop.ok:
                    report.stopped_units.append(unit)

        pid = self._read_pid()
        if pid is not None and host.pid_alive(pid):
            if host.run(["kill", "-9", str(pid)], timeout=5).ok:
                report.killed_pids.append(pid)

        for name in self.process_names:
            for leftover in self._pids_named(name):
                host.run(["kill", "-9", str(leftover)], timeout=5)
                report.killed_pids.append(leftover)
            host.run(["pkill", "-9", "-x", name], timeout=5)

        for path in (s.unit_path, s.config_path("gost"), s.config_path("dante"), s.pid_path):
            if host.remove(path):
                report.removed_files.append(str(path))

        report.cron_cleaned = self._remove_relaunch_lines()

        if host.has_systemd():
            host.run(["systemctl", "daemon-reload"], timeout=s.command_timeout)
            host.run(["systemctl", "reset-failed", f"{self.unit_name}.service"], timeout=s.command_timeout)

        outcome = poll_until(
            lambda: not any(self._pids_named(n) for n in self.process_names),
            attempts=s.teardown_attempts,
            interval=s.teardown_interval,
            label="old proxy exit",
            sleep=host.sleep,
            clock=host.clock,
        )
        if not outcome.ok:
            survivors = {n: self._pids_named(n) for n in self.process_names}
            self._transition(SupervisorState.FAILED)
            raise FatalDeploymentError(
                "Previous proxy process survived teardown",
                diagnostics=", ".join(f"{n}: {p}" for n, p in survivors.items() if p),
            )

        self._transition(SupervisorState.ABSENT)
        logger.info(
            "Teardown: units %s, killed %s, removed %d file(s)",
            report.stopped_units or "none", report.killed_pids or "none", len(report.removed_files),
        )
        return report

    def _pids_named(self, name: str) -> list[int]:
        r = self._host.run(["pgrep", "-x", name], timeout=5)
        if not r.ok:
            return []
        return [int(p) for p in r.stdout.split() if p.isdigit()]

    def _read_pid(self) -> int | None:
        raw = (self._host.read_text(self._settings.pid_path) or "").strip()
        return int(raw) if raw.isdigit() else None

    # ── Deploy ──────────────────────────────────────────────────

    def deploy(self, config: ServiceConfig, binary_path: Path) -> ServiceInstance:
        """Write config and unit, then start under systemd or the fallback.

        Raises:
            FatalDeploymentError: Files cannot be written or the proxy
                account cannot be prepared.
            SupervisionError: Neither mechanism keeps the proxy running.
        """
        s = self._settings
        host = self._host
        config_path = s.config_path(config.backend)
        command = exec_command(config, binary_path, config_path)

        # Credentials live in the config for gost
        mode = 0o600 if config.credentials else 0o644
        self._write(config_path, render_backend_config(config), mode)

        systemd = host.has_systemd()
        if systemd:
            self._write(s.unit_path, to_systemd_unit(config, command), 0o644)
            host.run(["systemctl", "daemon-reload"], timeout=s.command_timeout)
        self._transition(SupervisorState.CONFIGURED)

        if config.backend == "dante" and config.credentials:
            self._ensure_system_user(config.credentials.username, config.credentials.password)

        sysctl = host.run(["sysctl", "-w", "net.ipv6.bindv6only=0"], timeout=5)
        if not sysctl.ok:
            self._warn(f"Cannot set net.ipv6.bindv6only=0 ({sysctl.error}); [::] may not accept IPv4")

        self._transition(SupervisorState.STARTING)
        diagnostics: list[str] = []

        if systemd:
            if self._start_primary():
                self._transition(SupervisorState.RUNNING_PRIMARY)
                return ServiceInstance(
                    binary_path=str(binary_path),
                    config_path=str(config_path),
                    supervision_mode=SupervisionMode.PRIMARY,
                    unit_name=self.unit_name,
                )
            diagnostics.append(self.diagnostics())
            self._warn(f"systemd did not keep {self.unit_name} active; using the detached fallback")
            host.run(["systemctl", "disable", "--now", self.unit_name], timeout=s.command_timeout)
        else:
            logger.info("No usable systemd; starting %s detached", self.unit_name)

        pid = self._start_fallback(command)
        if pid is not None:
            self._transition(SupervisorState.RUNNING_FALLBACK)
            return ServiceInstance(
                binary_path=str(binary_path),
                config_path=str(config_path),
                supervision_mode=SupervisionMode.FALLBACK,
                unit_name=self.unit_name,
                pid=pid,
            )

        self._transition(SupervisorState.FAILED)
        diagnostics.append(f"── {s.log_path} ──\n{host.tail(s.log_path)}")
        raise SupervisionError(
            f"{self.unit_name} failed to start under systemd and as a detached process",
            diagnostics="\n\n".join(d for d in diagnostics if d),
        )

    def _start_primary(self) -> bool:
        s = self._settings
        host = self._host
        start = host.run(["systemctl", "enable", "--now", self.unit_name], timeout=s.command_timeout)
        if not start.ok:
            logger.warning("systemctl enable --now %s failed: %s", self.unit_name, start.error)
            return False

        outcome = poll_until(
            lambda: host.run(["systemctl", "is-active", "--quiet", self.unit_name], timeout=5).ok,
            attempts=s.start_confirm_attempts,
            interval=s.start_confirm_interval,
            label=f"{self.unit_name} active",
            sleep=host.sleep,
            clock=host.clock,
        )
        return outcome.ok

    def _start_fallback(self, command: list[str]) -> int | None:
        s = self._settings
        host = self._host
        try:
            pid = host.spawn_detached(command, s.log_path)
        except OSError as e:
            logger.error("Cannot launch %s: %s", command[0], e)
            return None

        host.sleep(s.start_confirm_interval)
        if not host.pid_alive(pid):
            logger.error("Detached %s (pid %d) exited right after start", command[0], pid)
            return None

        try:
            host.write_text(s.pid_path, f"{pid}\n", 0o644)
        except OSError as e:
            self._warn(f"Cannot write pid file {s.pid_path}: {e}")
        self._add_relaunch_line(command)
        logger.info("%s running detached as pid %d", self.unit_name, pid)
        return pid

    # ── @reboot relaunch ────────────────────────────────────────

    def relaunch_line(self, command: list[str]) -> str:
        s = self._settings
        return (
            f"@reboot nohup {shlex.join(command)} >> {s.log_path} 2>&1 & "
            f"echo $! > {s.pid_path} # {self.unit_name}"
        )

    def _read_crontab(self) -> list[str] | None:
        """Root's crontab lines, or None when it cannot be read.

        Only "no crontab for <user>" counts as an empty table; after any
        other failure the crontab must not be rewritten.
        """
        if not self._host.which("crontab"):
            return None
        r = self._host.run(["crontab", "-l"], timeout=5)
        if r.ok:
            return r.stdout.splitlines()
        if r.returncode == 1 and "no crontab for" in f"{r.stderr} {r.error or ''}":
            return []
        logger.warning("Cannot read root's crontab: %s", r.error or r.stderr.strip())
        return None

    def _write_crontab(self, lines: list[str]) -> bool:
        content = "\n".join(lines) + "\n" if lines else ""
        r = self._host.run(["crontab", "-"], timeout=5, input=content)
        return r.ok

    def _add_relaunch_line(self, command: list[str]) -> None:
        lines = self._read_crontab()
        if lines is None:
            self._warn(
                "crontab unavailable or unreadable; the detached proxy will not restart after reboot"
            )
            return
        line = self.relaunch_line(command)
        if line in lines:
            return
        if not self._write_crontab([*lines, line]):
            self._warn("Cannot register the @reboot relaunch line")

    def _remove_relaunch_lines(self) -> bool:
        lines = self._read_crontab()
        if not lines:
            return False
        marker = f"# {self.unit_name}"
        kept = [ln for ln in lines if not (ln.startswith("@reboot") and ln.endswith(marker))]
        if len(kept) == len(lines):
            return False
        return self._write_crontab(kept)

    # ── Helpers ─────────────────────────────────────────────────

    def _ensure_system_user(self, username: str, password: str) -> None:
        """dante's username method authenticates against system accounts."""
        t = self._settings.command_timeout
        if not self._host.run(["id", "-u", username], timeout=5).ok:
            add = self._host.run(
                ["useradd", "-M", "-s", "/usr/sbin/nologin", username], timeout=t,
            )
            if not add.ok:
                raise FatalDeploymentError(
                    f"Cannot create proxy user {username}", diagnostics=add.output,
                )
        chpasswd = self._host.run(["chpasswd"], timeout=t, input=f"{username}:{password}\n")
        if not chpasswd.ok:
            raise FatalDeploymentError(
                f"Cannot set the password of proxy user {username}", diagnostics=chpasswd.output,
            )

    def _write(self, path: Path, content: str, mode: int) -> None:
        try:
            self._host.write_text(path, content, mode)
        except OSError as e:
            self._transition(SupervisorState.FAILED)
            raise FatalDeploymentError(f"Cannot write {path}: {e}") from e

    def _warn(self, message: str) -> None:
        logger.warning(message)
        self.warnings.append(message)

    def diagnostics(self) -> str:
        """Unit status, journal tail and log tail for the operator."""
        s = self._settings
        host = self._host
        parts: list[str] = []
        if host.has_systemd():
            status = host.run(
                ["systemctl", "status", self.unit_name, "--no-pager", "-l"], timeout=10,
            )
            parts.append(f"── systemctl status {self.unit_name} ──\n{status.output}")
            journal = host.run(
                ["journalctl", "-u", self.unit_name, "-n", "30", "--no-pager"], timeout=10,
            )
            if journal.output:
                parts.append(f"── journalctl -u {self.unit_name} ──\n{journal.output}")
        tail = host.tail(s.log_path)
        if tail:
            parts.append(f"── {s.log_path} ──\n{tail}")
        return "\n\n".join(parts)

    # ── Observation ─────────────────────────────────────────────

    def observe(self) -> dict:
        """Read-only snapshot of what is currently deployed."""
        s = self._settings
        host = self._host
        unit_state = None
        if host.has_systemd() and host.exists(s.unit_path):
            r = host.run(["systemctl", "is-active", self.unit_name], timeout=5)
            unit_state = r.stdout.strip() or ("active" if r.ok else "inactive")

        pid = self._read_pid()
        backend = next(
            (b for b in ("gost", "dante") if host.exists(s.config_path(b))), None,
        )
        return {
            "service_name": self.unit_name,
            "backend": backend,
            "config_path": str(s.config_path(backend)) if backend else None,
            "unit_installed": host.exists(s.unit_path),
            "unit_state": unit_state,
            "fallback_pid": pid if pid is not None and host.pid_alive(pid) else None,
            "processes": {n: self._pids_named(n) for n in self.process_names},
            "listening_ports": sorted(host.listening_ports()),
        }
