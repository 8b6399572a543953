"""
Mock host — in-memory test double for the whole host surface.

Emulates just enough of a Debian box for the pipeline to run end to end:
an in-memory filesystem, a PATH, a process table, systemd unit states,
a root crontab, listening ports and a fake monotonic clock. Commands it
does not emulate succeed with empty output unless a response is
scripted with ``set_response``.

Also provides ``MockHttpClient`` for version lookups and downloads.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path
from typing import Any, Union

from natsocks.adapters.base import Host
from natsocks.adapters.net.http import HttpClient, HttpError
from natsocks.core.models.command import CommandResult
from natsocks.core.models.network import IPFamily

Responder = Union[CommandResult, Callable[[list[str], str | None], CommandResult]]

DEFAULT_TOOLS = frozenset({
    "apt-get", "systemctl", "journalctl", "ip", "ping", "curl", "tar", "ss",
    "crontab", "pgrep", "pkill", "kill", "sysctl", "useradd", "chpasswd", "id",
    "update-ca-certificates",
})


class MockHost(Host):
    """Scriptable fake host.

    By default: root, x86_64, systemd present, IPv6 stack present,
    every DEFAULT_TOOLS binary on PATH, nothing running.
    """

    def __init__(
        self,
        *,
        tools: set[str] | None = None,
        machine: str = "x86_64",
        root: bool = True,
        systemd: bool = True,
        ipv6_stack: bool = True,
    ):
        self.tools: set[str] = set(DEFAULT_TOOLS if tools is None else tools)
        self.files: dict[Path, str] = {}
        self.modes: dict[Path, int] = {}
        self.readonly: set[Path] = set()

        self.arch = machine
        self.root = root
        self.systemd = systemd
        self.ipv6_stack = ipv6_stack

        # process table: pid → process name
        self.processes: dict[int, str] = {}
        self.unit_pids: dict[str, int] = {}
        self.units: dict[str, str] = {}
        self.unit_start_fails = False
        self.spawn_fails = False
        self.spawn_dies = False
        self.crontab: str | None = None

        # ports bound by each started process, with the clock time they appear
        self.ports_on_start: set[int] = set()
        self.bind_delay = 0.0
        self.static_ports: set[int] = set()
        self._bound: dict[int, tuple[set[int], float]] = {}

        self.reachable: dict[IPFamily, bool] = {IPFamily.IPV4: True, IPFamily.IPV6: False}
        self.handshake_ok = True

        self.now = 0.0
        self.sleeps: list[float] = []

        self._next_pid = 1000
        self._responses: list[tuple[list[str], Responder]] = []
        self._call_log: list[list[str]] = []
        self._inputs: list[str | None] = []

    # ── Scripting ───────────────────────────────────────────────

    def set_response(self, prefix: list[str], response: Responder) -> None:
        """Script the result for commands starting with ``prefix``.

        The first element matches either the full argv[0] or its basename,
        so ``["gost", "-V"]`` also matches ``/usr/local/bin/gost -V``.
        Later registrations win.
        """
        self._responses.append((list(prefix), response))

    def set_failure(self, prefix: list[str], error: str = "Mock failure", returncode: int = 1) -> None:
        self.set_response(
            prefix, CommandResult.failure(prefix, error=error, returncode=returncode, stderr=error),
        )

    @property
    def call_log(self) -> list[list[str]]:
        """Every command run, in order."""
        return self._call_log

    def calls(self, *prefix: str) -> list[list[str]]:
        """Commands in the call log that start with ``prefix``."""
        return [c for c in self._call_log if _matches(list(prefix), c)]

    def inputs(self, *prefix: str) -> list[str | None]:
        """Stdin passed to each command that starts with ``prefix``."""
        return [
            stdin for c, stdin in zip(self._call_log, self._inputs)
            if _matches(list(prefix), c)
        ]

    def start_process(self, name: str) -> int:
        """Put a process in the table (e.g. a leftover from a previous run)."""
        pid = self._next_pid
        self._next_pid += 1
        self.processes[pid] = name
        if self.ports_on_start:
            self._bound[pid] = (set(self.ports_on_start), self.now + self.bind_delay)
        return pid

    def live(self, name: str) -> list[int]:
        return sorted(pid for pid, n in self.processes.items() if n == name)

    # ── Commands ────────────────────────────────────────────────

    def run(
        self,
        cmd: list[str],
        *,
        timeout: int = 30,
        input: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        self._call_log.append(list(cmd))
        self._inputs.append(input)

        for prefix, response in reversed(self._responses):
            if _matches(prefix, cmd):
                if callable(response):
                    return response(list(cmd), input)
                return response.model_copy(update={"cmd": list(cmd)})

        if not self._resolvable(cmd[0]):
            return CommandResult.failure(
                cmd, error=f"Command not found: {cmd[0]}", metadata={"not_found": True},
            )

        builtin = _BUILTINS.get(Path(cmd[0]).name)
        if builtin is not None:
            return builtin(self, list(cmd), input)
        return CommandResult.success(cmd)

    def which(self, tool: str) -> str | None:
        return f"/usr/bin/{tool}" if tool in self.tools else None

    def _resolvable(self, exe: str) -> bool:
        if exe in self.tools:
            return True
        path = Path(exe)
        if path.is_absolute():
            return path in self.files or os.access(exe, os.X_OK)
        return False

    # ── Files ───────────────────────────────────────────────────

    def exists(self, path: Path) -> bool:
        return path in self.files

    def read_text(self, path: Path) -> str | None:
        return self.files.get(path)

    def write_text(self, path: Path, content: str, mode: int = 0o644) -> None:
        if path in self.readonly or path.parent in self.readonly:
            raise OSError(f"Read-only file system: '{path}'")
        self.files[path] = content
        self.modes[path] = mode

    def remove(self, path: Path) -> bool:
        self.modes.pop(path, None)
        return self.files.pop(path, None) is not None

    def install_file(self, src: Path, dest: Path, mode: int = 0o755) -> None:
        self.write_text(dest, f"<binary from {src.name}>", mode)

    # ── Processes ───────────────────────────────────────────────

    def spawn_detached(self, cmd: list[str], log_path: Path) -> int:
        if self.spawn_fails:
            raise OSError(f"Cannot execute {cmd[0]}")
        pid = self.start_process(Path(cmd[0]).name)
        self.files.setdefault(log_path, "")
        if self.spawn_dies:
            self.files[log_path] += f"{Path(cmd[0]).name}: fatal error\n"
            self._kill(pid)
        return pid

    def pid_alive(self, pid: int) -> bool:
        return pid in self.processes

    def _kill(self, pid: int) -> None:
        self.processes.pop(pid, None)
        self._bound.pop(pid, None)
        for unit, upid in list(self.unit_pids.items()):
            if upid == pid:
                del self.unit_pids[unit]
                self.units[unit] = "failed"

    # ── Network ─────────────────────────────────────────────────

    def listening_ports(self) -> set[int]:
        ports = set(self.static_ports)
        for pid, (bound, ready_at) in self._bound.items():
            if pid in self.processes and self.now >= ready_at:
                ports |= bound
        return ports

    def tcp_connect(self, host: str, port: int, family: IPFamily, timeout: float) -> bool:
        return self.reachable.get(family, False)

    def socks5_handshake(
        self,
        host: str,
        port: int,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 2.0,
    ) -> bool:
        return self.handshake_ok and port in self.listening_ports()

    # ── Platform / time ─────────────────────────────────────────

    def machine(self) -> str:
        return self.arch

    def is_root(self) -> bool:
        return self.root

    def has_systemd(self) -> bool:
        return self.systemd

    def has_ipv6_stack(self) -> bool:
        return self.ipv6_stack

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds

    def clock(self) -> float:
        return self.now


def _matches(prefix: list[str], cmd: list[str]) -> bool:
    if not prefix or len(cmd) < len(prefix):
        return False
    head, *rest = prefix
    if cmd[0] != head and Path(cmd[0]).name != head:
        return False
    return cmd[1:len(prefix)] == rest


# ── Emulated commands ──────────────────────────────────────────


def _exec_name(host: MockHost, unit: str) -> str:
    """Process name a unit runs, read from its ExecStart line."""
    for path, content in host.files.items():
        if path.name == f"{unit}.service":
            for line in content.splitlines():
                if line.startswith("ExecStart="):
                    return Path(line.split("=", 1)[1].split()[0]).name
    return unit


def _systemctl(host: MockHost, cmd: list[str], _input: str | None) -> CommandResult:
    args = [a for a in cmd[1:] if not a.startswith("--")]
    if not args:
        return CommandResult.success(cmd)
    verb, units = args[0], args[1:]
    unit = units[0].removesuffix(".service") if units else ""

    if verb in ("start", "restart") or (verb == "enable" and "--now" in cmd):
        if host.unit_start_fails:
            host.units[unit] = "failed"
            return CommandResult.failure(cmd, error="Job failed", returncode=1,
                                         stderr=f"Job for {unit}.service failed.")
        if host.units.get(unit) != "active":
            host.unit_pids[unit] = host.start_process(_exec_name(host, unit))
            host.units[unit] = "active"
        return CommandResult.success(cmd)

    if verb == "stop" or (verb == "disable" and "--now" in cmd):
        pid = host.unit_pids.pop(unit, None)
        if pid is not None:
            host.processes.pop(pid, None)
            host._bound.pop(pid, None)
        if unit in host.units:
            host.units[unit] = "inactive"
        return CommandResult.success(cmd)

    if verb == "is-active":
        state = host.units.get(unit, "inactive")
        if state == "active":
            return CommandResult.success(cmd, stdout="active\n")
        return CommandResult.failure(cmd, error="inactive", returncode=3, stdout=f"{state}\n")

    if verb == "status":
        state = host.units.get(unit, "inactive")
        return CommandResult.failure(cmd, error=state, returncode=3,
                                     stdout=f"● {unit}.service\n   Active: {state}\n")

    return CommandResult.success(cmd)


def _pgrep(host: MockHost, cmd: list[str], _input: str | None) -> CommandResult:
    pids = host.live(cmd[-1])
    if not pids:
        return CommandResult.failure(cmd, error="no match", returncode=1)
    return CommandResult.success(cmd, stdout="".join(f"{p}\n" for p in pids))


def _pkill(host: MockHost, cmd: list[str], _input: str | None) -> CommandResult:
    pids = host.live(cmd[-1])
    for pid in pids:
        host._kill(pid)
    if not pids:
        return CommandResult.failure(cmd, error="no match", returncode=1)
    return CommandResult.success(cmd)


def _kill_cmd(host: MockHost, cmd: list[str], _input: str | None) -> CommandResult:
    try:
        pid = int(cmd[-1])
    except ValueError:
        return CommandResult.failure(cmd, error="bad pid", returncode=1)
    if pid not in host.processes:
        return CommandResult.failure(cmd, error="No such process", returncode=1)
    host._kill(pid)
    return CommandResult.success(cmd)


def _crontab(host: MockHost, cmd: list[str], stdin: str | None) -> CommandResult:
    if "-l" in cmd:
        if host.crontab is None:
            return CommandResult.failure(cmd, error="no crontab for root", returncode=1,
                                         stderr="no crontab for root")
        return CommandResult.success(cmd, stdout=host.crontab)
    if cmd[-1] == "-":
        host.crontab = stdin or ""
        return CommandResult.success(cmd)
    return CommandResult.success(cmd)


_BUILTINS: dict[str, Callable[[MockHost, list[str], str | None], CommandResult]] = {
    "systemctl": _systemctl,
    "pgrep": _pgrep,
    "pkill": _pkill,
    "kill": _kill_cmd,
    "crontab": _crontab,
}


class MockHttpClient(HttpClient):
    """Scriptable HTTP double.

    ``redirects`` / ``json`` map URL → value or exception; ``downloads``
    maps URL → bytes, an exception, or a list consumed one per attempt.
    """

    def __init__(self) -> None:
        super().__init__()
        self.redirects: dict[str, Any] = {}
        self.json: dict[str, Any] = {}
        self.downloads: dict[str, Any] = {}
        self.requests: list[str] = []

    def resolve_redirect(self, url: str, *, timeout: float) -> str:
        self.requests.append(url)
        return self._answer(self.redirects, url)

    def get_json(self, url: str, *, timeout: float) -> Any:
        self.requests.append(url)
        return self._answer(self.json, url)

    def download(self, url: str, dest: Path, *, timeout: float) -> int:
        self.requests.append(url)
        value = self.downloads.get(url)
        if isinstance(value, list):
            value = value.pop(0) if value else None
        if value is None:
            raise HttpError(f"Cannot reach {url}", url=url)
        if isinstance(value, BaseException):
            raise value
        dest.write_bytes(value)
        return len(value)

    @staticmethod
    def _answer(table: dict[str, Any], url: str) -> Any:
        if url not in table:
            raise HttpError(f"Cannot reach {url}", url=url)
        value = table[url]
        if isinstance(value, BaseException):
            raise value
        return value
