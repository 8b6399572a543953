"""
Local host — the real machine the CLI runs on.
"""

from __future__ import annotations

import logging
import os
import platform
import shutil
import socket
import subprocess
from pathlib import Path

from natsocks.adapters.base import Host
from natsocks.adapters.net import sockets
from natsocks.adapters.shell.command import run_command
from natsocks.adapters.shell.filesystem import atomic_install, atomic_write, tail_file
from natsocks.core.models.command import CommandResult
from natsocks.core.models.network import IPFamily

logger = logging.getLogger(__name__)

_SOCKET_FAMILY = {IPFamily.IPV4: socket.AF_INET, IPFamily.IPV6: socket.AF_INET6}


class LocalHost(Host):
    """Host adapter backed by subprocess, the filesystem and /proc."""

    def run(
        self,
        cmd: list[str],
        *,
        timeout: int = 30,
        input: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        return run_command(cmd, timeout=timeout, input=input, env_overrides=env)

    def which(self, tool: str) -> str | None:
        return shutil.which(tool)

    def exists(self, path: Path) -> bool:
        return path.exists()

    def read_text(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return None

    def write_text(self, path: Path, content: str, mode: int = 0o644) -> None:
        atomic_write(path, content, mode)

    def remove(self, path: Path) -> bool:
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def install_file(self, src: Path, dest: Path, mode: int = 0o755) -> None:
        atomic_install(src, dest, mode)

    def tail(self, path: Path, lines: int = 30) -> str:
        return tail_file(path, lines)

    def spawn_detached(self, cmd: list[str], log_path: Path) -> int:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        with log_path.open("ab") as log:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=log,
                stderr=subprocess.STDOUT,
                start_new_session=True,
                close_fds=True,
            )
        logger.debug("Spawned %s as pid %d", cmd[0], proc.pid)
        return proc.pid

    def pid_alive(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        stat = self.read_text(Path(f"/proc/{pid}/stat"))
        if stat:
            # comm may contain spaces; state follows the closing paren
            state = stat.rpartition(")")[2].split()[:1]
            if state == ["Z"]:
                return False
        return True

    def listening_ports(self) -> set[int]:
        return sockets.listening_tcp_ports()

    def tcp_connect(self, host: str, port: int, family: IPFamily, timeout: float) -> bool:
        return sockets.tcp_connect(host, port, _SOCKET_FAMILY[family], timeout)

    def socks5_handshake(
        self,
        host: str,
        port: int,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 2.0,
    ) -> bool:
        return sockets.socks5_handshake(
            host, port, username=username, password=password, timeout=timeout,
        )

    def machine(self) -> str:
        return platform.machine()

    def is_root(self) -> bool:
        return os.geteuid() == 0

    def has_systemd(self) -> bool:
        return Path("/run/systemd/system").exists() and shutil.which("systemctl") is not None

    def has_ipv6_stack(self) -> bool:
        return Path("/proc/net/if_inet6").exists()
