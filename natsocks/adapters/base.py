"""
Host adapter base — the contract between the pipeline and the machine.

Global host state (installed packages, files at fixed paths, the named
service, bound ports) is the only datastore a deployment has. Every
component reaches it through this interface, never directly, so the
whole pipeline runs unchanged against ``MockHost`` in tests.

Commands never raise: failures come back in the CommandResult.
Filesystem writes raise ``OSError``; the calling component decides
whether that is fatal.
"""

from __future__ import annotations

import time
from abc import ABC, abstractmethod
from pathlib import Path

from natsocks.core.models.command import CommandResult
from natsocks.core.models.network import IPFamily


class Host(ABC):
    """Abstract view of the target machine."""

    # ── Commands ────────────────────────────────────────────────

    @abstractmethod
    def run(
        self,
        cmd: list[str],
        *,
        timeout: int = 30,
        input: str | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        """Run a command with a mandatory timeout."""

    @abstractmethod
    def which(self, tool: str) -> str | None:
        """Resolve ``tool`` on PATH."""

    # ── Files ───────────────────────────────────────────────────

    @abstractmethod
    def exists(self, path: Path) -> bool:
        """Whether ``path`` exists."""

    @abstractmethod
    def read_text(self, path: Path) -> str | None:
        """File content, or None if the file is missing/unreadable."""

    @abstractmethod
    def write_text(self, path: Path, content: str, mode: int = 0o644) -> None:
        """Atomically replace ``path`` with ``content``."""

    @abstractmethod
    def remove(self, path: Path) -> bool:
        """Delete ``path``. Returns False if it did not exist."""

    @abstractmethod
    def install_file(self, src: Path, dest: Path, mode: int = 0o755) -> None:
        """Atomically copy ``src`` over ``dest`` with ``mode``."""

    def tail(self, path: Path, lines: int = 30) -> str:
        content = self.read_text(path) or ""
        return "\n".join(content.splitlines()[-lines:])

    # ── Processes ───────────────────────────────────────────────

    @abstractmethod
    def spawn_detached(self, cmd: list[str], log_path: Path) -> int:
        """Start ``cmd`` in its own session, output appended to ``log_path``.

        Returns the child pid. Raises ``OSError`` if it cannot start.
        """

    @abstractmethod
    def pid_alive(self, pid: int) -> bool:
        """Whether ``pid`` is a live (non-zombie) process."""

    # ── Network ─────────────────────────────────────────────────

    @abstractmethod
    def listening_ports(self) -> set[int]:
        """TCP ports in LISTEN state, both address families."""

    @abstractmethod
    def tcp_connect(self, host: str, port: int, family: IPFamily, timeout: float) -> bool:
        """Whether a TCP connection over ``family`` succeeds."""

    @abstractmethod
    def socks5_handshake(
        self,
        host: str,
        port: int,
        *,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 2.0,
    ) -> bool:
        """Whether a SOCKS5 server at host:port completes method negotiation."""

    # ── Platform ────────────────────────────────────────────────

    @abstractmethod
    def machine(self) -> str:
        """Raw machine architecture (``uname -m``)."""

    @abstractmethod
    def is_root(self) -> bool:
        """Whether we run with uid 0."""

    @abstractmethod
    def has_systemd(self) -> bool:
        """Whether systemd is the running init and systemctl is usable."""

    @abstractmethod
    def has_ipv6_stack(self) -> bool:
        """Whether the kernel has IPv6 enabled."""

    # ── Time ────────────────────────────────────────────────────

    def sleep(self, seconds: float) -> None:
        time.sleep(seconds)

    def clock(self) -> float:
        return time.monotonic()

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"
