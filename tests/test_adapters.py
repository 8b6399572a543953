"""
Tests for host adapters — command runner, filesystem, sockets, mock host.
"""

import os
import socket
import threading
from pathlib import Path

import pytest

from natsocks.adapters.local import LocalHost
from natsocks.adapters.mock import MockHost
from natsocks.adapters.net.sockets import parse_proc_net_tcp, socks5_handshake
from natsocks.adapters.shell.command import run_command
from natsocks.adapters.shell.filesystem import atomic_install, atomic_write, tail_file
from natsocks.core.models import CommandResult

# ── Command runner ───────────────────────────────────────────────────


class TestRunCommand:
    def test_success(self):
        r = run_command(["sh", "-c", "echo hello"], timeout=10)
        assert r.ok
        assert r.stdout.strip() == "hello"
        assert r.returncode == 0

    def test_nonzero_exit(self):
        r = run_command(["sh", "-c", "echo oops >&2; exit 3"], timeout=10)
        assert r.failed
        assert r.returncode == 3
        assert r.stderr.strip() == "oops"
        assert "exit 3" in r.error

    def test_missing_binary(self):
        r = run_command(["definitely-not-a-real-binary-xyz"], timeout=10)
        assert r.failed
        assert r.returncode is None
        assert r.metadata["not_found"]

    def test_timeout(self):
        r = run_command(["sleep", "5"], timeout=1)
        assert r.failed
        assert "timed out" in r.error

    def test_stdin_and_env(self):
        r = run_command(["sh", "-c", "cat; echo $NAT_SOCKS_TEST"], timeout=10,
                        input="from-stdin\n", env_overrides={"NAT_SOCKS_TEST": "from-env"})
        assert r.stdout.splitlines() == ["from-stdin", "from-env"]


# ── Filesystem ───────────────────────────────────────────────────────


class TestFilesystem:
    def test_atomic_write_creates_dirs_and_mode(self, tmp_path: Path):
        path = tmp_path / "etc" / "nat-socks" / "gost.yaml"
        atomic_write(path, "services: []\n", 0o600)
        assert path.read_text() == "services: []\n"
        assert path.stat().st_mode & 0o777 == 0o600
        assert list(path.parent.iterdir()) == [path]

    def test_atomic_write_replaces(self, tmp_path: Path):
        path = tmp_path / "unit.service"
        atomic_write(path, "old")
        atomic_write(path, "new")
        assert path.read_text() == "new"

    def test_atomic_install(self, tmp_path: Path):
        src = tmp_path / "gost"
        src.write_bytes(b"\x7fELF")
        dest = tmp_path / "bin" / "gost"
        atomic_install(src, dest)
        assert dest.read_bytes() == b"\x7fELF"
        assert os.access(dest, os.X_OK)

    def test_tail_file(self, tmp_path: Path):
        path = tmp_path / "proxy.log"
        path.write_text("".join(f"line {i}\n" for i in range(100)))
        assert tail_file(path, 3) == "line 97\nline 98\nline 99\n"
        assert tail_file(tmp_path / "missing.log") == ""


# ── Sockets ──────────────────────────────────────────────────────────

PROC_NET_TCP = """\
  sl  local_address rem_address   st tx_queue rx_queue tr tm->when retrnsmt   uid  timeout inode
   0: 00000000:0438 00000000:0000 0A 00000000:00000000 00:00000000 00000000     0        0 1
   1: 0100007F:0016 00000000:0000 0A 00000000:00000000 00:00000000 00000000     0        0 2
   2: 0A00000F:0016 0A000001:C350 01 00000000:00000000 00:00000000 00000000     0        0 3
"""

PROC_NET_TCP6 = """\
  sl  local_address                         remote_address                        st tx_queue
   0: 00000000000000000000000000000000:0439 00000000000000000000000000000000:0000 0A 00000000
"""


class TestSockets:
    def test_parse_listen_only(self):
        assert parse_proc_net_tcp(PROC_NET_TCP) == {1080, 22}

    def test_parse_ipv6(self):
        assert parse_proc_net_tcp(PROC_NET_TCP6) == {1081}

    def test_parse_empty(self):
        assert parse_proc_net_tcp("") == set()

    def _serve_once(self, reply: bytes) -> int:
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen(1)

        def handle():
            conn, _ = server.accept()
            with conn:
                conn.recv(3)
                conn.sendall(reply)
            server.close()

        threading.Thread(target=handle, daemon=True).start()
        return server.getsockname()[1]

    def test_handshake_accepted(self):
        port = self._serve_once(b"\x05\x00")
        assert socks5_handshake("127.0.0.1", port, timeout=2.0)

    def test_handshake_rejected(self):
        port = self._serve_once(b"\x05\xff")
        assert not socks5_handshake("127.0.0.1", port, timeout=2.0)

    def test_handshake_oversized_password(self):
        port = self._serve_once(b"\x05\x02")
        assert not socks5_handshake("127.0.0.1", port, username="proxy",
                                    password="x" * 300, timeout=2.0)

    def test_handshake_nothing_listening(self):
        probe = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
        probe.close()
        assert not socks5_handshake("127.0.0.1", port, timeout=1.0)


# ── Local host ───────────────────────────────────────────────────────


class TestLocalHost:
    def test_files(self, tmp_path: Path):
        host = LocalHost()
        path = tmp_path / "a.conf"
        assert host.read_text(path) is None
        assert not host.remove(path)
        host.write_text(path, "x\n")
        assert host.exists(path)
        assert host.read_text(path) == "x\n"
        assert host.remove(path)

    def test_own_pid_alive(self):
        assert LocalHost().pid_alive(os.getpid())

    def test_run(self):
        assert LocalHost().run(["sh", "-c", "true"], timeout=5).ok


# ── Mock host ────────────────────────────────────────────────────────


class TestMockHost:
    def test_unknown_command_succeeds(self):
        host = MockHost()
        assert host.run(["ip", "addr"]).ok
        assert host.call_log == [["ip", "addr"]]

    def test_missing_tool(self):
        host = MockHost(tools=set())
        r = host.run(["curl", "https://example.com"])
        assert r.failed
        assert r.metadata["not_found"]

    def test_response_matches_basename(self):
        host = MockHost()
        host.set_response(["gost", "-V"], CommandResult.success([], stdout="gost v3\n"))
        r = host.run(["/tmp/x/gost", "-V"])
        assert r.stdout == "gost v3\n"
        assert r.cmd == ["/tmp/x/gost", "-V"]

    def test_later_response_wins(self):
        host = MockHost()
        host.set_failure(["ping"])
        host.set_response(["ping", "-4"], CommandResult.success([]))
        assert host.run(["ping", "-4", "1.1.1.1"]).ok
        assert host.run(["ping", "-6", "::1"]).failed

    def test_inputs(self):
        host = MockHost()
        host.run(["chpasswd"], input="proxy:pw\n")
        assert host.inputs("chpasswd") == ["proxy:pw\n"]

    def test_systemctl_lifecycle(self):
        host = MockHost()
        host.ports_on_start = {1080}
        host.run(["systemctl", "enable", "--now", "nat-socks"])
        assert host.run(["systemctl", "is-active", "--quiet", "nat-socks"]).ok
        assert host.listening_ports() == {1080}

        host.run(["systemctl", "disable", "--now", "nat-socks"])
        assert host.run(["systemctl", "is-active", "--quiet", "nat-socks"]).failed
        assert host.processes == {}
        assert host.listening_ports() == set()

    def test_bind_delay_follows_clock(self):
        host = MockHost()
        host.ports_on_start = {1080}
        host.bind_delay = 1.0
        host.start_process("gost")
        assert host.listening_ports() == set()
        host.sleep(1.0)
        assert host.listening_ports() == {1080}

    def test_crontab_roundtrip(self):
        host = MockHost()
        assert host.run(["crontab", "-l"]).failed
        host.run(["crontab", "-"], input="@reboot true\n")
        assert host.run(["crontab", "-l"]).stdout == "@reboot true\n"

    def test_readonly(self):
        host = MockHost()
        host.readonly.add(Path("/etc"))
        with pytest.raises(OSError):
            host.write_text(Path("/etc/x"), "y")
        assert not host.exists(Path("/etc/x"))
